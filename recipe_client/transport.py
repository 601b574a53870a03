from __future__ import annotations
import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

from .config import Settings, settings as default_settings
from .errors import (
    ClientError,
    HttpStatusError,
    MessageError,
    NetworkError,
    RequestTimeoutError,
    is_problem_details,
    problem_from_body,
)

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], Awaitable[Optional[str]]]
SleepFn = Callable[[float], Awaitable[None]]


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ClientError) and exc.retryable


def _is_json(response: httpx.Response) -> bool:
    return "json" in response.headers.get("content-type", "")


def parse_response(response: httpx.Response) -> Any:
    """
    Devuelve el cuerpo parseado o lanza HttpStatusError.
    - 204 / vacío / no-JSON con 2xx -> None
    - error JSON con forma de problem details -> ProblemError
    - error JSON sin esa forma -> "message" o "HTTP <status>: <reason>"
    """
    ok = response.is_success
    if response.status_code == 204:
        return None
    if not _is_json(response) or not response.content:
        if not ok:
            raise HttpStatusError(response.status_code, response.reason_phrase)
        return None

    try:
        data = response.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        if not ok:
            raise HttpStatusError(response.status_code, response.reason_phrase)
        raise ClientError("Invalid JSON in response body")

    if not ok:
        if is_problem_details(data):
            raise HttpStatusError(response.status_code, response.reason_phrase, problem_from_body(data))
        message = data.get("message") if isinstance(data, dict) else None
        if isinstance(message, str) and message:
            raise HttpStatusError(response.status_code, response.reason_phrase, MessageError(text=message))
        raise HttpStatusError(response.status_code, response.reason_phrase)
    return data


class FetchClient:
    """
    Cliente HTTP con timeout, reintentos (backoff exponencial) y cabecera
    Authorization opcional. Reintenta solo errores de red, timeouts y 5xx.
    """

    def __init__(
        self,
        cfg: Optional[Settings] = None,
        http: Optional[httpx.AsyncClient] = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.settings = cfg or default_settings
        self._http = http
        self._owns_http = http is None
        self._sleep = sleep
        self._token_provider: Optional[TokenProvider] = None

    def configure(self, token_provider: Optional[TokenProvider]) -> None:
        self._token_provider = token_provider
        self._dev_log("FetchClient configured with authentication" if token_provider else "FetchClient authentication cleared")

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient()
        return self._http

    async def aclose(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None

    async def __aenter__(self) -> "FetchClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # ---------------------------
    # Logging (solo en dev)
    # ---------------------------

    def _dev_log(self, msg: str, *args: Any) -> None:
        if self.settings.is_dev:
            logger.debug(msg, *args)

    def _log_retry(self, retry_state: RetryCallState) -> None:
        if not self.settings.is_dev or retry_state.outcome is None:
            return
        exc = retry_state.outcome.exception()
        logger.debug("API error (attempt %d): %s", retry_state.attempt_number, exc)

    # ---------------------------
    # Petición
    # ---------------------------

    async def _auth_headers(self, headers: Dict[str, str]) -> Dict[str, str]:
        if self._token_provider is None or any(k.lower() == "authorization" for k in headers):
            return headers
        try:
            token = await self._token_provider()
        except Exception as e:  # el API devolverá 401 si hace falta
            logger.warning("Failed to get access token: %s", e)
            return headers
        if token:
            return {**headers, "Authorization": f"Bearer {token}"}
        return headers

    async def _attempt(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        json_body: Any,
        content: Optional[bytes],
        timeout: float,
        attempt: int,
    ) -> Any:
        self._dev_log(
            "API request [%s] %s body=%s attempt=%d auth=%s",
            method, url, json_body, attempt, "Authorization" in headers,
        )
        try:
            response = await self.http.request(
                method,
                url,
                headers=headers,
                json=json_body,
                content=content,
                timeout=httpx.Timeout(timeout),
            )
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(timeout) from e
        except httpx.TransportError as e:
            raise NetworkError(f"Network error: {str(e) or type(e).__name__}") from e

        self._dev_log("API response [%d] %s", response.status_code, url)
        return parse_response(response)

    async def request(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Mapping[str, str]] = None,
        json: Any = None,
        content: Optional[bytes] = None,
        retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        retries = self.settings.max_retries if retries is None else retries
        retry_delay = self.settings.retry_delay_s if retry_delay is None else retry_delay
        timeout = self.settings.request_timeout_s if timeout is None else timeout
        hdrs = await self._auth_headers(dict(headers or {}))

        retrying = AsyncRetrying(
            sleep=self._sleep,
            stop=stop_after_attempt(max(1, retries)),
            wait=wait_exponential(multiplier=retry_delay, exp_base=2),
            retry=retry_if_exception(_is_retryable),
            before_sleep=self._log_retry,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self._attempt(
                    method.upper(), url, hdrs, json, content, timeout,
                    attempt.retry_state.attempt_number,
                )
        raise ClientError("Request failed")  # pragma: no cover
