from __future__ import annotations
from typing import Annotated, Any, Awaitable, Callable, Dict, List, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field

# ---------------------------
# Payload de error (tagged union)
# ---------------------------

class MessageError(BaseModel):
    kind: Literal["message"] = "message"
    text: str = Field(examples=["Network error: Unable to reach the server"])


class ProblemError(BaseModel):
    """RFC 9457 problem details."""
    model_config = ConfigDict(extra="allow")

    kind: Literal["problem"] = "problem"
    type: Optional[str] = Field(default=None, examples=["https://tools.ietf.org/html/rfc9110#section-15.5.5"])
    title: Optional[str] = Field(default=None, examples=["Not Found"])
    status: Optional[int] = Field(default=None, examples=[404])
    detail: Optional[str] = None
    instance: Optional[str] = None


ErrorInfo = Annotated[Union[MessageError, ProblemError], Field(discriminator="kind")]

_PROBLEM_FIELDS = ("type", "title", "status", "detail", "instance")


def is_problem_details(data: Any) -> bool:
    if not isinstance(data, dict):
        return False
    return (
        isinstance(data.get("type"), str)
        or isinstance(data.get("title"), str)
        or isinstance(data.get("status"), int)
        or isinstance(data.get("detail"), str)
    )


def problem_from_body(data: Dict[str, Any]) -> ProblemError:
    extra = {k: v for k, v in data.items() if k not in _PROBLEM_FIELDS and k != "kind"}
    known = {k: data.get(k) for k in _PROBLEM_FIELDS}
    if not isinstance(known["status"], int):
        known["status"] = None
    for k in ("type", "title", "detail", "instance"):
        if known[k] is not None and not isinstance(known[k], str):
            known[k] = str(known[k])
    return ProblemError(**known, **extra)


def user_message(error: Union[MessageError, ProblemError], fallback: str = "An unexpected error occurred") -> str:
    if isinstance(error, MessageError):
        return error.text or fallback
    return error.detail or error.title or fallback


# ---------------------------
# Excepciones
# ---------------------------

class ClientError(Exception):
    """Base de todos los errores del cliente."""
    retryable: bool = False

    def __init__(self, message: str, error: Optional[Union[MessageError, ProblemError]] = None):
        super().__init__(message)
        self.error = error if error is not None else MessageError(text=message)


class NetworkError(ClientError):
    retryable = True


class RequestTimeoutError(NetworkError):
    def __init__(self, timeout_s: float):
        super().__init__(f"Request timeout after {timeout_s:g}s")
        self.timeout_s = timeout_s


class HttpStatusError(ClientError):
    def __init__(self, status: int, reason: str, error: Optional[Union[MessageError, ProblemError]] = None):
        fallback = f"HTTP {status}: {reason}"
        if isinstance(error, ProblemError):
            message = error.title or error.detail or fallback
        elif isinstance(error, MessageError):
            message = error.text
        else:
            message = fallback
        super().__init__(message, error)
        self.status = status
        self.reason = reason

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.status >= 500


class RecipeValidationError(ClientError):
    def __init__(self, errors: List[Dict[str, Any]]):
        fields = ", ".join(".".join(str(p) for p in e.get("loc", ())) or "body" for e in errors)
        super().__init__(f"Validation error: invalid {fields}")
        self.errors = errors


class OfflineError(ClientError):
    def __init__(self, key: Any):
        super().__init__(f"Offline and no cached data for {key!r}")
        self.key = key


class QueryError(ClientError):
    pass


class ImageUploadError(ClientError):
    pass


class UnsavedRecipeError(ClientError):
    def __init__(self, target: Any):
        super().__init__(f"Recipe {target} has not been saved yet")
        self.target = target


class MutationInProgressError(ClientError):
    def __init__(self, target: Any):
        super().__init__(f"A mutation for {target} is already pending")
        self.target = target


class MutationError(ClientError):
    """
    Fallo de una mutación ya revertida en caché. ``retry`` relanza la misma
    mutación con la misma entrada (un create genera un id temporal nuevo).
    """
    def __init__(
        self,
        operation: str,
        target: Any,
        error: Union[MessageError, ProblemError],
        retry: Optional[Callable[[], Awaitable[Any]]] = None,
    ):
        super().__init__(user_message(error, fallback=f"Failed to {operation} recipe"), error)
        self.operation = operation
        self.target = target
        self._retry = retry

    async def retry(self) -> Any:
        if self._retry is None:
            raise RuntimeError("this mutation cannot be retried")
        return await self._retry()


class InvalidTransitionError(RuntimeError):
    pass
