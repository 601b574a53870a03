import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Iterable, List

import httpx
import pytest

# Ensure project root on path for imports when executing from tests dir
ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from fastapi.testclient import TestClient

from recipe_client.client import build_client
from recipe_client.config import Settings
from recipe_client.stub_server import RecipeStore, create_app

BASE_URL = "http://test"


class FlakyTransport(httpx.AsyncBaseTransport):
    """Delegates to the stub app but drops requests for some methods."""

    def __init__(self, inner: httpx.AsyncBaseTransport, fail_methods: Iterable[str]):
        self.inner = inner
        self.fail_methods = {m.upper() for m in fail_methods}
        self.dropped: List[str] = []

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        if request.method in self.fail_methods:
            self.dropped.append(f"{request.method} {request.url.path}")
            raise httpx.ConnectError("server unreachable", request=request)
        return await self.inner.handle_async_request(request)


@pytest.fixture
def cfg():
    return Settings(service_env="dev", api_base_url=BASE_URL, retry_delay_s=0.1, _env_file=None)


@pytest.fixture
def store():
    return RecipeStore()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_client(store, cfg, sleeps):
    """
    Construye un RecipeClient completo sobre el stub server (ASGI, sin red).
    ``fail_methods`` simula un servidor inalcanzable para esos métodos.
    """
    @asynccontextmanager
    async def _make(fail_methods: Iterable[str] = ()):
        transport: httpx.AsyncBaseTransport = httpx.ASGITransport(app=create_app(store, cfg))
        if fail_methods:
            transport = FlakyTransport(transport, fail_methods)

        async def fake_sleep(delay: float) -> None:
            sleeps.append(delay)

        async with httpx.AsyncClient(transport=transport) as http:
            rc = build_client(cfg, http=http, sleep=fake_sleep)
            try:
                yield rc
            finally:
                await rc.aclose()

    return _make


@pytest.fixture
def client(store, cfg):
    """TestClient del stub server para los tests de la API en sí."""
    return TestClient(create_app(store, cfg))
