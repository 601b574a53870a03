from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import httpx

from .config import Settings, settings as default_settings
from .logs import setup_logging
from .services.cache import QueryCache
from .services.connectivity import Connectivity
from .services.images import ImageUploadService
from .services.mutations import RecipeMutations
from .services.queries import RecipeQueries
from .services.recipes import RecipeService
from .transport import FetchClient, SleepFn, TokenProvider


@dataclass
class RecipeClient:
    """Todas las piezas cableadas sobre una misma caché y un mismo transporte."""
    settings: Settings
    transport: FetchClient
    connectivity: Connectivity
    cache: QueryCache
    service: RecipeService
    images: ImageUploadService
    queries: RecipeQueries
    mutations: RecipeMutations

    async def aclose(self) -> None:
        self.cache.clear()
        await self.transport.aclose()

    async def __aenter__(self) -> "RecipeClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()


def build_client(
    cfg: Optional[Settings] = None,
    http: Optional[httpx.AsyncClient] = None,
    token_provider: Optional[TokenProvider] = None,
    sleep: Optional[SleepFn] = None,
) -> RecipeClient:
    cfg = cfg or default_settings
    setup_logging(cfg)
    transport = FetchClient(cfg, http=http, sleep=sleep) if sleep else FetchClient(cfg, http=http)
    if token_provider is not None:
        transport.configure(token_provider)
    connectivity = Connectivity()
    cache = QueryCache(cfg, connectivity=connectivity)
    service = RecipeService(transport, cfg)
    images = ImageUploadService(transport, cfg)
    return RecipeClient(
        settings=cfg,
        transport=transport,
        connectivity=connectivity,
        cache=cache,
        service=service,
        images=images,
        queries=RecipeQueries(cache, service),
        mutations=RecipeMutations(cache, service, images=images, connectivity=connectivity),
    )
