from __future__ import annotations

from typing import Any, Awaitable, Callable, List, Optional, Union

from ..errors import QueryError, user_message
from ..ids import PendingId, PersistedId, coerce_id
from ..schemas import Recipe
from .cache import Key, QueryCache, recipe_key, recipes_key
from .recipes import ApiResult, Failure, RecipeService


def _unwrap(result: ApiResult[Any]) -> Any:
    if isinstance(result, Failure):
        raise QueryError(user_message(result.error, fallback="Failed to load recipes"), result.error)
    return result.data


class RecipeQueries:
    """Lecturas a través de la caché: lista, lista por categoría y detalle."""

    def __init__(self, cache: QueryCache, service: RecipeService) -> None:
        self.cache = cache
        self.service = service

    def _list_fetcher(self, category: Optional[str]) -> Callable[[], Awaitable[List[Recipe]]]:
        async def fetcher() -> List[Recipe]:
            return _unwrap(await self.service.get_all_recipes(category=category))
        return fetcher

    def _detail_fetcher(self, recipe_id: PersistedId) -> Callable[[], Awaitable[Recipe]]:
        async def fetcher() -> Recipe:
            return _unwrap(await self.service.get_recipe(recipe_id))
        return fetcher

    async def recipes(self, category: Optional[str] = None) -> List[Recipe]:
        return await self.cache.fetch(recipes_key(category), self._list_fetcher(category))

    async def recipe(self, recipe_id: Union[PersistedId, PendingId, str]) -> Optional[Recipe]:
        rid = coerce_id(recipe_id)
        key = recipe_key(rid)
        if isinstance(rid, PendingId):
            # solo existe en memoria hasta que el servidor lo confirme
            return self.cache.get(key)
        return await self.cache.fetch(key, self._detail_fetcher(rid))

    def watch_recipes(self, listener: Callable[[Any], None], category: Optional[str] = None) -> Callable[[], None]:
        """
        Suscribe ``listener`` a la lista. La suscripción convierte la clave
        en activa: las invalidaciones la vuelven a pedir.
        """
        key: Key = recipes_key(category)
        unsubscribe = self.cache.subscribe(key, listener)
        # registra el fetcher aunque aún no se haya leído
        self.cache.register_fetcher(key, self._list_fetcher(category))
        return unsubscribe

    def watch_recipe(self, recipe_id: PersistedId, listener: Callable[[Any], None]) -> Callable[[], None]:
        key = recipe_key(recipe_id)
        unsubscribe = self.cache.subscribe(key, listener)
        self.cache.register_fetcher(key, self._detail_fetcher(recipe_id))
        return unsubscribe
