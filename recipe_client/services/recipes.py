# recipe_client/services/recipes.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, List, Literal, Optional, TypeVar, Union
from urllib.parse import quote, urlencode

from pydantic import ValidationError

from ..config import Settings, settings as default_settings
from ..errors import ClientError, MessageError, ProblemError, RecipeValidationError
from ..ids import PendingId, PersistedId, coerce_id
from ..schemas import Recipe, RecipeRequest
from ..transport import FetchClient

T = TypeVar("T")

JSON_HEADERS = {"Content-Type": "application/json", "Accept": "application/json"}


@dataclass(frozen=True)
class Success(Generic[T]):
    data: T
    success: Literal[True] = True


@dataclass(frozen=True)
class Failure:
    error: Union[MessageError, ProblemError]
    success: Literal[False] = False


ApiResult = Union[Success[T], Failure]


def validate_request(data: Union[RecipeRequest, Dict[str, Any]]) -> RecipeRequest:
    """Valida en cliente; lanza RecipeValidationError antes de tocar la red."""
    if isinstance(data, RecipeRequest):
        return data
    try:
        return RecipeRequest.model_validate(data)
    except ValidationError as e:
        raise RecipeValidationError(e.errors(include_url=False, include_context=False)) from e


def _parse_recipe(data: Any) -> Recipe:
    return Recipe.model_validate(data)


def _parse_recipes(data: Any) -> List[Recipe]:
    if not isinstance(data, list):
        raise ClientError("Expected a list of recipes")
    return [Recipe.model_validate(item) for item in data]


class RecipeService:
    """
    Un método por verbo, una llamada HTTP por método. Nunca lanza ante
    errores esperados (red, validación, servidor): devuelve Failure.
    """

    def __init__(self, client: FetchClient, cfg: Optional[Settings] = None) -> None:
        self.client = client
        self.settings = cfg or client.settings or default_settings

    def _url(self, path: str = "", params: Optional[Dict[str, Any]] = None) -> str:
        url = self.settings.api_url(self.settings.recipes_endpoint) + path
        clean = {k: v for k, v in (params or {}).items() if v is not None}
        return f"{url}?{urlencode(clean)}" if clean else url

    async def _call(self, method: str, url: str, parse: Callable[[Any], T], body: Any = None) -> ApiResult[T]:
        try:
            data = await self.client.request(
                method, url, headers=JSON_HEADERS, json=body, **self.settings.request_options()
            )
            return Success(parse(data))
        except ClientError as e:
            return Failure(e.error)
        except ValidationError as e:
            return Failure(MessageError(text=f"Validation error: invalid server response ({e.error_count()} errors)"))

    @staticmethod
    def _target(recipe_id: Union[PersistedId, PendingId, str]) -> Union[str, Failure]:
        rid = coerce_id(recipe_id)
        if isinstance(rid, PendingId):
            return Failure(MessageError(text=f"Recipe {rid} has not been saved yet"))
        return quote(rid.value, safe="")

    # ---------------------------
    # Lectura
    # ---------------------------

    async def get_all_recipes(self, category: Optional[str] = None, limit: Optional[int] = None) -> ApiResult[List[Recipe]]:
        return await self._call("GET", self._url(params={"category": category, "limit": limit}), _parse_recipes)

    async def get_recipe(self, recipe_id: Union[PersistedId, PendingId, str]) -> ApiResult[Recipe]:
        target = self._target(recipe_id)
        if isinstance(target, Failure):
            return target
        return await self._call("GET", self._url(f"/{target}"), _parse_recipe)

    async def search_recipes(self, title: str) -> ApiResult[List[Recipe]]:
        return await self._call("GET", self._url("/search", {"title": title}), _parse_recipes)

    # ---------------------------
    # Escritura
    # ---------------------------

    async def create_recipe(self, data: Union[RecipeRequest, Dict[str, Any]]) -> ApiResult[Recipe]:
        try:
            request = validate_request(data)
        except RecipeValidationError as e:
            return Failure(e.error)
        return await self._call("POST", self._url(), _parse_recipe, body=request.to_body())

    async def update_recipe(
        self, recipe_id: Union[PersistedId, PendingId, str], data: Union[RecipeRequest, Dict[str, Any]]
    ) -> ApiResult[Recipe]:
        target = self._target(recipe_id)
        if isinstance(target, Failure):
            return target
        try:
            request = validate_request(data)
        except RecipeValidationError as e:
            return Failure(e.error)
        return await self._call("PUT", self._url(f"/{target}"), _parse_recipe, body=request.to_body())

    async def delete_recipe(self, recipe_id: Union[PersistedId, PendingId, str]) -> ApiResult[None]:
        target = self._target(recipe_id)
        if isinstance(target, Failure):
            return target
        return await self._call("DELETE", self._url(f"/{target}"), lambda _: None)
