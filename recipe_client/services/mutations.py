# recipe_client/services/mutations.py
"""
Mutaciones optimistas sobre la caché de recetas.

Cada mutación sigue la misma máquina de estados::

    idle -> optimistic_applied -> resolved | rolled_back

1. Se cancelan los fetches en curso de las claves afectadas (un refetch
   lento no debe pisar la escritura optimista).
2. Se guarda un snapshot de cada clave que se va a tocar.
3. Se aplica la proyección optimista.
4. Se llama al servicio (esperando conexión si no la hay).
5. Éxito: se reconcilia con la respuesta del servidor y se invalida la lista.
6. Fallo: rollback completo y MutationError con ``retry()``.

No hay reintentos propios: los reintentos de red viven en el transporte.
"""
from __future__ import annotations

import json
import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, Hashable, Iterable, List, Optional, Tuple, Union

from ..errors import (
    InvalidTransitionError,
    MessageError,
    MutationError,
    MutationInProgressError,
    ProblemError,
    UnsavedRecipeError,
)
from ..ids import PendingId, PersistedId, coerce_id, new_pending_id
from ..schemas import Recipe, RecipeRequest
from .cache import Key, QueryCache, recipe_key, recipes_key
from .connectivity import Connectivity
from .images import ImageFile, ImageUploadService
from .recipes import ApiResult, Failure, RecipeService, validate_request

logger = logging.getLogger(__name__)

RecipeData = Union[RecipeRequest, Dict[str, Any]]


class Operation(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class MutationState(str, Enum):
    IDLE = "idle"
    OPTIMISTIC_APPLIED = "optimistic_applied"
    RESOLVED = "resolved"
    ROLLED_BACK = "rolled_back"


_TRANSITIONS: Dict[MutationState, frozenset] = {
    # idle -> rolled_back: la proyección optimista falló a medio aplicar
    MutationState.IDLE: frozenset({MutationState.OPTIMISTIC_APPLIED, MutationState.ROLLED_BACK}),
    MutationState.OPTIMISTIC_APPLIED: frozenset({MutationState.RESOLVED, MutationState.ROLLED_BACK}),
    MutationState.RESOLVED: frozenset(),
    MutationState.ROLLED_BACK: frozenset(),
}

_ABSENT: Any = object()


def _for_each_key(items: Iterable[Tuple[Key, Any]], fn: Callable[[Key, Any], None]) -> None:
    """
    Aplica ``fn`` a todas las claves aunque alguna falle (p. ej. un listener
    que lanza); el primer error se relanza al terminar.
    """
    first: Optional[BaseException] = None
    for key, value in list(items):
        try:
            fn(key, value)
        except Exception as e:
            logger.warning("Cache restore failed for %r: %s", key, e)
            if first is None:
                first = e
    if first is not None:
        raise first


def _fingerprint(request: RecipeRequest) -> str:
    return json.dumps(request.to_body(), sort_keys=True)


@dataclass
class PendingMutation:
    operation: Operation
    target_id: Union[PersistedId, PendingId]
    snapshot: Dict[Key, Any] = field(default_factory=dict)
    state: MutationState = MutationState.IDLE
    error: Optional[Union[MessageError, ProblemError]] = None
    result: Optional[Recipe] = None

    def transition(self, new_state: MutationState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidTransitionError(f"{self.operation.value}: {self.state.value} -> {new_state.value}")
        self.state = new_state

    def capture(self, cache: QueryCache, keys: List[Key]) -> None:
        for key in keys:
            self.snapshot[key] = cache.get(key) if cache.has(key) else _ABSENT

    def restore(self, cache: QueryCache) -> None:
        def put_back(key: Key, value: Any) -> None:
            if value is _ABSENT:
                cache.remove(key)
            else:
                cache.set(key, value)

        _for_each_key(self.snapshot.items(), put_back)

    @property
    def done(self) -> bool:
        return self.state in (MutationState.RESOLVED, MutationState.ROLLED_BACK)


def _prepend(recipe: Recipe) -> Callable[[Optional[List[Recipe]]], List[Recipe]]:
    return lambda old: [recipe, *(old or [])]


def _without(recipe_id: Any) -> Callable[[Optional[List[Recipe]]], List[Recipe]]:
    return lambda old: [r for r in (old or []) if r.id != recipe_id]


def _replace(recipe_id: Any, fn: Callable[[Recipe], Recipe]) -> Callable[[Optional[List[Recipe]]], List[Recipe]]:
    return lambda old: [fn(r) if r.id == recipe_id else r for r in (old or [])]


class RecipeMutations:
    """
    Create / update / delete optimistas. Solo esta capa escribe proyecciones
    optimistas en la caché; las respuestas confirmadas llegan por el servicio.

    Mientras una mutación para un id está pendiente, otra para el mismo id se
    rechaza con MutationInProgressError (no hay cola de envíos). Los create
    se identifican por ``form_key`` o, si no se pasa, por su contenido.
    """

    def __init__(
        self,
        cache: QueryCache,
        service: RecipeService,
        images: Optional[ImageUploadService] = None,
        connectivity: Optional[Connectivity] = None,
    ) -> None:
        self.cache = cache
        self.service = service
        self.images = images
        self.connectivity = connectivity or cache.connectivity
        self._inflight: Dict[Hashable, PendingMutation] = {}
        self._uploading: set = set()
        self.recent: Deque[PendingMutation] = deque(maxlen=20)

    # ---------------------------
    # Guard de doble envío
    # ---------------------------

    def is_pending(self, target: Hashable) -> bool:
        target = coerce_id(target)
        return target in self._inflight or target in self._uploading

    def _reserve(self, guard: Hashable, mutation: PendingMutation) -> None:
        if self.is_pending(guard):
            raise MutationInProgressError(guard)
        self._inflight[guard] = mutation
        self.recent.append(mutation)

    @staticmethod
    def _create_guard(request: RecipeRequest, form_key: Optional[Hashable]) -> Hashable:
        # sin form_key, dos envíos con el mismo contenido son el mismo formulario
        return ("create", form_key if form_key is not None else _fingerprint(request))

    # ---------------------------
    # Ejecución común
    # ---------------------------

    async def _execute(
        self,
        mutation: PendingMutation,
        guard: Hashable,
        cancel: List[Key],
        apply: Callable[[], List[Key]],
        call: Callable[[], Awaitable[ApiResult[Any]]],
        reconcile: Callable[[Any], Any],
        rollback: Callable[[], None],
        retry: Callable[[], Awaitable[Any]],
    ) -> Any:
        self._reserve(guard, mutation)
        touched: List[Key] = []
        try:
            for prefix in cancel:
                await self.cache.cancel(prefix)

            # apply() toma el snapshot antes de la primera escritura
            try:
                touched = apply()
                self.cache.mark_pending(touched)
                mutation.transition(MutationState.OPTIMISTIC_APPLIED)
                await self.connectivity.wait_online()
                result = await call()
            except BaseException:
                try:
                    rollback()
                finally:
                    mutation.transition(MutationState.ROLLED_BACK)
                raise

            if isinstance(result, Failure):
                try:
                    rollback()
                finally:
                    mutation.error = result.error
                    mutation.transition(MutationState.ROLLED_BACK)
                logger.warning(
                    "Recipe %s failed for %s, cache rolled back: %s",
                    mutation.operation.value, mutation.target_id, result.error,
                )
                raise MutationError(mutation.operation.value, mutation.target_id, result.error, retry)

            value = reconcile(result.data)
            mutation.transition(MutationState.RESOLVED)
        finally:
            self.cache.clear_pending(touched)
            self._inflight.pop(guard, None)

        await self.cache.invalidate(recipes_key())
        return value

    # ---------------------------
    # Create
    # ---------------------------

    async def create(self, data: RecipeData, form_key: Optional[Hashable] = None) -> Recipe:
        """
        Inserta una receta con id temporal al principio de las listas en caché
        y devuelve la receta guardada (siempre con PersistedId).
        """
        request = validate_request(data)
        temp_id = new_pending_id()
        mutation = PendingMutation(Operation.CREATE, temp_id)
        optimistic = Recipe.optimistic(temp_id, request)
        detail = recipe_key(temp_id)

        def list_keys() -> List[Key]:
            keys = [recipes_key()]
            if request.category:
                keys.append(recipes_key(request.category))
            return [k for k in keys if self.cache.has(k)]

        def apply() -> List[Key]:
            keys = list_keys()
            mutation.capture(self.cache, keys + [detail])
            for key in keys:
                self.cache.set(key, _prepend(optimistic))
            self.cache.set(detail, optimistic)
            return keys + [detail]

        def drop_temp(key: Key, before: Any) -> None:
            if key == detail or before is _ABSENT:
                self.cache.remove(key)
            else:
                self.cache.set(key, _without(temp_id))

        def rollback() -> None:
            # no había estado previo: se elimina la entrada temporal
            _for_each_key(mutation.snapshot.items(), drop_temp)

        def reconcile(saved: Recipe) -> Recipe:
            for key in mutation.snapshot:
                if key != detail and self.cache.has(key):
                    self.cache.set(key, _replace(temp_id, lambda _: saved))
            self.cache.remove(detail)
            self.cache.set(recipe_key(saved.id), saved)
            mutation.result = saved
            return saved

        return await self._execute(
            mutation,
            self._create_guard(request, form_key),
            cancel=[recipes_key()],
            apply=apply,
            call=lambda: self.service.create_recipe(request),
            reconcile=reconcile,
            rollback=rollback,
            retry=lambda: self.create(data, form_key=form_key),
        )

    # ---------------------------
    # Update
    # ---------------------------

    def _persisted(self, recipe_id: Any) -> PersistedId:
        rid = coerce_id(recipe_id)
        if isinstance(rid, PendingId):
            raise UnsavedRecipeError(rid)
        return rid

    async def update(self, recipe_id: Union[PersistedId, str], data: RecipeData) -> Recipe:
        rid = self._persisted(recipe_id)
        request = validate_request(data)
        changes = request.changes()
        mutation = PendingMutation(Operation.UPDATE, rid)
        detail = recipe_key(rid)

        def apply() -> List[Key]:
            keys = self.cache.keys(recipes_key()) + [detail]
            mutation.capture(self.cache, keys)
            for key in keys[:-1]:
                self.cache.set(key, _replace(rid, lambda r: r.merged(changes)))
            if self.cache.has(detail):
                self.cache.set(detail, lambda old: old.merged(changes))
            return keys

        def reconcile(saved: Recipe) -> Recipe:
            # campos calculados por el servidor (createdAt, userId...)
            for key in self.cache.keys(recipes_key()):
                self.cache.set(key, _replace(rid, lambda _: saved))
            self.cache.set(detail, saved)
            mutation.result = saved
            return saved

        return await self._execute(
            mutation,
            rid,
            cancel=[recipes_key(), detail],
            apply=apply,
            call=lambda: self.service.update_recipe(rid, request),
            reconcile=reconcile,
            rollback=lambda: mutation.restore(self.cache),
            retry=lambda: self.update(rid, data),
        )

    # ---------------------------
    # Delete
    # ---------------------------

    async def delete(self, recipe_id: Union[PersistedId, str]) -> None:
        rid = self._persisted(recipe_id)
        mutation = PendingMutation(Operation.DELETE, rid)

        def apply() -> List[Key]:
            # el detalle se deja: se sobrescribe o expira solo
            keys = self.cache.keys(recipes_key())
            mutation.capture(self.cache, keys)
            for key in keys:
                self.cache.set(key, _without(rid))
            return keys

        await self._execute(
            mutation,
            rid,
            cancel=[recipes_key()],
            apply=apply,
            call=lambda: self.service.delete_recipe(rid),
            reconcile=lambda _: None,
            rollback=lambda: mutation.restore(self.cache),
            retry=lambda: self.delete(rid),
        )

    # ---------------------------
    # Save con imagen
    # ---------------------------

    async def save_with_image(
        self,
        data: RecipeData,
        image: Optional[ImageFile] = None,
        recipe_id: Optional[Union[PersistedId, str]] = None,
        form_key: Optional[Hashable] = None,
    ) -> Recipe:
        """
        Sube la imagen primero y después crea o actualiza la receta con su
        URL pública. Si la subida falla no se inicia ninguna mutación.
        """
        rid = self._persisted(recipe_id) if recipe_id is not None else None
        request = validate_request(data)

        if rid is None and form_key is None:
            # la subida y el create comparten guard: el del formulario sin imagen
            form_key = _fingerprint(request)

        if image is not None:
            if self.images is None:
                raise RuntimeError("RecipeMutations was built without an ImageUploadService")
            guard: Hashable = rid if rid is not None else self._create_guard(request, form_key)
            if self.is_pending(guard):
                raise MutationInProgressError(guard)
            self._uploading.add(guard)
            try:
                public_url = await self.images.upload_image(image)
            finally:
                self._uploading.discard(guard)
            request = RecipeRequest.model_validate({**request.model_dump(), "image_url": public_url})

        if rid is not None:
            return await self.update(rid, request)
        return await self.create(request, form_key=form_key)
