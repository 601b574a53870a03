# recipe_client/services/cache.py
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from ..config import Settings, settings as default_settings
from ..errors import OfflineError, QueryError
from .connectivity import Connectivity

logger = logging.getLogger(__name__)

Key = Tuple[Any, ...]
Fetcher = Callable[[], Awaitable[Any]]
Listener = Callable[[Any], None]

_MISSING: Any = object()


# ---------------------------
# Claves
# ---------------------------

def recipes_key(category: Optional[str] = None) -> Key:
    """Lista completa ``("recipes",)`` o filtrada ``("recipes", category)``."""
    return ("recipes",) if category is None else ("recipes", category)


def recipe_key(recipe_id: Any) -> Key:
    return ("recipe", recipe_id)


def _matches(key: Key, prefix: Key) -> bool:
    return key[: len(prefix)] == prefix


@dataclass
class CacheEntry:
    data: Any = _MISSING
    updated_at: float = 0.0
    last_access: float = 0.0
    invalidated: bool = False
    fetcher: Optional[Fetcher] = None
    task: Optional["asyncio.Task[Any]"] = None
    error: Optional[BaseException] = None
    pending: int = 0
    subscribers: List[Listener] = field(default_factory=list)

    @property
    def has_data(self) -> bool:
        return self.data is not _MISSING

    @property
    def active(self) -> bool:
        return bool(self.subscribers)


class QueryCache:
    """
    Caché de datos del servidor indexada por tuplas. Instanciable (no es un
    singleton) para que cada test tenga la suya.

    Superficie de escritura: set / remove / invalidate. Las lecturas nunca
    devuelven el dict interno.
    """

    def __init__(
        self,
        cfg: Optional[Settings] = None,
        connectivity: Optional[Connectivity] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        cfg = cfg or default_settings
        self.stale_time = cfg.stale_time_s
        self.gc_time = cfg.gc_time_s
        self.connectivity = connectivity or Connectivity()
        self._clock = clock
        self._entries: Dict[Key, CacheEntry] = {}
        self._background: Set["asyncio.Task[Any]"] = set()
        self.connectivity.subscribe(self._on_connectivity)

    # ---------------------------
    # Lectura
    # ---------------------------

    def get(self, key: Key, default: Any = None) -> Any:
        entry = self._entries.get(key)
        if entry is None or not entry.has_data:
            return default
        entry.last_access = self._clock()
        return entry.data

    def has(self, key: Key) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.has_data

    def keys(self, prefix: Key = ()) -> List[Key]:
        return [k for k, e in self._entries.items() if e.has_data and _matches(k, prefix)]

    def is_stale(self, key: Key) -> bool:
        entry = self._entries.get(key)
        if entry is None or not entry.has_data or entry.invalidated:
            return True
        return (self._clock() - entry.updated_at) >= self.stale_time

    def is_fetching(self, key: Key) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.task is not None and not entry.task.done()

    def last_error(self, key: Key) -> Optional[BaseException]:
        entry = self._entries.get(key)
        return entry.error if entry else None

    # ---------------------------
    # Escritura
    # ---------------------------

    def _entry(self, key: Key) -> CacheEntry:
        entry = self._entries.get(key)
        if entry is None:
            entry = CacheEntry(last_access=self._clock())
            self._entries[key] = entry
        return entry

    def set(self, key: Key, value: Any) -> Any:
        """
        Guarda un valor. Si ``value`` es callable se usa como updater y
        recibe el valor actual (o None).
        """
        entry = self._entry(key)
        if callable(value):
            value = value(entry.data if entry.has_data else None)
        now = self._clock()
        entry.data = value
        entry.updated_at = now
        entry.last_access = now
        entry.invalidated = False
        entry.error = None
        self._notify(entry, value)
        return value

    def remove(self, key: Key) -> None:
        entry = self._entries.get(key)
        if entry is None:
            return
        if entry.task is not None and not entry.task.done():
            entry.task.cancel()
        if entry.active or entry.pending:
            entry.data = _MISSING
            self._notify(entry, None)
        else:
            del self._entries[key]

    def subscribe(self, key: Key, listener: Listener) -> Callable[[], None]:
        entry = self._entry(key)
        entry.subscribers.append(listener)
        entry.last_access = self._clock()

        def unsubscribe() -> None:
            current = self._entries.get(key)
            if current is not None and listener in current.subscribers:
                current.subscribers.remove(listener)
                current.last_access = self._clock()
                if not current.active:
                    self.gc(keep=(key,))

        return unsubscribe

    def register_fetcher(self, key: Key, fetcher: Fetcher) -> None:
        self._entry(key).fetcher = fetcher

    def _notify(self, entry: CacheEntry, value: Any) -> None:
        for listener in list(entry.subscribers):
            listener(value)

    # ---------------------------
    # Marcador de mutaciones pendientes
    # ---------------------------

    def mark_pending(self, keys: List[Key]) -> None:
        for key in keys:
            self._entry(key).pending += 1

    def clear_pending(self, keys: List[Key]) -> None:
        for key in keys:
            entry = self._entries.get(key)
            if entry is not None and entry.pending > 0:
                entry.pending -= 1
                if not entry.pending and not entry.has_data and not entry.active:
                    del self._entries[key]

    def pending(self, key: Key) -> int:
        entry = self._entries.get(key)
        return entry.pending if entry else 0

    def is_syncing(self, key: Key) -> bool:
        return self.pending(key) > 0

    # ---------------------------
    # Fetch / invalidación
    # ---------------------------

    async def fetch(self, key: Key, fetcher: Fetcher) -> Any:
        """
        Devuelve el dato si está fresco; si está stale lo pide al servidor.
        Sin conexión sirve lo que haya en memoria. Si el refetch falla y hay
        un valor anterior se devuelve ese (el error queda en ``last_error``).
        """
        self.gc(keep=(key,))
        entry = self._entry(key)
        entry.fetcher = fetcher
        if entry.has_data and not self.is_stale(key):
            return self.get(key)
        if not self.connectivity.is_online:
            if entry.has_data:
                return self.get(key)
            raise OfflineError(key)
        try:
            return await self._run_fetch(key, entry)
        except Exception as e:
            if not entry.has_data:
                raise
            logger.warning("Refetch failed for %r, serving stale data: %s", key, e)
            return self.get(key, entry.data)

    async def _run_fetch(self, key: Key, entry: CacheEntry) -> Any:
        if entry.task is None or entry.task.done():
            if entry.fetcher is None:
                raise QueryError(f"No fetcher registered for {key!r}")
            entry.task = asyncio.get_running_loop().create_task(self._do_fetch(key, entry, entry.fetcher))
        task = entry.task
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.cancelled():
                raise
            # fetch cancelado por una escritura optimista: se sirve la caché
            return self.get(key)

    async def _do_fetch(self, key: Key, entry: CacheEntry, fetcher: Fetcher) -> Any:
        try:
            data = await fetcher()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            entry.error = e
            raise
        finally:
            if entry.task is asyncio.current_task():
                entry.task = None
        if self._entries.get(key) is entry:
            self.set(key, data)
        return data

    async def cancel(self, prefix: Key) -> None:
        """Cancela fetches en curso para las claves que empiezan por ``prefix``."""
        tasks = []
        for key, entry in self._entries.items():
            if _matches(key, prefix) and entry.task is not None and not entry.task.done():
                entry.task.cancel()
                tasks.append(entry.task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def invalidate(self, prefix: Key, refetch: bool = True) -> None:
        """Marca stale las claves y vuelve a pedir las que tienen suscriptores."""
        to_refetch = []
        for key, entry in list(self._entries.items()):
            if not _matches(key, prefix):
                continue
            entry.invalidated = True
            if refetch and entry.active and entry.fetcher is not None:
                to_refetch.append((key, entry))
        if not to_refetch or not self.connectivity.is_online:
            return
        await asyncio.gather(*(self._refetch_quietly(key, entry) for key, entry in to_refetch))

    async def _refetch_quietly(self, key: Key, entry: CacheEntry) -> None:
        try:
            await self._run_fetch(key, entry)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Background refetch failed for %r: %s", key, e)

    async def refetch_stale(self) -> None:
        stale = [
            (key, entry) for key, entry in list(self._entries.items())
            if entry.active and entry.fetcher is not None and self.is_stale(key)
        ]
        await asyncio.gather(*(self._refetch_quietly(key, entry) for key, entry in stale))

    def _on_connectivity(self, online: bool) -> None:
        if not online:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return  # sin loop: se refrescará en la próxima lectura
        task = loop.create_task(self.refetch_stale())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ---------------------------
    # Recolección
    # ---------------------------

    def gc(self, keep: Tuple[Key, ...] = ()) -> int:
        """
        Elimina entradas sin suscriptores inactivas más de ``gc_time``.
        Se ejecuta en cada ``fetch`` y al perder el último suscriptor;
        ``keep`` protege las claves que se están usando en ese momento.
        """
        now = self._clock()
        dead = [
            key for key, e in self._entries.items()
            if key not in keep and not e.active and not e.pending and not (e.task and not e.task.done())
            and (now - e.last_access) >= self.gc_time
        ]
        for key in dead:
            del self._entries[key]
        return len(dead)

    def clear(self) -> None:
        for entry in self._entries.values():
            if entry.task is not None and not entry.task.done():
                entry.task.cancel()
        self._entries.clear()
