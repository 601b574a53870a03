from __future__ import annotations

import asyncio
import logging
from typing import Callable, List

logger = logging.getLogger(__name__)

Listener = Callable[[bool], None]


class Connectivity:
    """Estado online/offline compartido por la caché y las mutaciones."""

    def __init__(self, online: bool = True) -> None:
        self._online = online
        self._listeners: List[Listener] = []
        self._event: asyncio.Event | None = None

    @property
    def is_online(self) -> bool:
        return self._online

    def _get_event(self) -> asyncio.Event:
        # se crea perezosamente dentro del loop que la usa
        if self._event is None:
            self._event = asyncio.Event()
            if self._online:
                self._event.set()
        return self._event

    def set_online(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        logger.info("Connectivity changed: %s", "online" if online else "offline")
        if self._event is not None:
            if online:
                self._event.set()
            else:
                self._event.clear()
        for listener in list(self._listeners):
            listener(online)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def wait_online(self) -> None:
        if self._online:
            return
        await self._get_event().wait()
