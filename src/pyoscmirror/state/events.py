"""Change notification primitives.

Every observable thing (store additions/changes/clears, connection state,
activity) exposes one :class:`Signal` per event kind. Listeners run
synchronously on the event loop that owns the client.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import StrEnum
from typing import Any

_logger = logging.getLogger(__name__)


class ConnectionState(StrEnum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    RETRYING = "retrying"


class Signal:
    """Ordered callback registry for a single event kind."""

    def __init__(self, name: str) -> None:
        self._name = name
        self._listeners: list[Callable[..., None]] = []

    @property
    def name(self) -> str:
        return self._name

    def __len__(self) -> int:
        return len(self._listeners)

    def connect(self, callback: Callable[..., None]) -> Callable[[], None]:
        """Register *callback*; returns a function that unregisters it."""
        self._listeners.append(callback)

        def _disconnect() -> None:
            self.disconnect(callback)

        return _disconnect

    def disconnect(self, callback: Callable[..., None]) -> None:
        try:
            self._listeners.remove(callback)
        except ValueError:
            pass

    def emit(self, *args: Any) -> None:
        # Iterate over a copy so listeners may unsubscribe while being called.
        for callback in list(self._listeners):
            try:
                callback(*args)
            except Exception:
                _logger.debug("%s listener failed", self._name, exc_info=True)
