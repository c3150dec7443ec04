"""Minimal synchronous event emitter used for lifecycle notifications."""

from __future__ import annotations

import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)

Listener = Callable[..., Any]


class EventEmitter:
    """Named events with ordered listeners.

    Listeners run synchronously in subscription order; a failing listener is
    logged and does not stop the others.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = {}

    def on(self, event: str, listener: Listener) -> None:
        self._listeners.setdefault(event, []).append(listener)

    def off(self, event: str, listener: Listener) -> None:
        listeners = self._listeners.get(event, [])
        if listener in listeners:
            listeners.remove(listener)

    def emit(self, event: str, *args: Any) -> int:
        """Call every listener of ``event``. Returns how many were called."""

        listeners = list(self._listeners.get(event, []))
        for listener in listeners:
            try:
                listener(*args)
            except Exception:
                logger.exception(
                    "event.listener_failed",
                    extra={"event": event, "emitter": type(self).__name__},
                )
        return len(listeners)
