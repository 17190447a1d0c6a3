"""Minimal synchronous event emitter for status-change notifications."""

from __future__ import annotations

import threading
from collections.abc import Callable
from typing import Generic, TypeVar

import structlog

log = structlog.get_logger()

T = TypeVar("T")


class Emitter(Generic[T]):
    """Fan-out of events to subscribed listeners.

    Listeners run synchronously in ``fire`` order. A failing listener is
    logged and does not prevent delivery to the others.
    """

    def __init__(self, name: str) -> None:
        self._name = name
        self._listeners: list[Callable[[T], None]] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: Callable[[T], None]) -> Callable[[], None]:
        """Register ``listener``; returns a function that unsubscribes it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def fire(self, event: T) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                log.error("events.listener_failed", emitter=self._name, exc_info=True)

    @property
    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)
