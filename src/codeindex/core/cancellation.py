"""Cooperative cancellation tokens.

A token is passed explicitly through every long-running call (build, refresh,
embed, query). Work checks ``is_cancellation_requested`` at loop and batch
boundaries and stops cleanly; nothing is interrupted mid-write.

Tokens are safe to cancel from any thread, which matters because embedding
batches run in worker threads.
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Callable

import structlog

from codeindex.core.errors import CancellationError

log = structlog.get_logger()


class CancellationToken:
    """Cancellation flag with optional parent linkage.

    A child token reports cancellation when either it or any parent was
    cancelled, so an orchestrator can cancel one build without touching the
    caller's token.
    """

    def __init__(self, *parents: CancellationToken | None) -> None:
        self._event = threading.Event()
        self._parents = tuple(p for p in parents if p is not None)
        self._callbacks: list[Callable[[], None]] = []
        self._lock = threading.Lock()

    @property
    def is_cancellation_requested(self) -> bool:
        if self._event.is_set():
            return True
        return any(p.is_cancellation_requested for p in self._parents)

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for callback in callbacks:
            try:
                callback()
            except Exception:
                log.warning("cancellation.callback_failed", exc_info=True)

    def on_cancel(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` once when this token (not a parent) is cancelled."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def raise_if_cancelled(self, operation: str) -> None:
        if self.is_cancellation_requested:
            raise CancellationError.requested(operation)

    async def wait_for(
        self, event: asyncio.Event, poll_interval: float = 0.05
    ) -> bool:
        """Wait until ``event`` is set or this token is cancelled.

        Returns True if the event was set, False on cancellation.
        """
        while not event.is_set():
            if self.is_cancellation_requested:
                return False
            try:
                await asyncio.wait_for(event.wait(), timeout=poll_interval)
            except TimeoutError:
                continue
        return not self.is_cancellation_requested


class _NeverCancelled(CancellationToken):
    def cancel(self) -> None:
        msg = "The shared NONE token cannot be cancelled"
        raise RuntimeError(msg)


NONE = _NeverCancelled()


def ensure_token(token: CancellationToken | None) -> CancellationToken:
    return token if token is not None else NONE
