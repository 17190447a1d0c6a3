"""Background indexer: debounced queue of host file-change notifications."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from codeindex.config.models import IndexerConfig
from codeindex.core.cancellation import CancellationToken
from codeindex.core.errors import CancellationError, CodeIndexError
from codeindex.index.models import ChangeKind, FileChange, WorkspaceIdentity

if TYPE_CHECKING:
    from codeindex.index.ops import RunStats
    from codeindex.index.router import CompositeIndexService

logger = structlog.get_logger()


class IndexerState(Enum):
    """Background indexer state."""

    IDLE = "idle"
    INDEXING = "indexing"
    STOPPING = "stopping"
    STOPPED = "stopped"


@dataclass
class IndexerStatus:
    """Current indexer status."""

    state: IndexerState
    queue_size: int
    last_stats: RunStats | None = None
    last_error: str | None = None
    dropped: int = 0


@dataclass
class BackgroundIndexer:
    """
    Feeds file changes from the host to the index service.

    Design:
    - queue_changes() is cheap and never blocks the caller
    - Rapid changes to the same path collapse; the latest kind wins
    - After ``debounce_sec`` of quiet the queue is flushed in batches of
      ``batch_size`` through CompositeIndexService.apply_changes
    - Paths beyond ``queue_max_size`` are dropped and counted
    """

    service: CompositeIndexService
    workspace: WorkspaceIdentity
    config: IndexerConfig = field(default_factory=IndexerConfig)

    _state: IndexerState = field(default=IndexerState.IDLE, init=False)
    _started: bool = field(default=False, init=False)
    _pending: dict[str, FileChange] = field(default_factory=dict, init=False)
    _debounce_task: asyncio.Task[None] | None = field(default=None, init=False)
    _flush_lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False)
    _token: CancellationToken = field(default_factory=CancellationToken, init=False)
    _last_stats: RunStats | None = field(default=None, init=False)
    _last_error: str | None = field(default=None, init=False)
    _dropped: int = field(default=0, init=False)
    _on_complete: Callable[[RunStats], Awaitable[None]] | None = field(default=None, init=False)

    def start(self) -> None:
        """Start accepting changes."""
        if self._started:
            return
        self._started = True
        self._token = CancellationToken()
        self._state = IndexerState.IDLE
        logger.info("background_indexer_started", workspace=self.workspace.id)

    async def stop(self) -> None:
        """Stop gracefully. Queued changes that were not flushed are discarded."""
        if not self._started:
            self._state = IndexerState.STOPPED
            return
        self._state = IndexerState.STOPPING
        self._token.cancel()

        if self._debounce_task is not None and not self._debounce_task.done():
            self._debounce_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._debounce_task

        discarded = len(self._pending)
        self._pending.clear()
        self._started = False
        self._state = IndexerState.STOPPED
        logger.info("background_indexer_stopped", discarded=discarded)

    def queue_changes(self, changes: list[FileChange]) -> None:
        """Queue change notifications with debouncing."""
        if not self._started or self._state == IndexerState.STOPPING:
            return
        for change in changes:
            key = Path(change.path).as_posix()
            if key not in self._pending and len(self._pending) >= self.config.queue_max_size:
                self._dropped += 1
                continue
            self._pending[key] = change
        if self._dropped:
            logger.warning("changes_dropped", dropped=self._dropped)

        logger.debug("changes_queued", new=len(changes), total_pending=len(self._pending))
        self._schedule_flush()

    def queue_paths(self, paths: list[Path], kind: ChangeKind = ChangeKind.CHANGED) -> None:
        self.queue_changes([FileChange(path=p, kind=kind) for p in paths])

    def _schedule_flush(self) -> None:
        if self._debounce_task is not None and not self._debounce_task.done():
            self._debounce_task.cancel()
        self._debounce_task = asyncio.get_running_loop().create_task(self._debounced_flush())

    async def _debounced_flush(self) -> None:
        await asyncio.sleep(self.config.debounce_sec)
        await self.flush()

    async def flush(self) -> None:
        """Hand all pending changes to the index now."""
        async with self._flush_lock:
            while self._pending and self._state != IndexerState.STOPPING:
                keys = list(self._pending)[: self.config.batch_size]
                batch = [self._pending.pop(k) for k in keys]
                await self._apply(batch)

    async def _apply(self, batch: list[FileChange]) -> None:
        self._state = IndexerState.INDEXING
        try:
            stats = await self.service.apply_changes(self.workspace, batch, self._token)
            self._last_stats = stats
            self._last_error = None
            logger.info("changes_indexed", files=len(batch), **stats.to_dict())
            if self._on_complete is not None:
                await self._on_complete(stats)
        except CancellationError:
            logger.debug("changes_cancelled", files=len(batch))
        except CodeIndexError as e:
            self._last_error = e.message
            logger.error("indexing_failed", error=e.message, files=len(batch))
        finally:
            if self._state == IndexerState.INDEXING:
                self._state = IndexerState.IDLE

    def set_on_complete(self, callback: Callable[[RunStats], Awaitable[None]]) -> None:
        """Set callback to invoke after each applied batch."""
        self._on_complete = callback

    @property
    def status(self) -> IndexerStatus:
        return IndexerStatus(
            state=self._state,
            queue_size=len(self._pending),
            last_stats=self._last_stats,
            last_error=self._last_error,
            dropped=self._dropped,
        )
