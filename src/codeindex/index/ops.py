"""Per-workspace index orchestration.

This module implements the IndexOrchestrator - the single writer of file
state, chunks and tokens for one workspace. It drives the lifecycle:

    Idle -> Building -> Ready;  Ready <-> Paused;  any -> Error;  Error -> Building

SERIALIZATION:
- One full build at a time. Concurrent build_full_index calls join the
  running build instead of starting another.
- _rebuilding guard: set synchronously before the first suspension point, so
  a second rebuild_workspace_index observes it and only reports status.
- Per-file asyncio.Lock plus a generation counter. A pass that finds a newer
  generation queued for its file discards its results before committing.

Per-file pipeline (hash gate first, so unchanged files cost one read):
    read -> hash gate -> chunk/tokenize/extract symbols -> embed (sink)
         -> one transaction: delete rows of uri, write file/chunks/tokens/
            embeddings/graph -> in-memory graph update

Files are processed by a bounded worker pool (indexer.max_workers). The
pause gate is checked before each file; in-flight files finish.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

import structlog

from codeindex.core.cancellation import CancellationToken, ensure_token
from codeindex.core.errors import (
    CancellationError,
    CodeIndexError,
    EmbeddingProviderError,
    InternalError,
)
from codeindex.core.events import Emitter
from codeindex.index._internal.db.storage import DiscoveredFile
from codeindex.index._internal.ignore import walk_workspace
from codeindex.index._internal.indexing.chunking import (
    Chunk,
    TokenPosting,
    chunk_content,
    content_hash,
    detect_language_id,
    tokenize,
    tokenize_terms,
    truncate_content,
)
from codeindex.index._internal.indexing.symbols import FileGraph, SymbolExtractor
from codeindex.index.bundler import ContextBundler
from codeindex.index.models import (
    ChangeKind,
    ContextBundle,
    FileChange,
    FileState,
    IndexDiagnostics,
    IndexState,
    IndexStatus,
    SCHEMA_VERSION,
    SearchOptions,
    SemanticSearchResult,
    WorkspaceIdentity,
)
from codeindex.index.search import HybridSearcher

if TYPE_CHECKING:
    from codeindex.config.models import CodeIndexConfig
    from codeindex.index._internal.db.storage import WorkspaceStore
    from codeindex.index._internal.indexing.graph import GraphStore, InMemoryGraphStore
    from codeindex.index._internal.indexing.vectors import FileEmbeddings, VectorSink
    from codeindex.index.models import FileRecord

log = structlog.get_logger()

BackendKind = Literal["local", "cloud"]

# Bytes inspected for NUL when deciding whether a file is binary
_BINARY_PROBE_BYTES = 8192


class FileOutcome(str, Enum):
    INDEXED = "indexed"
    SKIPPED = "skipped"
    DELETED = "deleted"
    ERROR = "error"
    SUPERSEDED = "superseded"


@dataclass
class RunStats:
    """Per-outcome file counts of one build or refresh."""

    outcomes: dict[FileOutcome, int] = field(default_factory=dict)
    duration_seconds: float = 0.0

    def record(self, outcome: FileOutcome) -> None:
        self.outcomes[outcome] = self.outcomes.get(outcome, 0) + 1

    def count(self, outcome: FileOutcome) -> int:
        return self.outcomes.get(outcome, 0)

    def to_dict(self) -> dict[str, Any]:
        return {
            **{o.value: self.count(o) for o in FileOutcome},
            "duration_seconds": round(self.duration_seconds, 3),
        }


@dataclass
class _PreparedFile:
    path: str
    uri: str
    content_hash: str
    language_id: str | None
    mtime: float
    size: int
    truncated: bool
    chunks: list[Chunk]
    postings: list[list[TokenPosting]]
    token_counts: list[int]
    graph: FileGraph


def read_text(path: Path) -> tuple[str, float, int] | None:
    """(text, mtime, size), or None when the file is gone.

    Binary or undecodable content reads as empty text.
    """
    try:
        stat = path.stat()
        data = path.read_bytes()
    except (FileNotFoundError, NotADirectoryError, IsADirectoryError):
        return None
    if b"\x00" in data[:_BINARY_PROBE_BYTES]:
        return "", stat.st_mtime, stat.st_size
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        return "", stat.st_mtime, stat.st_size
    return text, stat.st_mtime, stat.st_size


class IndexOrchestrator:
    """
    Index lifecycle for one workspace over one vector sink.

    Usage::

        orchestrator = IndexOrchestrator(workspace, store, sink, graph, config)
        await orchestrator.build_full_index()
        results = await orchestrator.search("parse config")
        await orchestrator.refresh_paths([Path("src/a.py")])
    """

    def __init__(
        self,
        workspace: WorkspaceIdentity,
        store: WorkspaceStore,
        sink: VectorSink,
        graph: GraphStore | InMemoryGraphStore,
        config: CodeIndexConfig,
        *,
        backend: BackendKind = "local",
        extractor: SymbolExtractor | None = None,
    ) -> None:
        self.workspace = workspace
        self.store = store
        self.sink = sink
        self.graph = graph
        self.backend = backend
        self._config = config
        self._extractor = extractor or SymbolExtractor()
        self.searcher = HybridSearcher(store, sink, config.search)
        self.bundler = ContextBundler(store, self.searcher, graph, config.search)

        self.on_status_changed: Emitter[IndexStatus] = Emitter("index.status_changed")

        self._state = IndexState.IDLE
        self._state_before_pause = IndexState.IDLE
        self._paused_reason: str | None = None
        self._last_error: str | None = None

        # Pause gate: set while running
        self._resume_event = asyncio.Event()
        self._resume_event.set()
        self._deferred: dict[str, None] = {}

        self._file_locks: dict[str, asyncio.Lock] = {}
        self._generations: dict[str, int] = {}

        self._build_task: asyncio.Task[IndexStatus] | None = None
        self._build_token: CancellationToken | None = None
        self._rebuild_task: asyncio.Task[IndexStatus] | None = None
        self._rebuilding = False
        self._background: set[asyncio.Task[Any]] = set()

        self._prepared = False
        self._prepare_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @property
    def state(self) -> IndexState:
        return self._state

    @property
    def is_paused(self) -> bool:
        return not self._resume_event.is_set()

    @property
    def is_rebuilding(self) -> bool:
        return self._rebuilding

    async def get_status(self) -> IndexStatus:
        """Aggregate recomputed from the tables."""
        counts = await asyncio.to_thread(self.store.counts)
        return IndexStatus(
            workspace_id=self.workspace.id,
            state=self._state,
            total_files=counts.total_files,
            indexed_files=counts.indexed_files,
            total_chunks=counts.total_chunks,
            embedded_chunks=counts.embedded_chunks,
            paused=self.is_paused,
            paused_reason=self._paused_reason,
            last_error=self._last_error,
            model_download_state=self.sink.download_state,
            embedding_model=self.sink.model_id,
            last_indexed_time=counts.last_indexed_time,
            rebuilding=self._rebuilding,
        )

    async def _emit_status(self) -> IndexStatus:
        status = await self.get_status()
        self.on_status_changed.fire(status)
        return status

    async def _transition(self, state: IndexState) -> None:
        if state == self._state:
            return
        log.info(
            "index.state_changed",
            workspace=self.workspace.id,
            backend=self.backend,
            from_state=self._state.value,
            to_state=state.value,
        )
        self._state = state
        await self._emit_status()

    async def _fail(self, message: str) -> IndexStatus:
        self._last_error = message
        log.error("index.workspace_failed", workspace=self.workspace.id, error=message)
        await self._transition(IndexState.ERROR)
        return await self.get_status()

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------

    async def _prepare(self) -> None:
        async with self._prepare_lock:
            if self._prepared:
                return
            await self.sink.prepare()
            self._prepared = True

    async def build_full_index(self, token: CancellationToken | None = None) -> IndexStatus:
        """Enumerate, then index every file that is not already up to date.

        A second call while a build (or rebuild) runs joins it. Workspace-level
        failures end in ``Error`` state and are reported, not raised.
        """
        if self._rebuild_task is not None and not self._rebuild_task.done():
            await asyncio.shield(self._rebuild_task)
            return await self.get_status()
        if self._build_task is not None and not self._build_task.done():
            await asyncio.shield(self._build_task)
            return await self.get_status()
        return await self._start_build(token)

    async def _start_build(self, token: CancellationToken | None) -> IndexStatus:
        self._build_token = CancellationToken(token)
        self._build_task = asyncio.create_task(self._run_build(self._build_token))
        return await self._build_task

    async def _run_build(self, token: CancellationToken) -> IndexStatus:
        prior = self._state if self._state != IndexState.BUILDING else IndexState.IDLE
        start = time.monotonic()
        stats = RunStats()
        self._last_error = None
        await self._transition(IndexState.PAUSED if self.is_paused else IndexState.BUILDING)
        log.info("index.build_started", workspace=self.workspace.id, backend=self.backend)
        try:
            await self._prepare()
            present, removed = await asyncio.to_thread(self._discover)
            for path in removed:
                token.raise_if_cancelled("build_full_index")
                stats.record(await self._with_file_lock(path, token, self._remove_locked))
            await self._process_many(present, token, stats)
            token.raise_if_cancelled("build_full_index")
        except CancellationError:
            log.info("index.build_cancelled", workspace=self.workspace.id)
            await self._transition(prior)
            raise
        except CodeIndexError as e:
            return await self._fail(e.message)
        except Exception as e:
            log.exception("index.build_crashed", workspace=self.workspace.id)
            return await self._fail(InternalError.unexpected(str(e)).message)

        stats.duration_seconds = time.monotonic() - start
        log.info(
            "index.build_completed",
            workspace=self.workspace.id,
            backend=self.backend,
            **stats.to_dict(),
        )
        if self.is_paused:
            self._state_before_pause = IndexState.READY
        else:
            await self._transition(IndexState.READY)
        return await self._emit_status()

    def _discover(self) -> tuple[list[str], list[str]]:
        """Walk the workspace, register files. Returns (present, removed) paths."""
        root = self.workspace.root_path
        rel_paths = walk_workspace(
            root,
            max_files=self._config.index.max_files,
            excluded_extensions=self._config.index.excluded_extensions,
        )
        discovered: list[DiscoveredFile] = []
        for rel in rel_paths:
            full = root / rel
            try:
                stat = full.stat()
            except OSError:
                continue
            discovered.append(
                DiscoveredFile(
                    path=rel,
                    uri=full.as_uri(),
                    mtime=stat.st_mtime,
                    size=stat.st_size,
                    language_id=detect_language_id(rel),
                )
            )
        self.store.reset_interrupted()
        added = self.store.register_files(discovered)
        present = {f.path for f in discovered}
        live = self.store.list_files(
            states=[s for s in FileState if s != FileState.DELETED]
        )
        removed = sorted(r.path for r in live if r.path not in present)
        log.info(
            "index.discovered",
            workspace=self.workspace.id,
            files=len(present),
            new=added,
            removed=len(removed),
        )
        return sorted(present), removed

    async def _process_many(
        self, paths: Iterable[str], token: CancellationToken, stats: RunStats
    ) -> None:
        queue: asyncio.Queue[str] = asyncio.Queue()
        for path in dict.fromkeys(paths):
            queue.put_nowait(path)
        if queue.empty():
            return
        workers = [
            asyncio.create_task(self._worker(queue, token, stats))
            for _ in range(min(self._config.indexer.max_workers, queue.qsize()))
        ]
        try:
            await asyncio.gather(*workers)
        except BaseException:
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            raise

    async def _worker(
        self, queue: asyncio.Queue[str], token: CancellationToken, stats: RunStats
    ) -> None:
        while True:
            try:
                path = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            # Pause gate: no new file starts while paused
            await token.wait_for(self._resume_event)
            token.raise_if_cancelled("index_file")
            stats.record(await self._with_file_lock(path, token, self._index_locked))

    # ------------------------------------------------------------------
    # Per-file
    # ------------------------------------------------------------------

    async def _with_file_lock(self, path: str, token: CancellationToken, fn: Any) -> FileOutcome:
        generation = self._generations.get(path, 0) + 1
        self._generations[path] = generation
        lock = self._file_locks.setdefault(path, asyncio.Lock())
        async with lock:
            if self._generations[path] != generation:
                return FileOutcome.SUPERSEDED
            uri = (self.workspace.root_path / path).as_uri()
            try:
                return await fn(path, uri, generation, token)
            except CancellationError:
                raise
            except CodeIndexError as e:
                await self._file_failed(path, uri, e.message)
                return FileOutcome.ERROR
            except Exception as e:
                log.exception("index.file_crashed", path=path)
                await self._file_failed(path, uri, str(e))
                return FileOutcome.ERROR

    async def _file_failed(self, path: str, uri: str, message: str) -> None:
        self._last_error = f"{path}: {message}"
        log.warning("index.file_failed", workspace=self.workspace.id, path=path, error=message)
        # If the database itself is gone this raises and aborts the batch
        await asyncio.to_thread(self.store.mark_error, path, uri, message)

    def _superseded(self, path: str, generation: int) -> bool:
        return self._generations.get(path) != generation

    async def _index_locked(
        self, path: str, uri: str, generation: int, token: CancellationToken
    ) -> FileOutcome:
        record = await asyncio.to_thread(self.store.get_file, path)
        read = await asyncio.to_thread(read_text, self.workspace.root_path / path)
        if read is None:
            return await self._remove_locked(path, uri, generation, token)

        text, mtime, size = read
        max_bytes = self._config.index.max_file_size_kb * 1024
        text, truncated = truncate_content(text, max_bytes)
        digest = content_hash(text)
        if (
            record is not None
            and record.state == FileState.INDEXED.value
            and record.content_hash == digest
            and record.embedding_model == self.sink.model_id
        ):
            log.debug("index.file_unchanged", path=path)
            return FileOutcome.SKIPPED
        if truncated:
            log.warning("index.file_truncated", path=path, max_bytes=max_bytes)

        prior_state = FileState(record.state) if record is not None else FileState.UNINDEXED
        await asyncio.to_thread(
            self.store.upsert_document, path, uri, state=FileState.INDEXING
        )
        try:
            prepared = await asyncio.to_thread(
                self._prepare_file, path, uri, text, digest, mtime, size, truncated
            )
            token.raise_if_cancelled("index_file")
            previous_chunks = record.chunk_count if record is not None else 0
            embeddings = await self.sink.embed_file(
                self.store, path, prepared.chunks, previous_chunks, token
            )
            token.raise_if_cancelled("index_file")
        except (CancellationError, asyncio.CancelledError):
            await asyncio.to_thread(self.store.upsert_document, path, uri, state=prior_state)
            raise

        if self._superseded(path, generation):
            log.debug("index.file_superseded", path=path)
            await asyncio.to_thread(self.store.upsert_document, path, uri, state=prior_state)
            return FileOutcome.SUPERSEDED

        await asyncio.to_thread(self._write_file, prepared, embeddings)
        if not self.graph.persistent:
            self.graph.update_from_file(prepared.graph)
        log.debug(
            "index.file_indexed",
            path=path,
            chunks=len(prepared.chunks),
            embedding_state=embeddings.state.value,
        )
        return FileOutcome.INDEXED

    def _prepare_file(
        self,
        path: str,
        uri: str,
        text: str,
        digest: str,
        mtime: float,
        size: int,
        truncated: bool,
    ) -> _PreparedFile:
        language_id = detect_language_id(path)
        chunks = chunk_content(path, text, language_id, self._config.index.chunk_size_lines)
        return _PreparedFile(
            path=path,
            uri=uri,
            content_hash=digest,
            language_id=language_id,
            mtime=mtime,
            size=size,
            truncated=truncated,
            chunks=chunks,
            postings=[tokenize(c.content) for c in chunks],
            token_counts=[len(tokenize_terms(c.content)) for c in chunks],
            graph=self._extractor.extract(path, uri, text, language_id),
        )

    def _write_file(self, prepared: _PreparedFile, embeddings: FileEmbeddings) -> None:
        """Replace everything the file owns in one transaction."""
        with self.store.transaction() as s:
            self.store.delete_for_uri(prepared.uri, session=s)
            record = self.store.upsert_document(
                prepared.path,
                prepared.uri,
                session=s,
                mtime=prepared.mtime,
                size=prepared.size,
                content_hash=prepared.content_hash,
                language_id=prepared.language_id,
                state=FileState.INDEXED,
                last_indexed_time=time.time(),
                chunk_count=len(prepared.chunks),
                embedding_state=embeddings.state,
                embedding_model=embeddings.model_id,
                truncated=prepared.truncated,
                last_error=embeddings.error,
            )
            assert record.id is not None
            for chunk, postings, count in zip(
                prepared.chunks, prepared.postings, prepared.token_counts, strict=True
            ):
                self.store.upsert_chunk(record.id, prepared.uri, chunk, count, session=s)
                self.store.insert_tokens(chunk.id, postings, session=s)
            for row in embeddings.records:
                self.store.upsert_embedding(row, session=s)
            if self.graph.persistent:
                self.graph.update_from_file(prepared.graph, session=s)

    async def _remove_locked(
        self, path: str, uri: str, generation: int, token: CancellationToken
    ) -> FileOutcome:
        record: FileRecord | None = await asyncio.to_thread(self.store.get_file, path)
        if record is None or record.state == FileState.DELETED.value:
            return FileOutcome.SKIPPED
        try:
            await self.sink.remove_file(path, record.chunk_count)
        except EmbeddingProviderError as e:
            log.warning("index.remote_delete_failed", path=path, error=e.message)
        await asyncio.to_thread(self.store.mark_deleted, path)
        if not self.graph.persistent:
            self.graph.delete_file(record.uri)
        log.debug("index.file_deleted", path=path)
        return FileOutcome.DELETED

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def _relative(self, item: str | Path | FileChange) -> str | None:
        raw = item.path if isinstance(item, FileChange) else item
        path = Path(raw)
        root = self.workspace.root_path
        if path.is_absolute():
            try:
                path = path.resolve().relative_to(root)
            except ValueError:
                log.warning("index.path_outside_workspace", path=str(raw), root=str(root))
                return None
        return path.as_posix()

    async def refresh_paths(
        self,
        paths: Iterable[str | Path | FileChange],
        token: CancellationToken | None = None,
    ) -> RunStats:
        """Re-index a subset of files; unchanged content is skipped by hash.

        While paused, paths are remembered and processed on resume.
        """
        token = ensure_token(token)
        stats = RunStats()
        rel_paths = [p for p in (self._relative(i) for i in paths) if p is not None]
        if not rel_paths:
            return stats
        if self.is_paused:
            self._deferred.update(dict.fromkeys(rel_paths))
            log.info("index.refresh_deferred", count=len(rel_paths), reason=self._paused_reason)
            return stats

        start = time.monotonic()
        try:
            await self._prepare()
            await self._process_many(rel_paths, token, stats)
        except CancellationError:
            log.info("index.refresh_cancelled", workspace=self.workspace.id)
            raise
        except CodeIndexError as e:
            await self._fail(e.message)
            return stats
        stats.duration_seconds = time.monotonic() - start
        log.info("index.refresh_completed", workspace=self.workspace.id, **stats.to_dict())
        await self._emit_status()
        return stats

    async def apply_changes(
        self, changes: Iterable[FileChange], token: CancellationToken | None = None
    ) -> RunStats:
        """Host change notifications. Deletions need no read, the rest go through refresh."""
        changes = list(changes)
        deleted = [c for c in changes if c.kind == ChangeKind.DELETED]
        stats = await self.refresh_paths([c for c in changes if c.kind != ChangeKind.DELETED], token)
        if deleted and not self.is_paused:
            token = ensure_token(token)
            for change in deleted:
                rel = self._relative(change)
                if rel is not None:
                    stats.record(await self._with_file_lock(rel, token, self._remove_locked))
            await self._emit_status()
        elif deleted:
            await self.refresh_paths(deleted, token)
        return stats

    # ------------------------------------------------------------------
    # Pause / resume
    # ------------------------------------------------------------------

    async def pause(self, reason: str = "user") -> IndexStatus:
        """In-flight files finish; no new file starts until resume()."""
        if not self.is_paused:
            self._state_before_pause = self._state
            self._paused_reason = reason
            self._resume_event.clear()
            log.info("index.paused", workspace=self.workspace.id, reason=reason)
            await self._transition(IndexState.PAUSED)
        return await self.get_status()

    async def resume(self) -> IndexStatus:
        if not self.is_paused:
            return await self.get_status()
        self._paused_reason = None
        self._resume_event.set()
        building = self._build_task is not None and not self._build_task.done()
        if building:
            target = IndexState.BUILDING
        elif self._state_before_pause in (IndexState.BUILDING, IndexState.PAUSED):
            target = IndexState.READY
        else:
            target = self._state_before_pause
        log.info("index.resumed", workspace=self.workspace.id)
        await self._transition(target)

        if self._deferred:
            deferred = list(self._deferred)
            self._deferred.clear()
            self._spawn(self.refresh_paths(deferred))
        return await self.get_status()

    def _spawn(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def wait_idle(self) -> None:
        """Wait for the running build and any deferred refresh scheduled by resume()."""
        pending = [t for t in (self._rebuild_task, self._build_task) if t is not None]
        pending.extend(self._background)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # Rebuild / delete
    # ------------------------------------------------------------------

    async def _stop_build(self) -> None:
        task, build_token = self._build_task, self._build_token
        if task is None or task.done():
            return
        if build_token is not None:
            build_token.cancel()
        try:
            await task
        except CancellationError:
            pass

    async def rebuild_workspace_index(
        self, reason: str = "user", token: CancellationToken | None = None
    ) -> IndexStatus:
        """Drop every row and namespace vector of the workspace, then build.

        A call while a rebuild is running is a no-op that reports status.
        """
        if self._rebuilding:
            log.info("index.rebuild_in_progress", workspace=self.workspace.id, reason=reason)
            return await self.get_status()
        self._rebuilding = True
        self._rebuild_task = asyncio.create_task(self._run_rebuild(reason, token))
        return await self._rebuild_task

    async def _run_rebuild(self, reason: str, token: CancellationToken | None) -> IndexStatus:
        try:
            log.warning("index.rebuild_started", workspace=self.workspace.id, reason=reason)
            await self._stop_build()
            if self.is_paused:
                self._paused_reason = None
                self._resume_event.set()
            self._deferred.clear()
            await self._transition(IndexState.BUILDING)
            try:
                await self._clear_all()
            except CodeIndexError as e:
                return await self._fail(e.message)
            return await self._start_build(token)
        finally:
            self._rebuilding = False

    async def _clear_all(self) -> None:
        try:
            await self.sink.clear()
        except EmbeddingProviderError as e:
            self._last_error = e.message
            log.warning("index.namespace_clear_failed", workspace=self.workspace.id, error=e.message)
        await asyncio.to_thread(self.store.clear)
        await asyncio.to_thread(self.graph.clear)
        self._generations.clear()

    async def delete_index(self) -> IndexStatus:
        """Drop all rows and remote vectors of the workspace."""
        await self._stop_build()
        for task in list(self._background):
            task.cancel()
        self._deferred.clear()
        await self._clear_all()
        self._last_error = None
        log.warning("index.deleted", workspace=self.workspace.id, backend=self.backend)
        self._state = IndexState.UNINITIALIZED
        return await self._emit_status()

    # ------------------------------------------------------------------
    # Read surface
    # ------------------------------------------------------------------

    async def search(
        self,
        query: str,
        options: SearchOptions | None = None,
        token: CancellationToken | None = None,
    ) -> list[SemanticSearchResult]:
        return await self.searcher.search(query, options, token)

    async def get_context_for_mcp(
        self,
        query: str,
        *,
        focus_path: str | None = None,
        max_snippets: int | None = None,
        max_tokens: int | None = None,
        token: CancellationToken | None = None,
    ) -> ContextBundle:
        status = await self.get_status()
        return await self.bundler.bundle(
            query,
            status,
            focus_path=focus_path,
            max_snippets=max_snippets,
            max_tokens=max_tokens,
            engine_metadata={"backend": self.backend, "embedding_model": self.sink.model_id},
            token=token,
        )

    async def get_diagnostics(self, sample_query: str | None = None) -> IndexDiagnostics:
        status = await self.get_status()
        sink_info = await self.sink.diagnostics()
        graph_stats = await asyncio.to_thread(self.graph.get_stats)
        file_errors = await asyncio.to_thread(self.store.file_errors)
        schema_version = await asyncio.to_thread(self.store.db.schema_version)
        sample_hits = None
        if sample_query:
            sample_hits = len(await self.search(sample_query))
        return IndexDiagnostics(
            status=status,
            backend=self.backend,
            db_path=str(self.store.db_path),
            schema_version=schema_version if schema_version is not None else SCHEMA_VERSION,
            embedding_model=sink_info.get("embedding_model"),
            embedding_dimension=sink_info.get("embedding_dimension"),
            graph_nodes=graph_stats.node_count,
            graph_edges=graph_stats.edge_count,
            namespace=sink_info.get("namespace"),
            remote_vector_count=sink_info.get("remote_vector_count"),
            remote_connected=sink_info.get("remote_connected"),
            sample_query_hits=sample_hits,
            file_errors=file_errors,
        )

    async def close(self) -> None:
        await self._stop_build()
        for task in list(self._background):
            task.cancel()
        await self.sink.aclose()
