"""Composite router: one entry point over the local and cloud backends.

Exactly one backend kind is active at a time (cloud wins when both flags
are on). Backends are constructed lazily on first use and cached per
``(kind, workspace_id)``; toggling the flags switches which cached instance
answers but never discards one, so counts survive a round trip.

Construction is coalesced through a shared asyncio.Task: concurrent first
calls await the same task, and a failed task is dropped so the next call
retries. When both backends are disabled every operation returns a
disabled sentinel instead of raising.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from pathlib import Path

import structlog

from codeindex.cloud.memory import InMemoryVectorStore
from codeindex.cloud.namespace import namespace_for, resolve_user_id, workspace_hash
from codeindex.cloud.pinecone import PineconeVectorStore
from codeindex.cloud.voyage import VoyageEmbeddingClient
from codeindex.config.models import CodeIndexConfig
from codeindex.core.cancellation import CancellationToken
from codeindex.core.errors import CodeIndexError, ConfigurationError
from codeindex.core.events import Emitter
from codeindex.core.logging import set_request_id
from codeindex.index._internal.db.storage import StorageManager
from codeindex.index._internal.indexing.embedding import LocalEmbeddingService
from codeindex.index._internal.indexing.graph import GraphStore, InMemoryGraphStore
from codeindex.index._internal.indexing.vectors import (
    CloudVectorSink,
    LocalVectorSink,
    VectorSink,
)
from codeindex.index.models import (
    ContextBundle,
    FileChange,
    IndexDiagnostics,
    IndexState,
    IndexStatus,
    SearchOptions,
    SemanticSearchResult,
    WorkspaceIdentity,
)
from codeindex.index.ops import BackendKind, IndexOrchestrator, RunStats

log = structlog.get_logger()

BackendKey = tuple[BackendKind, str]
BackendFactory = Callable[[BackendKind, WorkspaceIdentity], Awaitable[IndexOrchestrator]]
WorkspaceRef = WorkspaceIdentity | Path | str


def build_cloud_sink(config: CodeIndexConfig, workspace: WorkspaceIdentity) -> CloudVectorSink:
    cloud = config.cloud
    if cloud.voyage_api_key is None or not cloud.voyage_api_key.get_secret_value():
        raise ConfigurationError.missing_required("cloud.voyage_api_key")
    client = VoyageEmbeddingClient(
        cloud.voyage_api_key.get_secret_value(),
        model=cloud.voyage_model,
        dimension=cloud.dimension,
        base_url=cloud.voyage_base_url,
        batch_size=cloud.embedding_batch_size,
        rate_limit_rpm=cloud.rate_limit_rpm,
        timeout=cloud.request_timeout_sec,
    )
    if cloud.pinecone_api_key is not None and cloud.pinecone_index_host:
        vectors: PineconeVectorStore | InMemoryVectorStore = PineconeVectorStore(
            cloud.pinecone_api_key.get_secret_value(),
            cloud.pinecone_index_host,
            dimension=cloud.dimension,
            timeout=cloud.request_timeout_sec,
        )
    else:
        log.warning("router.vector_store_in_memory", workspace=workspace.id)
        vectors = InMemoryVectorStore(cloud.dimension)
    return CloudVectorSink(
        client,
        vectors,
        namespace=namespace_for(resolve_user_id(cloud.user_id), workspace.root_path),
        ws_hash=workspace_hash(workspace.root_path),
        batch_size=cloud.embedding_batch_size,
    )


def default_factory(config: CodeIndexConfig, storage: StorageManager) -> BackendFactory:
    """Backends sharing one workspace database; only the vector sink differs."""

    async def create(kind: BackendKind, workspace: WorkspaceIdentity) -> IndexOrchestrator:
        store = await asyncio.to_thread(storage.open, workspace)
        graph = GraphStore(store) if config.index.graph_enabled else InMemoryGraphStore()
        sink: VectorSink
        if kind == "cloud":
            sink = build_cloud_sink(config, workspace)
        else:
            sink = LocalVectorSink(LocalEmbeddingService(config.embedding))
        return IndexOrchestrator(workspace, store, sink, graph, config, backend=kind)

    return create


def _identity(workspace: WorkspaceRef) -> WorkspaceIdentity:
    if isinstance(workspace, WorkspaceIdentity):
        return workspace
    return WorkspaceIdentity.from_path(workspace)


class CompositeIndexService:
    """Index/search contract delegated to the configured backend."""

    def __init__(
        self,
        config: CodeIndexConfig | None = None,
        *,
        storage: StorageManager | None = None,
        factory: BackendFactory | None = None,
    ) -> None:
        self._config = config or CodeIndexConfig()
        self.storage = storage or StorageManager(self._config.storage)
        self._factory = factory or default_factory(self._config, self.storage)
        self._backends: dict[BackendKey, IndexOrchestrator] = {}
        self._pending: dict[BackendKey, asyncio.Task[IndexOrchestrator]] = {}
        self._unsubscribe: dict[BackendKey, Callable[[], None]] = {}
        self.on_status_changed: Emitter[IndexStatus] = Emitter("router.status_changed")

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    @property
    def config(self) -> CodeIndexConfig:
        return self._config

    @property
    def active_kind(self) -> BackendKind | None:
        if self._config.index.cloud_enabled:
            return "cloud"
        if self._config.index.local_enabled:
            return "local"
        return None

    def set_enabled(self, *, local: bool | None = None, cloud: bool | None = None) -> None:
        """Toggle backends. Cached instances are kept for when they come back."""
        index = self._config.index
        if local is not None:
            index.local_enabled = local
        if cloud is not None:
            index.cloud_enabled = cloud
        log.info(
            "router.toggled",
            local=index.local_enabled,
            cloud=index.cloud_enabled,
            active=self.active_kind,
        )

    def subscribe(self, listener: Callable[[IndexStatus], None]) -> Callable[[], None]:
        return self.on_status_changed.subscribe(listener)

    # ------------------------------------------------------------------
    # Backend lifecycle
    # ------------------------------------------------------------------

    async def get_backend(self, workspace: WorkspaceRef) -> IndexOrchestrator:
        """Active backend for ``workspace``, constructing it on first use.

        Raises ConfigurationError.feature_disabled when both backends are off.
        """
        kind = self.active_kind
        if kind is None:
            raise ConfigurationError.feature_disabled("index")
        identity = _identity(workspace)
        key: BackendKey = (kind, identity.id)
        backend = self._backends.get(key)
        if backend is not None:
            return backend

        task = self._pending.get(key)
        if task is None:
            task = asyncio.create_task(self._construct(key, identity))
            self._pending[key] = task
            task.add_done_callback(lambda t, key=key: self._forget_pending(key, t))
        return await asyncio.shield(task)

    def _forget_pending(self, key: BackendKey, task: asyncio.Task[IndexOrchestrator]) -> None:
        if self._pending.get(key) is task:
            del self._pending[key]

    async def _construct(self, key: BackendKey, workspace: WorkspaceIdentity) -> IndexOrchestrator:
        kind, _ = key
        try:
            backend = await self._factory(kind, workspace)
        except Exception as e:
            log.warning("router.backend_failed", backend=kind, workspace=workspace.id, error=str(e))
            raise
        self._backends[key] = backend
        self._unsubscribe[key] = backend.on_status_changed.subscribe(
            lambda status, kind=kind: self._forward(kind, status)
        )
        log.info("router.backend_created", backend=kind, workspace=workspace.id)
        return backend

    def _forward(self, kind: BackendKind, status: IndexStatus) -> None:
        if kind == self.active_kind:
            self.on_status_changed.fire(status)

    def cached_backends(self, workspace: WorkspaceRef) -> list[IndexOrchestrator]:
        workspace_id = _identity(workspace).id
        return [b for (_, ws), b in self._backends.items() if ws == workspace_id]

    async def _evict(self, key: BackendKey) -> None:
        backend = self._backends.pop(key, None)
        unsubscribe = self._unsubscribe.pop(key, None)
        if unsubscribe is not None:
            unsubscribe()
        if backend is not None:
            await backend.close()

    # ------------------------------------------------------------------
    # Control surface
    # ------------------------------------------------------------------

    async def _status(self, workspace: WorkspaceRef) -> IndexStatus:
        backend = await self.get_backend(workspace)
        return await backend.get_status()

    async def get_status(self, workspace: WorkspaceRef) -> IndexStatus:
        """Never blocks longer than ``timeouts.status_sec``."""
        identity = _identity(workspace)
        if self.active_kind is None:
            return IndexStatus.disabled_sentinel(identity.id)
        timeout = self._config.timeouts.status_sec
        try:
            return await asyncio.wait_for(self._status(identity), timeout=timeout)
        except TimeoutError:
            log.warning("router.status_timeout", workspace=identity.id, timeout_sec=timeout)
            return IndexStatus.default(identity.id)
        except CodeIndexError as e:
            return IndexStatus(workspace_id=identity.id, state=IndexState.ERROR, last_error=e.message)

    async def build_full_index(
        self, workspace: WorkspaceRef, token: CancellationToken | None = None
    ) -> IndexStatus:
        identity = _identity(workspace)
        if self.active_kind is None:
            return IndexStatus.disabled_sentinel(identity.id)
        set_request_id()
        backend = await self.get_backend(identity)
        return await backend.build_full_index(token)

    async def refresh_paths(
        self,
        workspace: WorkspaceRef,
        paths: Iterable[str | Path | FileChange],
        token: CancellationToken | None = None,
    ) -> RunStats:
        if self.active_kind is None:
            return RunStats()
        set_request_id()
        backend = await self.get_backend(workspace)
        return await backend.refresh_paths(paths, token)

    async def apply_changes(
        self,
        workspace: WorkspaceRef,
        changes: Iterable[FileChange],
        token: CancellationToken | None = None,
    ) -> RunStats:
        if self.active_kind is None:
            return RunStats()
        backend = await self.get_backend(workspace)
        return await backend.apply_changes(changes, token)

    async def pause(self, workspace: WorkspaceRef, reason: str = "user") -> IndexStatus:
        identity = _identity(workspace)
        if self.active_kind is None:
            return IndexStatus.disabled_sentinel(identity.id)
        return await (await self.get_backend(identity)).pause(reason)

    async def resume(self, workspace: WorkspaceRef) -> IndexStatus:
        identity = _identity(workspace)
        if self.active_kind is None:
            return IndexStatus.disabled_sentinel(identity.id)
        return await (await self.get_backend(identity)).resume()

    async def rebuild_workspace_index(
        self,
        workspace: WorkspaceRef,
        reason: str = "user",
        token: CancellationToken | None = None,
    ) -> IndexStatus:
        identity = _identity(workspace)
        if self.active_kind is None:
            return IndexStatus.disabled_sentinel(identity.id)
        set_request_id()
        backend = await self.get_backend(identity)
        return await backend.rebuild_workspace_index(reason, token)

    async def delete_index(self, workspace: WorkspaceRef) -> bool:
        """Drop rows and namespace vectors of every cached backend, then the database.

        Returns True when a workspace directory was removed.
        """
        identity = _identity(workspace)
        if self.active_kind is not None:
            # Make sure the active backend exists so its remote namespace is cleared too
            await self.get_backend(identity)
        for key in [k for k in self._backends if k[1] == identity.id]:
            backend = self._backends[key]
            status = await backend.delete_index()
            self.on_status_changed.fire(status)
            await self._evict(key)
        removed = await asyncio.to_thread(self.storage.delete, identity)
        log.warning("router.index_deleted", workspace=identity.id, removed=removed)
        return removed

    async def get_diagnostics(
        self, workspace: WorkspaceRef, sample_query: str | None = None
    ) -> IndexDiagnostics:
        identity = _identity(workspace)
        if self.active_kind is None:
            return IndexDiagnostics(
                status=IndexStatus.disabled_sentinel(identity.id), backend="disabled"
            )
        backend = await self.get_backend(identity)
        return await backend.get_diagnostics(sample_query)

    # ------------------------------------------------------------------
    # Read surface
    # ------------------------------------------------------------------

    async def search(
        self,
        workspace: WorkspaceRef,
        query: str,
        options: SearchOptions | None = None,
        token: CancellationToken | None = None,
    ) -> list[SemanticSearchResult]:
        if self.active_kind is None:
            return []
        set_request_id()
        backend = await self.get_backend(workspace)
        return await backend.search(query, options, token)

    async def get_context_for_mcp(
        self,
        workspace: WorkspaceRef,
        query: str,
        *,
        focus_path: str | None = None,
        max_snippets: int | None = None,
        max_tokens: int | None = None,
        token: CancellationToken | None = None,
    ) -> ContextBundle:
        if self.active_kind is None:
            return ContextBundle.disabled(query)
        set_request_id()
        backend = await self.get_backend(workspace)
        return await backend.get_context_for_mcp(
            query,
            focus_path=focus_path,
            max_snippets=max_snippets,
            max_tokens=max_tokens,
            token=token,
        )

    async def close(self) -> None:
        for task in list(self._pending.values()):
            task.cancel()
        for key in list(self._backends):
            await self._evict(key)
        self.storage.close_all()
