"""Tests for CompositeIndexService routing, caching and degradation."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable, Sequence
from pathlib import Path

import numpy as np
import pytest
import pytest_asyncio
from pydantic import SecretStr

from codeindex.cloud.memory import InMemoryVectorStore
from codeindex.config.models import CodeIndexConfig, TimeoutsConfig
from codeindex.core.cancellation import CancellationToken
from codeindex.core.errors import ConfigurationError, ErrorCode
from codeindex.index._internal.db import StorageManager
from codeindex.index._internal.indexing.embedding import LocalEmbeddingService
from codeindex.index._internal.indexing.graph import GraphStore
from codeindex.index._internal.indexing.vectors import CloudVectorSink, LocalVectorSink, VectorSink
from codeindex.index.models import IndexFreshness, IndexState, IndexStatus, WorkspaceIdentity
from codeindex.index.ops import BackendKind, IndexOrchestrator
from codeindex.index.router import CompositeIndexService, build_cloud_sink


class FakeEmbeddingClient:
    model_id = "fake-remote"
    dimension = 8

    async def embed(
        self, texts: Sequence[str], input_type: str = "document", token: CancellationToken | None = None
    ) -> np.ndarray:
        out = np.zeros((len(texts), self.dimension), dtype=np.float32)
        for i, text in enumerate(texts):
            out[i, len(text) % self.dimension] = 1.0
        return out

    async def aclose(self) -> None:
        return None


class RecordingFactory:
    """Backend factory that counts calls and can be slowed down or made to fail."""

    def __init__(self, config: CodeIndexConfig, storage: StorageManager) -> None:
        self.config = config
        self.storage = storage
        self.calls: list[BackendKind] = []
        self.delay = 0.0
        self.failures_left = 0

    async def __call__(self, kind: BackendKind, workspace: WorkspaceIdentity) -> IndexOrchestrator:
        self.calls.append(kind)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures_left:
            self.failures_left -= 1
            raise ConfigurationError.missing_required("cloud.voyage_api_key")
        store = self.storage.open(workspace)
        sink: VectorSink
        if kind == "cloud":
            sink = CloudVectorSink(
                FakeEmbeddingClient(), InMemoryVectorStore(8), namespace="ns-test", ws_hash="ws"
            )
        else:
            sink = LocalVectorSink(LocalEmbeddingService(self.config.embedding))
        return IndexOrchestrator(workspace, store, sink, GraphStore(store), self.config, backend=kind)


@pytest.fixture
def factory(config: CodeIndexConfig, storage: StorageManager) -> RecordingFactory:
    return RecordingFactory(config, storage)


@pytest_asyncio.fixture
async def service(
    config: CodeIndexConfig, storage: StorageManager, factory: RecordingFactory
) -> AsyncIterator[CompositeIndexService]:
    svc = CompositeIndexService(config, storage=storage, factory=factory)
    yield svc
    await svc.close()


@pytest.fixture
def sample(write_files: Callable[[dict[str, str]], None]) -> None:
    write_files({"a.py": "def alpha():\n    return 1\n", "b.py": "def beta():\n    return alpha()\n"})


class TestBackendSelection:
    def test_cloud_wins_when_both_enabled(self, config: CodeIndexConfig) -> None:
        svc = CompositeIndexService(config)
        svc.set_enabled(local=True, cloud=True)

        assert svc.active_kind == "cloud"
        svc.set_enabled(cloud=False)
        assert svc.active_kind == "local"
        svc.set_enabled(local=False)
        assert svc.active_kind is None

    @pytest.mark.asyncio
    async def test_concurrent_first_calls_construct_once(
        self, service: CompositeIndexService, factory: RecordingFactory, workspace_root: Path
    ) -> None:
        # Given
        factory.delay = 0.05

        # When
        backends = await asyncio.gather(*(service.get_backend(workspace_root) for _ in range(5)))

        # Then
        assert factory.calls == ["local"]
        assert all(b is backends[0] for b in backends)

    @pytest.mark.asyncio
    async def test_failed_construction_is_retried_on_next_call(
        self, service: CompositeIndexService, factory: RecordingFactory, workspace_root: Path
    ) -> None:
        # Given
        factory.failures_left = 1

        # When
        with pytest.raises(ConfigurationError):
            await service.get_backend(workspace_root)
        backend = await service.get_backend(workspace_root)

        # Then
        assert backend is not None
        assert factory.calls == ["local", "local"]

    @pytest.mark.asyncio
    async def test_toggling_keeps_cached_backends(
        self,
        service: CompositeIndexService,
        factory: RecordingFactory,
        workspace_root: Path,
        sample: None,
    ) -> None:
        # Given
        local_status = await service.build_full_index(workspace_root)

        # When
        service.set_enabled(cloud=True)
        cloud = await service.get_backend(workspace_root)
        service.set_enabled(cloud=False)
        back = await service.get_status(workspace_root)

        # Then
        assert cloud.backend == "cloud"
        assert factory.calls == ["local", "cloud"]
        assert back.indexed_files == local_status.indexed_files == 2
        assert len(service.cached_backends(workspace_root)) == 2

    @pytest.mark.asyncio
    async def test_get_backend_when_disabled_raises(
        self, service: CompositeIndexService, workspace_root: Path
    ) -> None:
        service.set_enabled(local=False, cloud=False)

        with pytest.raises(ConfigurationError) as exc_info:
            await service.get_backend(workspace_root)
        assert exc_info.value.code == ErrorCode.FEATURE_DISABLED


class TestStatus:
    @pytest.mark.asyncio
    async def test_slow_backend_yields_default_status_within_timeout(
        self, config: CodeIndexConfig, storage: StorageManager, factory: RecordingFactory, workspace_root: Path
    ) -> None:
        # Given
        config.timeouts = TimeoutsConfig(status_sec=0.1)
        factory.delay = 5.0
        svc = CompositeIndexService(config, storage=storage, factory=factory)
        loop = asyncio.get_running_loop()

        # When
        start = loop.time()
        status = await svc.get_status(workspace_root)
        elapsed = loop.time() - start
        await svc.close()

        # Then
        assert elapsed < 1.0
        assert status == IndexStatus.default(WorkspaceIdentity.from_path(workspace_root).id)

    @pytest.mark.asyncio
    async def test_construction_error_reported_as_error_status(
        self, service: CompositeIndexService, factory: RecordingFactory, workspace_root: Path
    ) -> None:
        factory.failures_left = 1

        status = await service.get_status(workspace_root)

        assert status.state == IndexState.ERROR
        assert status.last_error is not None

    @pytest.mark.asyncio
    async def test_disabled_returns_sentinels_without_constructing(
        self, service: CompositeIndexService, factory: RecordingFactory, workspace_root: Path
    ) -> None:
        # Given
        service.set_enabled(local=False, cloud=False)

        # When
        status = await service.get_status(workspace_root)
        built = await service.build_full_index(workspace_root)
        results = await service.search(workspace_root, "alpha")
        bundle = await service.get_context_for_mcp(workspace_root, "alpha")
        diagnostics = await service.get_diagnostics(workspace_root)
        stats = await service.refresh_paths(workspace_root, ["a.py"])

        # Then
        assert status.disabled is True
        assert built.disabled is True
        assert results == []
        assert bundle.index_freshness == IndexFreshness.UNINITIALIZED
        assert bundle.engine_metadata["disabled"] is True
        assert diagnostics.backend == "disabled"
        assert stats.to_dict()["indexed"] == 0
        assert factory.calls == []


class TestEvents:
    @pytest.mark.asyncio
    async def test_only_active_backend_events_are_forwarded(
        self, service: CompositeIndexService, workspace_root: Path, sample: None
    ) -> None:
        # Given
        seen: list[IndexStatus] = []
        service.subscribe(seen.append)
        local = await service.get_backend(workspace_root)
        service.set_enabled(cloud=True)
        await service.get_backend(workspace_root)

        # When
        await local.build_full_index()

        # Then
        assert seen == []

    @pytest.mark.asyncio
    async def test_active_backend_events_reach_subscribers(
        self, service: CompositeIndexService, workspace_root: Path, sample: None
    ) -> None:
        seen: list[IndexStatus] = []
        unsubscribe = service.subscribe(seen.append)

        await service.build_full_index(workspace_root)
        unsubscribe()

        assert seen
        assert seen[-1].state == IndexState.READY


class TestDeleteAndOperations:
    @pytest.mark.asyncio
    async def test_delete_index_removes_database_and_evicts(
        self, service: CompositeIndexService, workspace_root: Path, sample: None
    ) -> None:
        # Given
        await service.build_full_index(workspace_root)
        db_path = service.storage.db_path_for(WorkspaceIdentity.from_path(workspace_root))
        assert db_path.exists()

        # When
        removed = await service.delete_index(workspace_root)

        # Then
        assert removed is True
        assert not db_path.exists()
        assert service.cached_backends(workspace_root) == []
        status = await service.get_status(workspace_root)
        assert status.total_files == 0

    @pytest.mark.asyncio
    async def test_cloud_backend_indexes_and_searches(
        self, service: CompositeIndexService, workspace_root: Path, sample: None
    ) -> None:
        # Given
        service.set_enabled(cloud=True)

        # When
        status = await service.build_full_index(workspace_root)
        results = await service.search(workspace_root, "alpha")
        diagnostics = await service.get_diagnostics(workspace_root)

        # Then
        assert status.state == IndexState.READY
        assert status.embedding_model == "fake-remote"
        assert {r.path for r in results} >= {"a.py", "b.py"}
        assert diagnostics.namespace == "ns-test"
        assert diagnostics.remote_vector_count == 2

    @pytest.mark.asyncio
    async def test_pause_resume_and_rebuild_delegate(
        self, service: CompositeIndexService, workspace_root: Path, sample: None
    ) -> None:
        await service.build_full_index(workspace_root)

        paused = await service.pause(workspace_root, "low-power")
        resumed = await service.resume(workspace_root)
        rebuilt = await service.rebuild_workspace_index(workspace_root, "user")

        assert paused.paused_reason == "low-power"
        assert resumed.state == IndexState.READY
        assert rebuilt.indexed_files == 2


class TestBuildCloudSink:
    def test_missing_voyage_key_raises(self, config: CodeIndexConfig, workspace_root: Path) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            build_cloud_sink(config, WorkspaceIdentity.from_path(workspace_root))
        assert exc_info.value.code == ErrorCode.CONFIG_MISSING_REQUIRED

    def test_without_pinecone_uses_in_memory_store(
        self, config: CodeIndexConfig, workspace_root: Path
    ) -> None:
        # Given
        config.cloud.voyage_api_key = SecretStr("vk-test")
        config.cloud.user_id = "user-1"

        # When
        sink = build_cloud_sink(config, WorkspaceIdentity.from_path(workspace_root))

        # Then
        assert sink.namespace.startswith("ns-")
        assert sink.dimension == config.cloud.dimension
        assert isinstance(sink._vectors, InMemoryVectorStore)

