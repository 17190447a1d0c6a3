"""Shared fixtures for index tests."""

from __future__ import annotations

import tempfile
from collections.abc import Callable, Generator
from pathlib import Path

import pytest

from codeindex.config.models import (
    CodeIndexConfig,
    EmbeddingConfig,
    IndexerConfig,
    StorageConfig,
)
from codeindex.index._internal.db import StorageManager, WorkspaceStore
from codeindex.index._internal.indexing.embedding import LocalEmbeddingService
from codeindex.index._internal.indexing.graph import GraphStore
from codeindex.index._internal.indexing.vectors import LocalVectorSink
from codeindex.index.models import WorkspaceIdentity
from codeindex.index.ops import IndexOrchestrator


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory(ignore_cleanup_errors=True) as tmpdir:
        yield Path(tmpdir).resolve()


@pytest.fixture
def workspace_root(temp_dir: Path) -> Path:
    """Empty workspace directory, separate from the storage root."""
    root = temp_dir / "workspace"
    root.mkdir()
    return root


@pytest.fixture
def config(temp_dir: Path) -> CodeIndexConfig:
    """Hash embeddings and a storage root inside the temp dir."""
    return CodeIndexConfig(
        storage=StorageConfig(root=str(temp_dir / "storage")),
        embedding=EmbeddingConfig(model="hash", cache_dir=str(temp_dir / "models")),
        indexer=IndexerConfig(max_workers=2),
    )


@pytest.fixture
def identity(workspace_root: Path) -> WorkspaceIdentity:
    return WorkspaceIdentity.from_path(workspace_root)


@pytest.fixture
def storage(config: CodeIndexConfig) -> Generator[StorageManager, None, None]:
    manager = StorageManager(config.storage)
    yield manager
    manager.close_all()


@pytest.fixture
def store(storage: StorageManager, identity: WorkspaceIdentity) -> WorkspaceStore:
    return storage.open(identity)


@pytest.fixture
def orchestrator(store: WorkspaceStore, config: CodeIndexConfig) -> IndexOrchestrator:
    """Local orchestrator over hash embeddings and a persistent graph."""
    sink = LocalVectorSink(LocalEmbeddingService(config.embedding))
    return IndexOrchestrator(store.workspace, store, sink, GraphStore(store), config)


@pytest.fixture
def write_files(workspace_root: Path) -> Callable[[dict[str, str]], None]:
    """Write ``{relative path: content}`` into the workspace."""

    def _write(files: dict[str, str]) -> None:
        for rel, content in files.items():
            path = workspace_root / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content)

    return _write
