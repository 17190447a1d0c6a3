"""Index module - hybrid lexical, vector and graph indexing engine.

This module provides:
- Per-workspace SQLite storage of files, chunks, tokens, embeddings and the symbol graph
- Local (hash / fastembed) and cloud (Voyage + Pinecone) embedding backends
- Hybrid search and context bundling over lexical, vector and graph signals

Public API:
- CompositeIndexService: single entry point routing to the active backend
- IndexOrchestrator: per-workspace lifecycle (build, refresh, pause, rebuild)
- ContextBundler, HybridSearcher: read path

Internal implementations are in `codeindex.index._internal/`.
"""

from codeindex.index._internal.db import StorageManager, WorkspaceStore
from codeindex.index.bundler import ContextBundler, freshness_for
from codeindex.index.models import (
    ChangeKind,
    ContextBundle,
    ContextEdge,
    ContextSnippet,
    ContextSymbol,
    EmbeddingState,
    FileChange,
    FileError,
    FileState,
    IndexDiagnostics,
    IndexFreshness,
    IndexState,
    IndexStatus,
    ModelDownloadState,
    Provenance,
    SearchOptions,
    SemanticSearchResult,
    WorkspaceIdentity,
)
from codeindex.index.ops import FileOutcome, IndexOrchestrator, RunStats
from codeindex.index.router import CompositeIndexService, default_factory
from codeindex.index.search import HybridSearcher

__all__ = [
    # Entry points
    "CompositeIndexService",
    "IndexOrchestrator",
    "default_factory",
    "StorageManager",
    "WorkspaceStore",
    # Read path
    "ContextBundler",
    "HybridSearcher",
    "freshness_for",
    # Results
    "FileOutcome",
    "RunStats",
    # Models
    "ChangeKind",
    "ContextBundle",
    "ContextEdge",
    "ContextSnippet",
    "ContextSymbol",
    "EmbeddingState",
    "FileChange",
    "FileError",
    "FileState",
    "IndexDiagnostics",
    "IndexFreshness",
    "IndexState",
    "IndexStatus",
    "ModelDownloadState",
    "Provenance",
    "SearchOptions",
    "SemanticSearchResult",
    "WorkspaceIdentity",
]
