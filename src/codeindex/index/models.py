"""SQLModel definitions and transfer types for the hybrid index.

Single source of truth for all table schemas. One SQLite database per
workspace holds documents (files), chunks, lexical tokens, embeddings and the
symbol graph. Every row carries or resolves to its workspace id so that
destroying a workspace index is "drop every row keyed by that id".

Ownership:
- IndexOrchestrator writes files.state, chunks, tokens
- Vector sinks write embeddings
- GraphStore writes graph_nodes, graph_edges, graph_occurrences
"""

import hashlib
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from sqlalchemy import Column, ForeignKey, Integer, LargeBinary, String, UniqueConstraint
from sqlmodel import Field, SQLModel

# Bumped whenever a table definition changes. Older databases are rebuilt.
SCHEMA_VERSION = 4


# ============================================================================
# ENUMS
# ============================================================================


class FileState(str, Enum):
    """Per-file indexing state. Transitions are driven only by the orchestrator."""

    UNINDEXED = "unindexed"
    INDEXING = "indexing"
    INDEXED = "indexed"
    DELETED = "deleted"  # Soft delete; the row is kept for bookkeeping
    ERROR = "error"


class EmbeddingState(str, Enum):
    """Whether a file's chunks have vectors in the active vector store."""

    PENDING = "pending"
    EMBEDDED = "embedded"
    DEGRADED = "degraded"  # Embedded by the local hash fallback after a provider failure
    FAILED = "failed"


class IndexState(str, Enum):
    """Workspace-level lifecycle state."""

    UNINITIALIZED = "uninitialized"
    IDLE = "idle"
    BUILDING = "building"
    READY = "ready"
    PAUSED = "paused"
    ERROR = "error"


class ModelDownloadState(str, Enum):
    """Local model artifact lifecycle."""

    NOT_STARTED = "not_started"
    DOWNLOADING = "downloading"
    READY = "ready"
    ERROR = "error"


class IndexFreshness(str, Enum):
    """How current returned results are relative to the files on disk."""

    FRESH = "fresh"
    STALE = "stale"
    BUILDING = "building"
    UNINITIALIZED = "uninitialized"


class Provenance(str, Enum):
    """Retrieval signal that produced a result. Order is the tie-break priority."""

    LEXICAL = "lexical"
    VECTOR = "vector"
    GRAPH = "graph"

    @property
    def priority(self) -> int:
        return _PROVENANCE_PRIORITY[self]


_PROVENANCE_PRIORITY = {Provenance.LEXICAL: 0, Provenance.VECTOR: 1, Provenance.GRAPH: 2}


class ChangeKind(str, Enum):
    """File-change notification kind supplied by the host."""

    CREATED = "created"
    CHANGED = "changed"
    DELETED = "deleted"


class OccurrenceRole(str, Enum):
    DEFINITION = "definition"
    REFERENCE = "reference"


class EdgeKind(str, Enum):
    IMPORTS = "imports"
    CALLS = "calls"
    REFERENCES = "references"
    CONTAINS = "contains"


# ============================================================================
# TABLES
# ============================================================================


class IndexMeta(SQLModel, table=True):
    """Key/value metadata (schema_version, created_at)."""

    __tablename__ = "index_meta"

    key: str = Field(primary_key=True)
    value: str


class Workspace(SQLModel, table=True):
    """Workspace identity row (one per database)."""

    __tablename__ = "workspaces"

    id: str = Field(primary_key=True)
    root_path: str
    created_at: float = Field(default_factory=time.time)


class FileRecord(SQLModel, table=True):
    """Tracked file (document) in the workspace."""

    __tablename__ = "files"
    __table_args__ = (UniqueConstraint("workspace_id", "path", name="uq_files_workspace_path"),)

    id: int | None = Field(default=None, primary_key=True)
    workspace_id: str = Field(index=True)
    path: str = Field(index=True)  # Workspace-relative POSIX path
    uri: str = Field(index=True)
    mtime: float | None = None
    size: int | None = None
    content_hash: str | None = None
    language_id: str | None = None
    state: str = Field(default=FileState.UNINDEXED.value, index=True)
    last_indexed_time: float | None = None
    chunk_count: int = Field(default=0)
    embedding_state: str = Field(default=EmbeddingState.PENDING.value)
    embedding_model: str | None = None
    truncated: bool = Field(default=False)
    last_error: str | None = None


class ChunkRecord(SQLModel, table=True):
    """Contiguous line range of one file; unit of tokenization and embedding."""

    __tablename__ = "chunks"

    id: str = Field(primary_key=True)  # "{path}#{chunk_index}"
    file_id: int = Field(
        sa_column=Column(Integer, ForeignKey("files.id", ondelete="CASCADE"), index=True)
    )
    workspace_id: str = Field(index=True)
    path: str = Field(index=True)
    uri: str = Field(index=True)
    chunk_index: int
    content: str
    language_id: str | None = None
    start_line: int  # 1-based, inclusive
    start_char: int = 0
    end_line: int  # 1-based, inclusive
    end_char: int = 0
    content_hash: str = Field(index=True)
    token_count: int = Field(default=0)


class TokenRecord(SQLModel, table=True):
    """Inverted-index posting: one term within one chunk."""

    __tablename__ = "tokens"

    id: int | None = Field(default=None, primary_key=True)
    term: str = Field(index=True)
    chunk_id: str = Field(
        sa_column=Column(String, ForeignKey("chunks.id", ondelete="CASCADE"), index=True)
    )
    term_frequency: int
    positions: str  # Comma-separated ordinal positions


class EmbeddingRecord(SQLModel, table=True):
    """One vector per (chunk, model). Superseded, never merged."""

    __tablename__ = "embeddings"

    chunk_id: str = Field(
        sa_column=Column(
            String, ForeignKey("chunks.id", ondelete="CASCADE"), primary_key=True
        )
    )
    model_id: str = Field(primary_key=True)
    workspace_id: str = Field(index=True)
    model_version: str
    dimension: int
    norm: float
    content_hash: str = Field(index=True)
    vector: bytes = Field(sa_column=Column(LargeBinary, nullable=False))  # float32 little-endian


class GraphNode(SQLModel, table=True):
    """Symbol or module node attributed to the file that declares it.

    Keyed by ``(id, uri)``: files whose module ids coincide (``a.ts`` and
    ``a.tsx``) each own a row.
    """

    __tablename__ = "graph_nodes"

    id: str = Field(primary_key=True)
    uri: str = Field(primary_key=True, index=True)
    path: str
    kind: str
    name: str = Field(index=True)
    container_name: str | None = None
    start_line: int = 0
    start_col: int = 0
    end_line: int = 0
    end_col: int = 0


class GraphEdge(SQLModel, table=True):
    """Directed edge. ``to_id`` may name a node that has not been observed yet."""

    __tablename__ = "graph_edges"

    id: int | None = Field(default=None, primary_key=True)
    uri: str = Field(index=True)  # Owning file
    from_id: str = Field(index=True)
    to_id: str = Field(index=True)
    kind: str


class GraphOccurrence(SQLModel, table=True):
    """Definition or reference site of a symbol."""

    __tablename__ = "graph_occurrences"

    id: int | None = Field(default=None, primary_key=True)
    uri: str = Field(index=True)
    symbol_id: str = Field(index=True)
    role: str
    name: str = Field(index=True)
    start_line: int
    start_col: int
    end_line: int
    end_col: int


# ============================================================================
# TRANSFER TYPES (not persisted)
# ============================================================================


def _enum_values(data: dict[str, Any]) -> dict[str, Any]:
    """Replace Enum members and sets in an asdict() result with JSON-friendly values."""
    out: dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, Enum):
            out[key] = value.value
        elif isinstance(value, (set, frozenset)):
            out[key] = sorted(v.value if isinstance(v, Enum) else v for v in value)
        elif isinstance(value, dict):
            out[key] = _enum_values(value)
        elif isinstance(value, list):
            out[key] = [_enum_values(v) if isinstance(v, dict) else v for v in value]
        else:
            out[key] = value
    return out


@dataclass(frozen=True, slots=True)
class WorkspaceIdentity:
    """Partition key for storage and namespace derivation. Never mutated."""

    id: str
    root_path: Path

    @classmethod
    def from_path(cls, root: Path | str) -> "WorkspaceIdentity":
        resolved = Path(root).expanduser().resolve()
        digest = hashlib.sha256(str(resolved).encode("utf-8")).hexdigest()[:16]
        return cls(id=digest, root_path=resolved)

    @property
    def root_uri(self) -> str:
        return self.root_path.as_uri()


@dataclass(frozen=True, slots=True)
class IndexStatus:
    """Per-workspace aggregate, recomputed from the tables on demand."""

    workspace_id: str
    state: IndexState = IndexState.IDLE
    total_files: int = 0
    indexed_files: int = 0
    total_chunks: int = 0
    embedded_chunks: int = 0
    paused: bool = False
    paused_reason: str | None = None
    last_error: str | None = None
    model_download_state: ModelDownloadState = ModelDownloadState.READY
    embedding_model: str | None = None
    last_indexed_time: float | None = None
    rebuilding: bool = False
    disabled: bool = False

    @classmethod
    def default(cls, workspace_id: str) -> "IndexStatus":
        """Conservative status used when the backend cannot answer in time."""
        return cls(workspace_id=workspace_id)

    @classmethod
    def disabled_sentinel(cls, workspace_id: str) -> "IndexStatus":
        return cls(workspace_id=workspace_id, state=IndexState.UNINITIALIZED, disabled=True)

    def to_dict(self) -> dict[str, Any]:
        return _enum_values(asdict(self))


@dataclass(frozen=True, slots=True)
class FileError:
    path: str
    error: str


@dataclass(frozen=True, slots=True)
class IndexDiagnostics:
    """Extended status for troubleshooting."""

    status: IndexStatus
    backend: str
    db_path: str | None = None
    schema_version: int | None = None
    embedding_model: str | None = None
    embedding_dimension: int | None = None
    graph_nodes: int = 0
    graph_edges: int = 0
    namespace: str | None = None
    remote_vector_count: int | None = None
    remote_connected: bool | None = None
    sample_query_hits: int | None = None
    file_errors: list[FileError] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = _enum_values(asdict(self))
        data["status"] = self.status.to_dict()
        return data


@dataclass(frozen=True, slots=True)
class FileChange:
    """File-change notification from the host."""

    path: Path
    kind: ChangeKind = ChangeKind.CHANGED


@dataclass(frozen=True, slots=True)
class SearchOptions:
    max_results: int = 20
    include_lexical: bool = True
    include_vector: bool = True
    path_prefix: str | None = None
    language_id: str | None = None


@dataclass(frozen=True, slots=True)
class SemanticSearchResult:
    """Ranked chunk returned by hybrid search."""

    chunk_id: str
    path: str
    uri: str
    content: str
    start_line: int
    end_line: int
    score: float
    provenance: frozenset[Provenance]
    language_id: str | None = None
    lexical_score: float = 0.0
    semantic_score: float = 0.0
    recency_score: float = 0.0
    last_indexed_time: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return _enum_values(asdict(self))


@dataclass(slots=True)
class ContextSnippet:
    path: str
    uri: str
    start_line: int
    end_line: int
    content: str
    score: float
    provenance: set[Provenance]
    last_indexed_time: float | None = None
    chunk_id: str | None = None

    def overlaps(self, other: "ContextSnippet") -> bool:
        return (
            self.path == other.path
            and self.start_line <= other.end_line
            and other.start_line <= self.end_line
        )

    @property
    def best_provenance(self) -> int:
        return min((p.priority for p in self.provenance), default=len(_PROVENANCE_PRIORITY))


@dataclass(frozen=True, slots=True)
class ContextSymbol:
    id: str
    name: str
    kind: str
    path: str
    container_name: str | None = None
    start_line: int = 0
    end_line: int = 0


@dataclass(frozen=True, slots=True)
class ContextEdge:
    from_id: str
    to_id: str
    kind: str


@dataclass(slots=True)
class ContextBundle:
    """Ranked, budgeted retrieval result for one query."""

    query: str
    snippets: list[ContextSnippet] = field(default_factory=list)
    symbols: list[ContextSymbol] = field(default_factory=list)
    edges: list[ContextEdge] = field(default_factory=list)
    index_freshness: IndexFreshness = IndexFreshness.FRESH
    recency_info: dict[str, Any] = field(default_factory=dict)
    engine_metadata: dict[str, Any] = field(default_factory=dict)
    total_tokens: int = 0

    @classmethod
    def disabled(cls, query: str) -> "ContextBundle":
        return cls(
            query=query,
            index_freshness=IndexFreshness.UNINITIALIZED,
            recency_info={"state": IndexFreshness.UNINITIALIZED.value},
            engine_metadata={"selection_strategy": "hybrid", "disabled": True},
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "query": self.query,
            "snippets": [_enum_values(asdict(s)) for s in self.snippets],
            "symbols": [asdict(s) for s in self.symbols],
            "edges": [asdict(e) for e in self.edges],
            "index_freshness": self.index_freshness.value,
            "recency_info": self.recency_info,
            "engine_metadata": self.engine_metadata,
            "total_tokens": self.total_tokens,
        }
