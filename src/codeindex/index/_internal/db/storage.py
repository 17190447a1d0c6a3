"""Workspace-scoped storage manager.

StorageManager owns one SQLite database per workspace, opened lazily and
cached for the process lifetime. WorkspaceStore is the handle: single-row
writes, the per-file delete-then-insert transaction, and the read paths used
by lexical search, vector search, dedup and maintenance.

Every SQLAlchemy/OS failure leaves this module as StorageError. Callers (the
orchestrator) decide whether that marks one file Error or aborts the
workspace operation.
"""

from __future__ import annotations

import shutil
import threading
import time
from collections.abc import Callable, Generator, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from functools import wraps
from pathlib import Path
from typing import TYPE_CHECKING, Any, ParamSpec, TypeVar

import structlog
from sqlalchemy import delete, func, insert
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from codeindex.core.errors import StorageError
from codeindex.index._internal.db.database import Database
from codeindex.index._internal.db.indexes import create_additional_indexes
from codeindex.index.models import (
    ChunkRecord,
    EmbeddingRecord,
    EmbeddingState,
    FileError,
    FileRecord,
    FileState,
    GraphEdge,
    GraphNode,
    GraphOccurrence,
    TokenRecord,
    Workspace,
    WorkspaceIdentity,
)

if TYPE_CHECKING:
    from codeindex.config.models import StorageConfig
    from codeindex.index._internal.indexing.chunking import Chunk, TokenPosting

log = structlog.get_logger()

P = ParamSpec("P")
R = TypeVar("R")

DB_FILENAME = "index.db"


def _storage_op(kind: str) -> Callable[[Callable[P, R]], Callable[P, R]]:
    """Translate SQLAlchemy/OS failures into StorageError."""

    def decorator(fn: Callable[P, R]) -> Callable[P, R]:
        @wraps(fn)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            try:
                return fn(*args, **kwargs)
            except StorageError:
                raise
            except (SQLAlchemyError, OSError) as e:
                if kind == "write":
                    raise StorageError.write_failed(fn.__name__, str(e)) from e
                raise StorageError.query_failed(fn.__name__, str(e)) from e

        return wrapper

    return decorator


@dataclass(frozen=True, slots=True)
class StoreCounts:
    """Aggregates behind IndexStatus."""

    total_files: int
    indexed_files: int
    total_chunks: int
    embedded_chunks: int
    errored_files: int
    last_indexed_time: float | None


@dataclass(frozen=True, slots=True)
class Posting:
    chunk_id: str
    term: str
    term_frequency: int


@dataclass(frozen=True, slots=True)
class DiscoveredFile:
    path: str
    uri: str
    mtime: float
    size: int
    language_id: str | None


class WorkspaceStore:
    """Handle on one workspace database."""

    def __init__(self, workspace: WorkspaceIdentity, db: Database) -> None:
        self.workspace = workspace
        self.db = db

    @property
    def workspace_id(self) -> str:
        return self.workspace.id

    @property
    def db_path(self) -> Path:
        return self.db.db_path

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Generator[Session, None, None]:
        """BEGIN IMMEDIATE transaction; all writes inside commit or roll back together."""
        try:
            with self.db.immediate_transaction() as session:
                yield session
        except StorageError:
            raise
        except (SQLAlchemyError, OSError) as e:
            raise StorageError.write_failed("transaction", str(e)) from e

    @contextmanager
    def _writing(self, session: Session | None) -> Generator[Session, None, None]:
        if session is not None:
            yield session
            return
        with self.transaction() as own:
            yield own

    # ------------------------------------------------------------------
    # Single-row writes
    # ------------------------------------------------------------------

    @_storage_op("write")
    def upsert_document(
        self,
        path: str,
        uri: str,
        *,
        session: Session | None = None,
        **fields: Any,
    ) -> FileRecord:
        """Insert or update the file row for ``path``; returns it with ``id`` set."""
        with self._writing(session) as s:
            record = s.exec(
                select(FileRecord).where(
                    FileRecord.workspace_id == self.workspace_id, FileRecord.path == path
                )
            ).first()
            if record is None:
                record = FileRecord(workspace_id=self.workspace_id, path=path, uri=uri)
            record.uri = uri
            for key, value in fields.items():
                if isinstance(value, (FileState, EmbeddingState)):
                    value = value.value
                setattr(record, key, value)
            s.add(record)
            s.flush()
            s.refresh(record)
            return record

    @_storage_op("write")
    def upsert_chunk(
        self,
        file_id: int,
        uri: str,
        chunk: Chunk,
        token_count: int,
        *,
        session: Session | None = None,
    ) -> ChunkRecord:
        with self._writing(session) as s:
            record = ChunkRecord(
                id=chunk.id,
                file_id=file_id,
                workspace_id=self.workspace_id,
                path=chunk.path,
                uri=uri,
                chunk_index=chunk.chunk_index,
                content=chunk.content,
                language_id=chunk.language_id,
                start_line=chunk.start_line,
                start_char=chunk.start_char,
                end_line=chunk.end_line,
                end_char=chunk.end_char,
                content_hash=chunk.content_hash,
                token_count=token_count,
            )
            return s.merge(record)

    @_storage_op("write")
    def upsert_token(
        self,
        chunk_id: str,
        posting: TokenPosting,
        *,
        session: Session | None = None,
    ) -> None:
        with self._writing(session) as s:
            s.execute(
                delete(TokenRecord).where(
                    col(TokenRecord.chunk_id) == chunk_id, col(TokenRecord.term) == posting.term
                )
            )
            s.execute(insert(TokenRecord), [_token_row(chunk_id, posting)])

    @_storage_op("write")
    def insert_tokens(
        self,
        chunk_id: str,
        postings: Iterable[TokenPosting],
        *,
        session: Session | None = None,
    ) -> int:
        rows = [_token_row(chunk_id, p) for p in postings]
        if not rows:
            return 0
        with self._writing(session) as s:
            s.execute(insert(TokenRecord), rows)
        return len(rows)

    @_storage_op("write")
    def upsert_embedding(
        self, record: EmbeddingRecord, *, session: Session | None = None
    ) -> None:
        with self._writing(session) as s:
            s.merge(record)

    @_storage_op("write")
    def upsert_symbol(self, node: GraphNode, *, session: Session | None = None) -> None:
        with self._writing(session) as s:
            s.merge(node)

    @_storage_op("write")
    def insert_edge(self, edge: GraphEdge, *, session: Session | None = None) -> None:
        with self._writing(session) as s:
            s.add(edge)

    @_storage_op("write")
    def delete_for_uri(
        self, uri: str, *, session: Session | None = None, prune_incoming: bool = False
    ) -> int:
        """Remove chunks (and through cascade their tokens/embeddings) and graph rows of ``uri``.

        Must run before re-inserting rows for the same file. With
        ``prune_incoming`` edges owned by other files that point at this file's
        nodes are dropped too, unless another file still declares the id.
        Returns the number of chunks removed.
        """
        with self._writing(session) as s:
            removed = s.execute(delete(ChunkRecord).where(col(ChunkRecord.uri) == uri)).rowcount
            self.delete_graph_for_uri(uri, session=s, prune_incoming=prune_incoming)
            return int(removed or 0)

    @_storage_op("write")
    def delete_graph_for_uri(
        self, uri: str, *, session: Session | None = None, prune_incoming: bool = False
    ) -> None:
        """Drop the graph rows owned by ``uri``.

        With ``prune_incoming``, edges of other files pointing at an id that no
        remaining file declares are dropped as well.
        """
        with self._writing(session) as s:
            node_ids = set(s.exec(select(GraphNode.id).where(GraphNode.uri == uri)).all())
            s.execute(delete(GraphEdge).where(col(GraphEdge.uri) == uri))
            s.execute(delete(GraphOccurrence).where(col(GraphOccurrence.uri) == uri))
            s.execute(delete(GraphNode).where(col(GraphNode.uri) == uri))
            if not (prune_incoming and node_ids):
                return
            survivors = set(
                s.exec(select(GraphNode.id).where(col(GraphNode.id).in_(node_ids))).all()
            )
            orphaned = node_ids - survivors
            if orphaned:
                s.execute(delete(GraphEdge).where(col(GraphEdge.to_id).in_(orphaned)))

    @_storage_op("write")
    def mark_deleted(self, path: str, *, session: Session | None = None) -> None:
        """Soft-delete the file row and drop everything it owned."""
        with self._writing(session) as s:
            record = s.exec(
                select(FileRecord).where(
                    FileRecord.workspace_id == self.workspace_id, FileRecord.path == path
                )
            ).first()
            if record is None:
                return
            self.delete_for_uri(record.uri, session=s, prune_incoming=True)
            record.state = FileState.DELETED.value
            record.chunk_count = 0
            record.content_hash = None
            record.embedding_state = EmbeddingState.PENDING.value
            record.embedding_model = None
            record.last_error = None
            s.add(record)

    @_storage_op("write")
    def mark_error(self, path: str, uri: str, message: str) -> None:
        """Record a per-file failure without touching rows written by earlier passes."""
        with self.transaction() as s:
            record = s.exec(
                select(FileRecord).where(
                    FileRecord.workspace_id == self.workspace_id, FileRecord.path == path
                )
            ).first()
            if record is None:
                record = FileRecord(workspace_id=self.workspace_id, path=path, uri=uri)
            record.state = FileState.ERROR.value
            record.last_error = message
            s.add(record)

    @_storage_op("write")
    def register_files(self, files: list[DiscoveredFile]) -> int:
        """Insert rows for newly observed files and revive soft-deleted ones.

        Existing rows keep their state so an interrupted build resumes.
        Returns the number of rows created or revived.
        """
        changed = 0
        with self.transaction() as s:
            existing = {
                r.path: r
                for r in s.exec(
                    select(FileRecord).where(FileRecord.workspace_id == self.workspace_id)
                ).all()
            }
            for f in files:
                record = existing.get(f.path)
                if record is None:
                    s.add(
                        FileRecord(
                            workspace_id=self.workspace_id,
                            path=f.path,
                            uri=f.uri,
                            mtime=f.mtime,
                            size=f.size,
                            language_id=f.language_id,
                        )
                    )
                    changed += 1
                elif record.state == FileState.DELETED.value:
                    record.state = FileState.UNINDEXED.value
                    record.mtime = f.mtime
                    record.size = f.size
                    s.add(record)
                    changed += 1
        return changed

    @_storage_op("write")
    def reset_interrupted(self) -> int:
        """Rows left in Indexing by a crashed process go back to Unindexed."""
        with self.db.bulk_writer() as writer:
            return writer.update_where(
                FileRecord,
                {"state": FileState.UNINDEXED.value},
                "workspace_id = :ws AND state = :state",
                {"ws": self.workspace_id, "state": FileState.INDEXING.value},
            )

    @_storage_op("write")
    def clear(self) -> None:
        """Drop every row keyed by this workspace."""
        with self.db.bulk_writer() as writer:
            params = {"ws": self.workspace_id}
            writer.delete_where(GraphEdge, "1 = 1", {})
            writer.delete_where(GraphOccurrence, "1 = 1", {})
            writer.delete_where(GraphNode, "1 = 1", {})
            writer.delete_where(EmbeddingRecord, "workspace_id = :ws", params)
            writer.delete_where(ChunkRecord, "workspace_id = :ws", params)
            writer.delete_where(FileRecord, "workspace_id = :ws", params)
        log.info("storage.cleared", workspace=self.workspace_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @_storage_op("read")
    def get_file(self, path: str) -> FileRecord | None:
        with self.db.session() as s:
            return s.exec(
                select(FileRecord).where(
                    FileRecord.workspace_id == self.workspace_id, FileRecord.path == path
                )
            ).first()

    @_storage_op("read")
    def get_files(self, paths: Iterable[str]) -> dict[str, FileRecord]:
        wanted = list(paths)
        if not wanted:
            return {}
        with self.db.session() as s:
            rows = s.exec(
                select(FileRecord).where(
                    FileRecord.workspace_id == self.workspace_id,
                    col(FileRecord.path).in_(wanted),
                )
            ).all()
            return {r.path: r for r in rows}

    @_storage_op("read")
    def list_files(self, states: Iterable[FileState] | None = None) -> list[FileRecord]:
        with self.db.session() as s:
            stmt = select(FileRecord).where(FileRecord.workspace_id == self.workspace_id)
            if states is not None:
                stmt = stmt.where(col(FileRecord.state).in_([st.value for st in states]))
            return list(s.exec(stmt.order_by(col(FileRecord.path))).all())

    @_storage_op("read")
    def find_postings(self, terms: Iterable[str]) -> list[Posting]:
        """Postings for any of ``terms`` (exact term match)."""
        wanted = sorted(set(terms))
        if not wanted:
            return []
        with self.db.session() as s:
            rows = s.exec(
                select(TokenRecord.chunk_id, TokenRecord.term, TokenRecord.term_frequency).where(
                    col(TokenRecord.term).in_(wanted)
                )
            ).all()
            return [Posting(chunk_id=c, term=t, term_frequency=tf) for c, t, tf in rows]

    @_storage_op("read")
    def find_chunks_by_term(self, term: str) -> list[ChunkRecord]:
        with self.db.session() as s:
            stmt = (
                select(ChunkRecord)
                .join(TokenRecord, col(TokenRecord.chunk_id) == col(ChunkRecord.id))
                .where(TokenRecord.term == term.lower())
                .order_by(col(ChunkRecord.id))
            )
            return list(s.exec(stmt).all())

    @_storage_op("read")
    def find_terms_with_prefix(self, prefix: str, limit: int = 20) -> list[str]:
        """Distinct indexed terms starting with ``prefix`` (fuzzy lexical expansion)."""
        with self.db.session() as s:
            stmt = (
                select(TokenRecord.term)
                .where(col(TokenRecord.term).startswith(prefix.lower()))
                .distinct()
                .limit(limit)
            )
            return list(s.exec(stmt).all())

    @_storage_op("read")
    def lexical_stats(self) -> tuple[int, float]:
        """(chunk count, average chunk length in tokens) for BM25."""
        with self.db.session() as s:
            count, avg = s.exec(
                select(func.count(col(ChunkRecord.id)), func.avg(ChunkRecord.token_count)).where(
                    ChunkRecord.workspace_id == self.workspace_id
                )
            ).one()
            return int(count or 0), float(avg or 0.0)

    @_storage_op("read")
    def find_chunk_by_hash(self, content_hash: str) -> ChunkRecord | None:
        with self.db.session() as s:
            return s.exec(
                select(ChunkRecord).where(ChunkRecord.content_hash == content_hash)
            ).first()

    @_storage_op("read")
    def find_embeddings_by_hash(
        self, content_hashes: Iterable[str], model_id: str
    ) -> dict[str, EmbeddingRecord]:
        """Existing vectors for identical chunk content under ``model_id``, keyed by hash."""
        wanted = list(set(content_hashes))
        if not wanted:
            return {}
        with self.db.session() as s:
            rows = s.exec(
                select(EmbeddingRecord).where(
                    EmbeddingRecord.model_id == model_id,
                    col(EmbeddingRecord.content_hash).in_(wanted),
                )
            ).all()
            return {r.content_hash: r for r in rows}

    @_storage_op("read")
    def get_chunks(self, chunk_ids: Iterable[str]) -> dict[str, ChunkRecord]:
        wanted = list(chunk_ids)
        if not wanted:
            return {}
        with self.db.session() as s:
            rows = s.exec(select(ChunkRecord).where(col(ChunkRecord.id).in_(wanted))).all()
            return {r.id: r for r in rows}

    @_storage_op("read")
    def get_chunks_for_uri(self, uri: str) -> list[ChunkRecord]:
        with self.db.session() as s:
            return list(
                s.exec(
                    select(ChunkRecord)
                    .where(ChunkRecord.uri == uri)
                    .order_by(col(ChunkRecord.chunk_index))
                ).all()
            )

    @_storage_op("read")
    def get_chunks_for_path(self, path: str) -> list[ChunkRecord]:
        with self.db.session() as s:
            return list(
                s.exec(
                    select(ChunkRecord)
                    .where(ChunkRecord.path == path)
                    .order_by(col(ChunkRecord.chunk_index))
                ).all()
            )

    def iter_chunks(self, page_size: int = 500) -> Iterator[list[ChunkRecord]]:
        """Paginated full scan ordered by chunk id (maintenance/export)."""
        last_id = ""
        while True:
            page = self._chunk_page(last_id, page_size)
            if not page:
                return
            yield page
            last_id = page[-1].id

    @_storage_op("read")
    def _chunk_page(self, after_id: str, page_size: int) -> list[ChunkRecord]:
        with self.db.session() as s:
            return list(
                s.exec(
                    select(ChunkRecord)
                    .where(col(ChunkRecord.id) > after_id)
                    .order_by(col(ChunkRecord.id))
                    .limit(page_size)
                ).all()
            )

    @_storage_op("read")
    def load_embeddings(self, model_id: str) -> list[tuple[str, bytes]]:
        """All (chunk_id, vector bytes) for ``model_id`` in stable chunk-id order."""
        with self.db.session() as s:
            rows = s.exec(
                select(EmbeddingRecord.chunk_id, EmbeddingRecord.vector)
                .where(EmbeddingRecord.model_id == model_id)
                .order_by(col(EmbeddingRecord.chunk_id))
            ).all()
            return [(c, bytes(v)) for c, v in rows]

    @_storage_op("read")
    def count_embeddings(self, model_id: str | None = None) -> int:
        with self.db.session() as s:
            stmt = select(func.count()).select_from(EmbeddingRecord)
            if model_id is not None:
                stmt = stmt.where(EmbeddingRecord.model_id == model_id)
            return int(s.exec(stmt).one())

    @_storage_op("read")
    def counts(self) -> StoreCounts:
        live = col(FileRecord.state) != FileState.DELETED.value
        embedded_states = [EmbeddingState.EMBEDDED.value, EmbeddingState.DEGRADED.value]
        with self.db.session() as s:
            ws = FileRecord.workspace_id == self.workspace_id
            total_files = s.exec(select(func.count()).select_from(FileRecord).where(ws, live)).one()
            indexed_files = s.exec(
                select(func.count())
                .select_from(FileRecord)
                .where(ws, FileRecord.state == FileState.INDEXED.value)
            ).one()
            errored = s.exec(
                select(func.count())
                .select_from(FileRecord)
                .where(ws, FileRecord.state == FileState.ERROR.value)
            ).one()
            total_chunks = s.exec(
                select(func.count())
                .select_from(ChunkRecord)
                .where(ChunkRecord.workspace_id == self.workspace_id)
            ).one()
            embedded = s.exec(
                select(func.coalesce(func.sum(FileRecord.chunk_count), 0)).where(
                    ws,
                    FileRecord.state == FileState.INDEXED.value,
                    col(FileRecord.embedding_state).in_(embedded_states),
                )
            ).one()
            last_indexed = s.exec(select(func.max(FileRecord.last_indexed_time)).where(ws)).one()
        return StoreCounts(
            total_files=int(total_files),
            indexed_files=int(indexed_files),
            total_chunks=int(total_chunks),
            embedded_chunks=int(embedded),
            errored_files=int(errored),
            last_indexed_time=float(last_indexed) if last_indexed is not None else None,
        )

    @_storage_op("read")
    def file_errors(self, limit: int = 20) -> list[FileError]:
        with self.db.session() as s:
            rows = s.exec(
                select(FileRecord.path, FileRecord.last_error)
                .where(
                    FileRecord.workspace_id == self.workspace_id,
                    FileRecord.state == FileState.ERROR.value,
                )
                .order_by(col(FileRecord.path))
                .limit(limit)
            ).all()
            return [FileError(path=p, error=e or "") for p, e in rows]


def _token_row(chunk_id: str, posting: TokenPosting) -> dict[str, Any]:
    return {
        "term": posting.term,
        "chunk_id": chunk_id,
        "term_frequency": posting.term_frequency,
        "positions": ",".join(str(p) for p in posting.positions),
    }


class StorageManager:
    """Lazily opens and caches one WorkspaceStore per workspace id.

    Opening a workspace for the first time creates ``<root>/<workspace_id>/``;
    that directory creation is the only filesystem side effect here.
    """

    def __init__(self, config: StorageConfig | None = None, *, root: Path | None = None) -> None:
        from codeindex.config.models import StorageConfig

        self._config = config or StorageConfig()
        self.root = root if root is not None else self._config.root_path
        self._stores: dict[str, WorkspaceStore] = {}
        self._lock = threading.Lock()

    def db_path_for(self, workspace: WorkspaceIdentity) -> Path:
        return self.root / workspace.id / DB_FILENAME

    def open(self, workspace: WorkspaceIdentity) -> WorkspaceStore:
        """Idempotent; returns the cached handle on repeat calls."""
        with self._lock:
            store = self._stores.get(workspace.id)
            if store is not None:
                return store
            store = self._open_uncached(workspace)
            self._stores[workspace.id] = store
            return store

    def _open_uncached(self, workspace: WorkspaceIdentity) -> WorkspaceStore:
        db_path = self.db_path_for(workspace)
        start = time.monotonic()
        try:
            db_path.parent.mkdir(parents=True, exist_ok=True)
            db = Database(
                db_path,
                max_retries=self._config.max_retries,
                retry_base_delay=self._config.retry_base_delay_sec,
                busy_timeout_ms=self._config.busy_timeout_ms,
            )
            db.ensure_schema()
            create_additional_indexes(db.engine)
            with db.immediate_transaction() as session:
                if session.get(Workspace, workspace.id) is None:
                    session.add(Workspace(id=workspace.id, root_path=str(workspace.root_path)))
        except (SQLAlchemyError, OSError) as e:
            raise StorageError.unavailable(str(db_path), str(e)) from e
        log.info(
            "storage.opened",
            workspace=workspace.id,
            db_path=str(db_path),
            elapsed_ms=round((time.monotonic() - start) * 1000),
        )
        return WorkspaceStore(workspace, db)

    def get(self, workspace_id: str) -> WorkspaceStore | None:
        with self._lock:
            return self._stores.get(workspace_id)

    def close(self, workspace_id: str) -> None:
        with self._lock:
            store = self._stores.pop(workspace_id, None)
        if store is not None:
            store.db.dispose()

    def delete(self, workspace: WorkspaceIdentity) -> bool:
        """Close the handle and remove the workspace directory. Returns True if it existed."""
        self.close(workspace.id)
        directory = self.db_path_for(workspace).parent
        if not directory.exists():
            return False
        try:
            shutil.rmtree(directory)
        except OSError as e:
            raise StorageError.write_failed("delete_workspace", str(e)) from e
        log.info("storage.deleted", workspace=workspace.id, path=str(directory))
        return True

    def close_all(self) -> None:
        with self._lock:
            stores = list(self._stores.values())
            self._stores.clear()
        for store in stores:
            store.db.dispose()
