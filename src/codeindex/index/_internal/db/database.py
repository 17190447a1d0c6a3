"""Database engine and bulk writer for the per-workspace index.

This module provides:
- Database: Connection manager with WAL mode for concurrent access
- BulkWriter: Core-SQL bulk operations for maintenance paths
- Session utilities for ORM and serializable transactions
- Retry logic for SQLite busy timeout handling
- Schema version gate (older schemas are dropped and recreated)

The hybrid pattern:
- Use immediate_transaction for per-file writes (delete-then-insert of one file)
- Use BulkWriter for workspace-wide maintenance (clear, soft deletes)
- Use session() for reads
"""

from __future__ import annotations

import time
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog
from sqlalchemy import event, text
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, SQLModel, create_engine

from codeindex.index.models import SCHEMA_VERSION, IndexMeta

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = structlog.get_logger()

# Retry configuration for SQLite busy handling
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_BASE_DELAY = 0.1  # 100ms base
DEFAULT_RETRY_MAX_DELAY = 2.0  # 2s max
DEFAULT_BUSY_TIMEOUT_MS = 30000


def _is_database_locked_error(error: Exception) -> bool:
    """Check if error is a SQLite database locked error."""
    error_str = str(error).lower()
    return "database is locked" in error_str or "database is busy" in error_str


class Database:
    """SQLite connection manager with WAL mode for concurrent access.

    Includes retry logic with exponential backoff for handling
    SQLite busy timeouts during concurrent writes.
    """

    def __init__(
        self,
        db_path: Path,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY,
        retry_max_delay: float = DEFAULT_RETRY_MAX_DELAY,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
    ) -> None:
        self.db_path = db_path
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay
        self._retry_max_delay = retry_max_delay
        self._busy_timeout_ms = busy_timeout_ms
        self.engine = self._create_engine()

    def _create_engine(self) -> Engine:
        engine = create_engine(
            f"sqlite:///{self.db_path}",
            connect_args={"check_same_thread": False},
            pool_pre_ping=True,
        )
        busy_timeout_ms = self._busy_timeout_ms

        def _on_connect(dbapi_conn: Any, connection_record: Any) -> None:
            _configure_pragmas(dbapi_conn, connection_record, busy_timeout_ms)

        event.listen(engine, "connect", _on_connect)
        return engine

    def create_all(self) -> None:
        """Create all tables from SQLModel metadata."""
        SQLModel.metadata.create_all(self.engine)

    def drop_all(self) -> None:
        """Drop all tables. Use with caution."""
        SQLModel.metadata.drop_all(self.engine)

    def ensure_schema(self) -> bool:
        """Create tables, rebuilding them if the stored schema version is older.

        Returns True when a migration (drop + recreate) happened.
        """
        self.create_all()
        with self.session() as session:
            row = session.get(IndexMeta, "schema_version")
            stored = int(row.value) if row is not None else None

        migrated = False
        if stored is not None and stored < SCHEMA_VERSION:
            logger.warning(
                "storage.schema_migrated",
                db_path=str(self.db_path),
                from_version=stored,
                to_version=SCHEMA_VERSION,
            )
            self.drop_all()
            self.create_all()
            migrated = True

        if stored is None or migrated:
            with self.immediate_transaction() as session:
                session.merge(IndexMeta(key="schema_version", value=str(SCHEMA_VERSION)))
        return migrated

    def schema_version(self) -> int | None:
        with self.session() as session:
            row = session.get(IndexMeta, "schema_version")
            return int(row.value) if row is not None else None

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """ORM session for reads and low-volume operations."""
        with Session(self.engine, expire_on_commit=False) as session:
            yield session

    @contextmanager
    def immediate_transaction(
        self,
        max_retries: int | None = None,
    ) -> Generator[Session, None, None]:
        """
        Session with BEGIN IMMEDIATE for serializable writes.

        Includes retry logic with exponential backoff for handling
        SQLite busy timeouts.

        BEGIN IMMEDIATE acquires a RESERVED lock immediately,
        blocking other writers but allowing readers.

        The session auto-commits on successful exit and rolls back
        on exception.

        Args:
            max_retries: Override default max retries (default: 3)
        """
        retries = max_retries if max_retries is not None else self._max_retries
        last_error: Exception | None = None

        for attempt in range(retries + 1):  # +1 for initial attempt
            try:
                session = Session(self.engine, expire_on_commit=False)
                session.execute(text("BEGIN IMMEDIATE"))
            except OperationalError as e:
                session.close()
                if _is_database_locked_error(e) and attempt < retries:
                    delay = min(
                        self._retry_base_delay * (2**attempt),
                        self._retry_max_delay,
                    )
                    logger.warning(
                        "sqlite_busy_retry",
                        attempt=attempt + 1,
                        max_retries=retries,
                        delay_sec=delay,
                    )
                    time.sleep(delay)
                    last_error = e
                    continue
                raise

            with session:
                try:
                    yield session
                    session.commit()
                except Exception:
                    session.rollback()
                    raise
            return

        # Should not reach here, but handle edge case
        if last_error:
            raise last_error

    @contextmanager
    def bulk_writer(self) -> Generator[BulkWriter, None, None]:
        """
        Bulk writer for workspace-wide maintenance.

        Auto-commits on successful exit, rolls back on exception.
        """
        writer = BulkWriter(self.engine)
        try:
            yield writer
            writer.commit()
        except Exception:
            writer.rollback()
            raise
        finally:
            writer.close()

    def dispose(self) -> None:
        """Close pooled connections."""
        self.engine.dispose()


def _configure_pragmas(dbapi_conn: Any, _connection_record: Any, busy_timeout_ms: int) -> None:
    """Configure SQLite for concurrent access and performance."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
    cursor.execute("PRAGMA synchronous=NORMAL")  # Safe with WAL
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA cache_size=-64000")  # 64MB cache
    cursor.close()


class BulkWriter:
    """Bulk operations using Core SQL, bypassing ORM overhead."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self.conn = engine.connect()
        self.transaction = self.conn.begin()

    def delete_where(
        self,
        model_class: type[SQLModel],
        condition: str,
        params: dict[str, Any],
    ) -> int:
        """Bulk delete rows matching condition, returning count affected."""
        table = model_class.__table__  # type: ignore[attr-defined]
        sql = f"DELETE FROM {table.name} WHERE {condition}"
        result = self.conn.execute(text(sql), params)
        return int(result.rowcount)

    def update_where(
        self,
        model_class: type[SQLModel],
        updates: dict[str, Any],
        condition: str,
        params: dict[str, Any],
    ) -> int:
        """
        Bulk update with condition.

        Returns:
            Number of rows affected
        """
        table = model_class.__table__  # type: ignore[attr-defined]
        set_clause = ", ".join(f"{k} = :upd_{k}" for k in updates)
        sql = f"UPDATE {table.name} SET {set_clause} WHERE {condition}"
        update_params = {f"upd_{k}": v for k, v in updates.items()}
        result = self.conn.execute(text(sql), {**update_params, **params})
        return int(result.rowcount)

    def commit(self) -> None:
        """Commit the current transaction."""
        self.transaction.commit()

    def rollback(self) -> None:
        """Rollback the current transaction."""
        self.transaction.rollback()

    def close(self) -> None:
        """Close the connection."""
        self.conn.close()
