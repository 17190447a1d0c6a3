"""Database layer for the index."""

from codeindex.index._internal.db.database import BulkWriter, Database
from codeindex.index._internal.db.indexes import create_additional_indexes
from codeindex.index._internal.db.storage import (
    DiscoveredFile,
    Posting,
    StorageManager,
    StoreCounts,
    WorkspaceStore,
)

__all__ = [
    "Database",
    "BulkWriter",
    "create_additional_indexes",
    "DiscoveredFile",
    "Posting",
    "StorageManager",
    "StoreCounts",
    "WorkspaceStore",
]
