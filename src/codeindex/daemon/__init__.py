"""codeindex daemon - background indexing of host file-change notifications."""

from codeindex.daemon.indexer import BackgroundIndexer, IndexerState, IndexerStatus

__all__ = [
    "BackgroundIndexer",
    "IndexerState",
    "IndexerStatus",
]
