"""Indexing layers: chunking/tokens, lexical BM25, embeddings, vector sinks, symbol graph."""

from codeindex.index._internal.indexing.chunking import (
    Chunk,
    TokenPosting,
    chunk_content,
    chunk_id,
    content_hash,
    detect_language_id,
    tokenize,
    tokenize_terms,
    truncate_content,
)
from codeindex.index._internal.indexing.embedding import (
    HASH_DIMENSION,
    HASH_HANDLE,
    EmbeddingBatch,
    FastEmbedRuntime,
    HashEmbeddingRuntime,
    LocalEmbeddingService,
    ModelHandle,
    ModelManager,
    hash_embed,
)
from codeindex.index._internal.indexing.graph import (
    GraphStats,
    GraphStore,
    InMemoryGraphStore,
    StoredFileGraph,
)
from codeindex.index._internal.indexing.lexical import LexicalHit, LexicalIndex, LexicalResults
from codeindex.index._internal.indexing.symbols import FileGraph, SymbolExtractor
from codeindex.index._internal.indexing.vectors import (
    CloudVectorSink,
    FileEmbeddings,
    LocalVectorSink,
    VectorHit,
    VectorSink,
)

__all__ = [
    # Chunking
    "Chunk",
    "TokenPosting",
    "chunk_content",
    "chunk_id",
    "content_hash",
    "detect_language_id",
    "tokenize",
    "tokenize_terms",
    "truncate_content",
    # Lexical
    "LexicalHit",
    "LexicalIndex",
    "LexicalResults",
    # Embedding runtimes
    "HASH_DIMENSION",
    "HASH_HANDLE",
    "EmbeddingBatch",
    "FastEmbedRuntime",
    "HashEmbeddingRuntime",
    "LocalEmbeddingService",
    "ModelHandle",
    "ModelManager",
    "hash_embed",
    # Vector sinks
    "CloudVectorSink",
    "FileEmbeddings",
    "LocalVectorSink",
    "VectorHit",
    "VectorSink",
    # Graph
    "FileGraph",
    "GraphStats",
    "GraphStore",
    "InMemoryGraphStore",
    "StoredFileGraph",
    "SymbolExtractor",
]
