"""Remote embedding provider and namespace-partitioned vector store clients."""

from codeindex.cloud.base import (
    EmbeddingClient,
    InputType,
    NamespaceStats,
    VectorMatch,
    VectorRecord,
    VectorStore,
)
from codeindex.cloud.memory import InMemoryVectorStore
from codeindex.cloud.namespace import (
    namespace_for,
    parse_vector_id,
    resolve_user_id,
    vector_id,
    workspace_hash,
)
from codeindex.cloud.pinecone import PineconeVectorStore
from codeindex.cloud.voyage import VoyageEmbeddingClient

__all__ = [
    "EmbeddingClient",
    "InputType",
    "NamespaceStats",
    "VectorMatch",
    "VectorRecord",
    "VectorStore",
    "InMemoryVectorStore",
    "PineconeVectorStore",
    "VoyageEmbeddingClient",
    "namespace_for",
    "parse_vector_id",
    "resolve_user_id",
    "vector_id",
    "workspace_hash",
]
