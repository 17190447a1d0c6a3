"""In-process vector store with the same namespace contract as the remote one.

Used by tests and as the vector store of a cloud backend that has no remote
index configured.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import numpy as np

from codeindex.cloud.base import (
    NamespaceStats,
    VectorMatch,
    VectorRecord,
    sort_matches,
    truncate_metadata,
)
from codeindex.core.errors import EmbeddingProviderError


class InMemoryVectorStore:
    def __init__(self, dimension: int) -> None:
        self.dimension = dimension
        # namespace -> id -> (unit vector, metadata); dicts keep insertion order
        self._namespaces: dict[str, dict[str, tuple[np.ndarray, dict[str, Any]]]] = {}

    def _vector(self, operation: str, values: Sequence[float]) -> np.ndarray:
        vec = np.asarray(values, dtype=np.float32)
        if vec.shape != (self.dimension,):
            raise EmbeddingProviderError.vector_store_failed(
                operation, f"vector dimension {vec.shape[-1] if vec.ndim else 0} "
                f"does not match index dimension {self.dimension}"
            )
        norm = float(np.linalg.norm(vec))
        return vec / norm if norm > 0.0 else vec

    async def upsert(self, namespace: str, records: Sequence[VectorRecord]) -> int:
        space = self._namespaces.setdefault(namespace, {})
        for record in records:
            space[record.id] = (
                self._vector("upsert", record.values),
                dict(truncate_metadata(record.metadata)),
            )
        return len(records)

    async def query(
        self,
        namespace: str,
        vector: Sequence[float],
        top_k: int,
        metadata_filter: dict[str, Any] | None = None,
    ) -> list[VectorMatch]:
        query = self._vector("query", vector)
        space = self._namespaces.get(namespace, {})
        matches = []
        for vid, (vec, metadata) in space.items():
            if metadata_filter and any(metadata.get(k) != v for k, v in metadata_filter.items()):
                continue
            matches.append(VectorMatch(id=vid, score=float(vec @ query), metadata=dict(metadata)))
        return sort_matches(matches)[: max(top_k, 0)]

    async def delete(self, namespace: str, ids: Sequence[str]) -> None:
        space = self._namespaces.get(namespace)
        if space is None:
            return
        for vid in ids:
            space.pop(vid, None)

    async def delete_namespace(self, namespace: str) -> None:
        self._namespaces.pop(namespace, None)

    async def get_namespace_stats(self, namespace: str) -> NamespaceStats:
        return NamespaceStats(
            namespace=namespace,
            vector_count=len(self._namespaces.get(namespace, {})),
            dimension=self.dimension,
        )

    async def ping(self) -> bool:
        return True

    async def aclose(self) -> None:
        return None
