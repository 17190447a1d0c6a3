"""Contracts shared by the remote embedding client and vector stores."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

import numpy as np

from codeindex.core.cancellation import CancellationToken

InputType = Literal["document", "query"]

# Remote metadata carries a preview of the chunk, not the whole chunk
METADATA_CONTENT_LIMIT = 1000


@dataclass(frozen=True, slots=True)
class VectorRecord:
    id: str
    values: Sequence[float]
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class VectorMatch:
    id: str
    score: float
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class NamespaceStats:
    namespace: str
    vector_count: int
    dimension: int | None = None


def truncate_metadata(metadata: dict[str, Any], limit: int = METADATA_CONTENT_LIMIT) -> dict[str, Any]:
    content = metadata.get("content")
    if isinstance(content, str) and len(content) > limit:
        return {**metadata, "content": content[:limit]}
    return metadata


def sort_matches(matches: list[VectorMatch]) -> list[VectorMatch]:
    """Descending by score; equal scores keep their input order."""
    return sorted(matches, key=lambda m: -m.score)


class EmbeddingClient(Protocol):
    model_id: str
    dimension: int

    async def embed(
        self,
        texts: Sequence[str],
        input_type: InputType = "document",
        token: CancellationToken | None = None,
    ) -> np.ndarray: ...

    async def aclose(self) -> None: ...


class VectorStore(Protocol):
    """Namespace-scoped vector operations. No call ever reads or writes outside ``namespace``."""

    dimension: int

    async def upsert(self, namespace: str, records: Sequence[VectorRecord]) -> int: ...

    async def query(
        self,
        namespace: str,
        vector: Sequence[float],
        top_k: int,
        metadata_filter: dict[str, Any] | None = None,
    ) -> list[VectorMatch]: ...

    async def delete(self, namespace: str, ids: Sequence[str]) -> None: ...

    async def delete_namespace(self, namespace: str) -> None: ...

    async def get_namespace_stats(self, namespace: str) -> NamespaceStats: ...

    async def ping(self) -> bool: ...

    async def aclose(self) -> None: ...
