"""Data-plane REST client for a Pinecone index.

Only the data-plane endpoints are used (the index must already exist):
``/vectors/upsert``, ``/query``, ``/vectors/delete`` and
``/describe_index_stats``. Every request names its namespace explicitly.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import httpx
import structlog

from codeindex.cloud.base import (
    NamespaceStats,
    VectorMatch,
    VectorRecord,
    sort_matches,
    truncate_metadata,
)
from codeindex.core.errors import EmbeddingProviderError

log = structlog.get_logger()

UPSERT_BATCH_SIZE = 100
DELETE_BATCH_SIZE = 1000


class PineconeVectorStore:
    def __init__(
        self,
        api_key: str,
        host: str,
        *,
        dimension: int,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not api_key:
            raise EmbeddingProviderError.not_configured("pinecone", "cloud.pinecone_api_key")
        if not host:
            raise EmbeddingProviderError.not_configured("pinecone", "cloud.pinecone_index_host")
        base_url = host if host.startswith(("http://", "https://")) else f"https://{host}"
        self.dimension = dimension
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={"Api-Key": api_key, "Content-Type": "application/json"},
            timeout=httpx.Timeout(timeout, connect=10.0),
            transport=transport,
        )

    async def _post(self, operation: str, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self._client.post(path, json=payload)
        except httpx.RequestError as e:
            raise EmbeddingProviderError.vector_store_failed(operation, str(e)) from e
        if response.status_code in (401, 403):
            raise EmbeddingProviderError.auth_failed("pinecone")
        if response.status_code >= 400:
            raise EmbeddingProviderError.vector_store_failed(
                operation, f"HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError as e:
            raise EmbeddingProviderError.vector_store_failed(operation, "non-JSON response") from e
        return body if isinstance(body, dict) else {}

    def _check_dimension(self, operation: str, size: int) -> None:
        if size != self.dimension:
            raise EmbeddingProviderError.vector_store_failed(
                operation, f"vector dimension {size} does not match index dimension {self.dimension}"
            )

    async def upsert(self, namespace: str, records: Sequence[VectorRecord]) -> int:
        """Insert or replace by id. Returns the number of vectors written."""
        upserted = 0
        for start in range(0, len(records), UPSERT_BATCH_SIZE):
            batch = records[start : start + UPSERT_BATCH_SIZE]
            vectors = []
            for record in batch:
                values = [float(v) for v in record.values]
                self._check_dimension("upsert", len(values))
                vectors.append(
                    {"id": record.id, "values": values, "metadata": truncate_metadata(record.metadata)}
                )
            body = await self._post(
                "upsert", "/vectors/upsert", {"vectors": vectors, "namespace": namespace}
            )
            upserted += int(body.get("upsertedCount", len(vectors)))
        return upserted

    async def query(
        self,
        namespace: str,
        vector: Sequence[float],
        top_k: int,
        metadata_filter: dict[str, Any] | None = None,
    ) -> list[VectorMatch]:
        values = [float(v) for v in vector]
        self._check_dimension("query", len(values))
        if top_k <= 0:
            return []
        payload: dict[str, Any] = {
            "namespace": namespace,
            "vector": values,
            "topK": top_k,
            "includeMetadata": True,
            "includeValues": False,
        }
        if metadata_filter:
            payload["filter"] = metadata_filter
        body = await self._post("query", "/query", payload)
        matches = [
            VectorMatch(
                id=str(m["id"]), score=float(m.get("score", 0.0)), metadata=m.get("metadata") or {}
            )
            for m in body.get("matches", [])
        ]
        return sort_matches(matches)

    async def delete(self, namespace: str, ids: Sequence[str]) -> None:
        for start in range(0, len(ids), DELETE_BATCH_SIZE):
            batch = list(ids[start : start + DELETE_BATCH_SIZE])
            await self._post("delete", "/vectors/delete", {"ids": batch, "namespace": namespace})

    async def delete_namespace(self, namespace: str) -> None:
        try:
            await self._post(
                "delete_namespace", "/vectors/delete", {"deleteAll": True, "namespace": namespace}
            )
        except EmbeddingProviderError as e:
            # Deleting a namespace that was never written is not an error
            if e.details.get("status_code") == 404:
                log.debug("pinecone.namespace_missing", namespace=namespace)
                return
            raise

    async def get_namespace_stats(self, namespace: str) -> NamespaceStats:
        body = await self._post("describe_index_stats", "/describe_index_stats", {})
        entry = (body.get("namespaces") or {}).get(namespace) or {}
        return NamespaceStats(
            namespace=namespace,
            vector_count=int(entry.get("vectorCount", 0)),
            dimension=body.get("dimension"),
        )

    async def ping(self) -> bool:
        try:
            await self._post("describe_index_stats", "/describe_index_stats", {})
        except EmbeddingProviderError:
            return False
        return True

    async def aclose(self) -> None:
        await self._client.aclose()
