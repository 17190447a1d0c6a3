"""Embedding sinks: where a file's chunk vectors are produced and stored.

LocalVectorSink keeps vectors as rows in the workspace database and searches
them with numpy. CloudVectorSink embeds remotely and stores vectors in the
workspace's namespace of the remote vector store; when the provider fails for
a batch, that batch is embedded with the local hash runtime and kept locally,
and the file is marked ``degraded``.

Both sinks work in two phases so no network round trip happens inside a
database transaction:

1. ``embed_file`` computes vectors (and, for the cloud sink, upserts them)
   and returns the EmbeddingRecord rows that must be written locally.
2. The orchestrator writes those rows in the file's transaction.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

import numpy as np
import structlog

from codeindex.cloud.base import VectorRecord
from codeindex.cloud.namespace import parse_vector_id, vector_id
from codeindex.core.cancellation import CancellationToken, ensure_token
from codeindex.core.errors import EmbeddingProviderError
from codeindex.index._internal.indexing.chunking import chunk_id
from codeindex.index._internal.indexing.embedding import (
    HASH_HANDLE,
    HashEmbeddingRuntime,
    LocalEmbeddingService,
    ModelHandle,
)
from codeindex.index.models import EmbeddingRecord, EmbeddingState, ModelDownloadState

if TYPE_CHECKING:
    from codeindex.cloud.base import EmbeddingClient, VectorStore
    from codeindex.index._internal.db.storage import WorkspaceStore
    from codeindex.index._internal.indexing.chunking import Chunk

log = structlog.get_logger()


@dataclass
class FileEmbeddings:
    """Outcome of embedding one file's chunks."""

    state: EmbeddingState
    model_id: str
    records: list[EmbeddingRecord] = field(default_factory=list)
    error: str | None = None


@dataclass(frozen=True, slots=True)
class VectorHit:
    chunk_id: str
    score: float


def to_record(
    workspace_id: str, chunk: Chunk, vector: np.ndarray, handle: ModelHandle
) -> EmbeddingRecord:
    vec = np.asarray(vector, dtype="<f4")
    return EmbeddingRecord(
        chunk_id=chunk.id,
        model_id=handle.model_id,
        workspace_id=workspace_id,
        model_version=handle.model_version,
        dimension=handle.dimension,
        norm=float(np.linalg.norm(vec)),
        content_hash=chunk.content_hash,
        vector=vec.tobytes(),
    )


def search_rows(
    rows: list[tuple[str, bytes]], query: np.ndarray, top_k: int
) -> list[VectorHit]:
    """Cosine similarity over stored rows; ties keep chunk-id order."""
    if not rows or top_k <= 0:
        return []
    dimension = query.shape[0]
    ids = [cid for cid, blob in rows if len(blob) == dimension * 4]
    if not ids:
        return []
    matrix = np.frombuffer(
        b"".join(blob for _, blob in rows if len(blob) == dimension * 4), dtype="<f4"
    ).reshape(len(ids), dimension)
    q_norm = float(np.linalg.norm(query))
    if q_norm == 0.0:
        return []
    norms = np.linalg.norm(matrix, axis=1)
    norms[norms == 0.0] = 1.0
    scores = (matrix @ (query / q_norm)) / norms
    order = np.argsort(-scores, kind="stable")[:top_k]
    return [VectorHit(chunk_id=ids[i], score=float(scores[i])) for i in order]


class VectorSink(Protocol):
    kind: str

    @property
    def model_id(self) -> str: ...

    @property
    def download_state(self) -> ModelDownloadState: ...

    async def prepare(self) -> None: ...

    async def embed_file(
        self,
        store: WorkspaceStore,
        path: str,
        chunks: Sequence[Chunk],
        previous_chunk_count: int,
        token: CancellationToken | None = None,
    ) -> FileEmbeddings: ...

    async def remove_file(self, path: str, chunk_count: int) -> None: ...

    async def search(
        self, store: WorkspaceStore, query: str, top_k: int, token: CancellationToken | None = None
    ) -> list[VectorHit]: ...

    async def clear(self) -> None: ...

    async def diagnostics(self) -> dict[str, Any]: ...

    async def aclose(self) -> None: ...


class LocalVectorSink:
    """Vectors as EmbeddingRecord rows; identical chunk content reuses existing vectors."""

    kind = "local"

    def __init__(self, service: LocalEmbeddingService) -> None:
        self._service = service
        self._hash = HashEmbeddingRuntime()

    @property
    def model_id(self) -> str:
        return self._service.handle.model_id

    @property
    def dimension(self) -> int:
        return self._service.handle.dimension

    @property
    def download_state(self) -> ModelDownloadState:
        return self._service.download_state

    async def prepare(self) -> None:
        await asyncio.to_thread(self._service.prepare)

    async def embed_file(
        self,
        store: WorkspaceStore,
        path: str,
        chunks: Sequence[Chunk],
        previous_chunk_count: int,
        token: CancellationToken | None = None,
    ) -> FileEmbeddings:
        handle = self._service.handle
        if not chunks:
            return FileEmbeddings(state=EmbeddingState.EMBEDDED, model_id=handle.model_id)

        existing = await asyncio.to_thread(
            store.find_embeddings_by_hash, [c.content_hash for c in chunks], handle.model_id
        )
        records: list[EmbeddingRecord] = []
        missing: list[Chunk] = []
        for chunk in chunks:
            reuse = existing.get(chunk.content_hash)
            if reuse is not None:
                records.append(
                    to_record(store.workspace_id, chunk, np.frombuffer(reuse.vector, "<f4"), handle)
                )
            else:
                missing.append(chunk)

        if missing:
            batch = await asyncio.to_thread(
                self._service.embed, [c.content for c in missing], token
            )
            if batch.handle.model_id != handle.model_id:
                # One model per file: hash everything so the next refresh retries the heavy model
                hashed = await asyncio.to_thread(
                    self._hash.embed, HASH_HANDLE, [c.content for c in chunks], token
                )
                return FileEmbeddings(
                    state=EmbeddingState.DEGRADED,
                    model_id=HASH_HANDLE.model_id,
                    records=[
                        to_record(store.workspace_id, c, v, HASH_HANDLE)
                        for c, v in zip(chunks, hashed, strict=True)
                    ],
                )
            records.extend(
                to_record(store.workspace_id, c, v, batch.handle)
                for c, v in zip(missing, batch.vectors, strict=True)
            )

        return FileEmbeddings(
            state=EmbeddingState.EMBEDDED, model_id=handle.model_id, records=records
        )

    async def remove_file(self, path: str, chunk_count: int) -> None:
        # Rows cascade with their chunks
        return None

    async def search(
        self, store: WorkspaceStore, query: str, top_k: int, token: CancellationToken | None = None
    ) -> list[VectorHit]:
        batch = await asyncio.to_thread(self._service.embed_query, query)
        rows = await asyncio.to_thread(store.load_embeddings, batch.handle.model_id)
        hits = search_rows(rows, batch.vectors[0], top_k)
        if batch.handle.model_id == HASH_HANDLE.model_id:
            return hits

        # Files degraded to the hash model keep their rows under its model id
        degraded = await asyncio.to_thread(store.load_embeddings, HASH_HANDLE.model_id)
        if not degraded:
            return hits
        merged = {h.chunk_id: h.score for h in hits}
        local_query = self._hash.embed(HASH_HANDLE, [query])[0]
        for hit in search_rows(degraded, local_query, top_k):
            merged.setdefault(hit.chunk_id, hit.score)
        ranked = sorted(merged.items(), key=lambda item: -item[1])[:top_k]
        return [VectorHit(chunk_id=cid, score=score) for cid, score in ranked]

    async def clear(self) -> None:
        return None

    async def diagnostics(self) -> dict[str, Any]:
        handle = self._service.handle
        return {
            "embedding_model": handle.model_id,
            "embedding_dimension": handle.dimension,
            "requested_model": self._service.requested_model,
        }

    async def aclose(self) -> None:
        return None


class CloudVectorSink:
    """Remote embeddings and namespace-scoped remote vectors, with per-batch hash fallback."""

    kind = "cloud"

    def __init__(
        self,
        client: EmbeddingClient,
        vector_store: VectorStore,
        *,
        namespace: str,
        ws_hash: str,
        batch_size: int = 50,
    ) -> None:
        if client.dimension != vector_store.dimension:
            msg = (
                f"Embedding dimension {client.dimension} does not match "
                f"vector store dimension {vector_store.dimension}"
            )
            raise ValueError(msg)
        self._client = client
        self._vectors = vector_store
        self.namespace = namespace
        self._ws_hash = ws_hash
        self._batch_size = batch_size
        self._hash = HashEmbeddingRuntime()
        self.last_error: str | None = None

    @property
    def model_id(self) -> str:
        return self._client.model_id

    @property
    def dimension(self) -> int:
        return self._client.dimension

    @property
    def download_state(self) -> ModelDownloadState:
        return ModelDownloadState.READY

    async def prepare(self) -> None:
        return None

    def _vector_id(self, path: str, index: int) -> str:
        return vector_id(self._ws_hash, path, index)

    async def embed_file(
        self,
        store: WorkspaceStore,
        path: str,
        chunks: Sequence[Chunk],
        previous_chunk_count: int,
        token: CancellationToken | None = None,
    ) -> FileEmbeddings:
        token = ensure_token(token)
        stale = [self._vector_id(path, i) for i in range(len(chunks), previous_chunk_count)]
        degraded: list[EmbeddingRecord] = []
        error: str | None = None

        for start in range(0, len(chunks), self._batch_size):
            token.raise_if_cancelled("embed_file")
            window = chunks[start : start + self._batch_size]
            # Blank chunks get no remote vector
            stale.extend(
                self._vector_id(path, c.chunk_index)
                for c in window
                if not c.content and c.chunk_index < previous_chunk_count
            )
            batch = [c for c in window if c.content]
            if not batch:
                continue
            try:
                vectors = await self._client.embed([c.content for c in batch], "document", token)
                token.raise_if_cancelled("embed_file")
                await self._vectors.upsert(
                    self.namespace,
                    [
                        VectorRecord(
                            id=self._vector_id(path, c.chunk_index),
                            values=vec.tolist(),
                            metadata={
                                "path": path,
                                "chunk_index": c.chunk_index,
                                "start_line": c.start_line,
                                "end_line": c.end_line,
                                "content_hash": c.content_hash,
                                "content": c.content,
                            },
                        )
                        for c, vec in zip(batch, vectors, strict=True)
                    ],
                )
            except EmbeddingProviderError as e:
                error = e.message
                self.last_error = e.message
                log.warning(
                    "cloud.embed_fallback",
                    path=path,
                    chunks=len(batch),
                    error=e.error_name,
                    fallback=HASH_HANDLE.model_id,
                )
                hashed = await asyncio.to_thread(
                    self._hash.embed, HASH_HANDLE, [c.content for c in batch], token
                )
                degraded.extend(
                    to_record(store.workspace_id, c, v, HASH_HANDLE)
                    for c, v in zip(batch, hashed, strict=True)
                )
                # Remote copies of these chunks would now be stale
                stale.extend(self._vector_id(path, c.chunk_index) for c in batch)

        if stale:
            try:
                await self._vectors.delete(self.namespace, stale)
            except EmbeddingProviderError as e:
                log.warning("cloud.stale_delete_failed", path=path, count=len(stale), error=e.message)

        if degraded:
            return FileEmbeddings(
                state=EmbeddingState.DEGRADED,
                model_id=HASH_HANDLE.model_id,
                records=degraded,
                error=error,
            )
        return FileEmbeddings(state=EmbeddingState.EMBEDDED, model_id=self.model_id)

    async def remove_file(self, path: str, chunk_count: int) -> None:
        if chunk_count <= 0:
            return
        await self._vectors.delete(
            self.namespace, [self._vector_id(path, i) for i in range(chunk_count)]
        )

    async def search(
        self, store: WorkspaceStore, query: str, top_k: int, token: CancellationToken | None = None
    ) -> list[VectorHit]:
        hits: dict[str, float] = {}
        try:
            vectors = await self._client.embed([query], "query", token)
            matches = await self._vectors.query(self.namespace, vectors[0].tolist(), top_k)
        except EmbeddingProviderError as e:
            self.last_error = e.message
            log.warning("cloud.query_fallback", error=e.error_name)
            matches = []
        for match in matches:
            try:
                _, path, index = parse_vector_id(match.id)
            except ValueError:
                continue
            hits[chunk_id(path, index)] = match.score

        # Degraded files live locally under the hash model
        rows = await asyncio.to_thread(store.load_embeddings, HASH_HANDLE.model_id)
        if rows:
            local_query = self._hash.embed(HASH_HANDLE, [query])[0]
            for hit in search_rows(rows, local_query, top_k):
                hits.setdefault(hit.chunk_id, hit.score)

        ranked = sorted(hits.items(), key=lambda item: -item[1])[:top_k]
        return [VectorHit(chunk_id=cid, score=score) for cid, score in ranked]

    async def clear(self) -> None:
        await self._vectors.delete_namespace(self.namespace)

    async def diagnostics(self) -> dict[str, Any]:
        info: dict[str, Any] = {
            "embedding_model": self.model_id,
            "embedding_dimension": self.dimension,
            "namespace": self.namespace,
            "remote_connected": await self._vectors.ping(),
            "remote_vector_count": None,
            "last_error": self.last_error,
        }
        if info["remote_connected"]:
            try:
                stats = await self._vectors.get_namespace_stats(self.namespace)
                info["remote_vector_count"] = stats.vector_count
            except EmbeddingProviderError as e:
                info["last_error"] = e.message
        return info

    async def aclose(self) -> None:
        await self._client.aclose()
        await self._vectors.aclose()
