"""Tests for the Pinecone data-plane client against a mocked transport."""

from __future__ import annotations

import json
from typing import Any

import httpx
import pytest

from codeindex.cloud.base import VectorRecord
from codeindex.cloud.pinecone import UPSERT_BATCH_SIZE, PineconeVectorStore
from codeindex.core.errors import EmbeddingProviderError, ErrorCode


class FakePinecone:
    """Records requests and answers from a per-path table."""

    def __init__(self) -> None:
        self.requests: list[tuple[str, dict[str, Any]]] = []
        self.responses: dict[str, httpx.Response] = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else {}
        self.requests.append((request.url.path, body))
        response = self.responses.get(request.url.path)
        if response is not None:
            return response
        if request.url.path == "/vectors/upsert":
            return httpx.Response(200, json={"upsertedCount": len(body["vectors"])})
        return httpx.Response(200, json={})


@pytest.fixture
def server() -> FakePinecone:
    return FakePinecone()


@pytest.fixture
def store(server: FakePinecone) -> PineconeVectorStore:
    return PineconeVectorStore(
        "pc-key", "idx-abc.svc.pinecone.io", dimension=2, transport=httpx.MockTransport(server)
    )


class TestConstruction:
    def test_given_missing_host_then_not_configured(self) -> None:
        with pytest.raises(EmbeddingProviderError) as exc_info:
            PineconeVectorStore("pc-key", "", dimension=2)

        assert exc_info.value.code == ErrorCode.EMBEDDING_NOT_CONFIGURED

    def test_given_missing_key_then_not_configured(self) -> None:
        with pytest.raises(EmbeddingProviderError):
            PineconeVectorStore("", "idx.pinecone.io", dimension=2)


class TestUpsert:
    @pytest.mark.asyncio
    async def test_upsert_names_namespace_and_batches(
        self, store: PineconeVectorStore, server: FakePinecone
    ) -> None:
        # Given
        records = [
            VectorRecord(f"v{i}", [1.0, 0.0], {"path": "a.py"})
            for i in range(UPSERT_BATCH_SIZE + 5)
        ]

        # When
        written = await store.upsert("ns-1", records)
        await store.aclose()

        # Then
        assert written == UPSERT_BATCH_SIZE + 5
        assert [path for path, _ in server.requests] == ["/vectors/upsert", "/vectors/upsert"]
        assert all(body["namespace"] == "ns-1" for _, body in server.requests)
        assert len(server.requests[1][1]["vectors"]) == 5

    @pytest.mark.asyncio
    async def test_request_uses_api_key_header_and_https_host(self, server: FakePinecone) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return server(request)

        store = PineconeVectorStore(
            "pc-key", "idx.pinecone.io", dimension=2, transport=httpx.MockTransport(handler)
        )
        await store.upsert("ns", [VectorRecord("v", [0.0, 1.0])])
        await store.aclose()

        assert seen[0].headers["Api-Key"] == "pc-key"
        assert str(seen[0].url) == "https://idx.pinecone.io/vectors/upsert"

    @pytest.mark.asyncio
    async def test_given_wrong_dimension_then_no_request(
        self, store: PineconeVectorStore, server: FakePinecone
    ) -> None:
        with pytest.raises(EmbeddingProviderError) as exc_info:
            await store.upsert("ns", [VectorRecord("v", [1.0, 0.0, 0.0])])
        await store.aclose()

        assert exc_info.value.code == ErrorCode.VECTOR_STORE_FAILED
        assert server.requests == []


class TestQuery:
    @pytest.mark.asyncio
    async def test_query_parses_and_sorts_matches(
        self, store: PineconeVectorStore, server: FakePinecone
    ) -> None:
        # Given
        server.responses["/query"] = httpx.Response(
            200,
            json={
                "matches": [
                    {"id": "low", "score": 0.2},
                    {"id": "high", "score": 0.9, "metadata": {"path": "a.py"}},
                ]
            },
        )

        # When
        matches = await store.query("ns-q", [1.0, 0.0], top_k=5, metadata_filter={"path": "a.py"})
        await store.aclose()

        # Then
        assert [m.id for m in matches] == ["high", "low"]
        assert matches[0].metadata == {"path": "a.py"}
        _, body = server.requests[0]
        assert body["namespace"] == "ns-q"
        assert body["topK"] == 5
        assert body["filter"] == {"path": "a.py"}

    @pytest.mark.asyncio
    async def test_zero_top_k_makes_no_request(
        self, store: PineconeVectorStore, server: FakePinecone
    ) -> None:
        assert await store.query("ns", [1.0, 0.0], top_k=0) == []
        await store.aclose()

        assert server.requests == []


class TestDeleteAndStats:
    @pytest.mark.asyncio
    async def test_delete_namespace_sends_delete_all(
        self, store: PineconeVectorStore, server: FakePinecone
    ) -> None:
        await store.delete_namespace("ns-gone")
        await store.aclose()

        assert server.requests == [("/vectors/delete", {"deleteAll": True, "namespace": "ns-gone"})]

    @pytest.mark.asyncio
    async def test_missing_namespace_delete_is_not_an_error(
        self, store: PineconeVectorStore, server: FakePinecone
    ) -> None:
        server.responses["/vectors/delete"] = httpx.Response(404, text="namespace not found")

        await store.delete_namespace("ns-never")
        await store.aclose()

    @pytest.mark.asyncio
    async def test_delete_ids_failure_propagates(
        self, store: PineconeVectorStore, server: FakePinecone
    ) -> None:
        server.responses["/vectors/delete"] = httpx.Response(500, text="boom")

        with pytest.raises(EmbeddingProviderError) as exc_info:
            await store.delete("ns", ["a", "b"])
        await store.aclose()

        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_namespace_stats_reads_own_entry(
        self, store: PineconeVectorStore, server: FakePinecone
    ) -> None:
        server.responses["/describe_index_stats"] = httpx.Response(
            200,
            json={"dimension": 2, "namespaces": {"ns-a": {"vectorCount": 7}, "ns-b": {"vectorCount": 3}}},
        )

        stats = await store.get_namespace_stats("ns-a")
        missing = await store.get_namespace_stats("ns-c")
        await store.aclose()

        assert stats.vector_count == 7
        assert stats.dimension == 2
        assert missing.vector_count == 0

    @pytest.mark.asyncio
    async def test_ping_reports_auth_failure_as_disconnected(
        self, store: PineconeVectorStore, server: FakePinecone
    ) -> None:
        server.responses["/describe_index_stats"] = httpx.Response(401)

        assert await store.ping() is False
        await store.aclose()
