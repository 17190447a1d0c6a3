"""Tests for the in-process vector store."""

import pytest

from codeindex.cloud.base import METADATA_CONTENT_LIMIT, VectorRecord
from codeindex.cloud.memory import InMemoryVectorStore
from codeindex.core.errors import EmbeddingProviderError, ErrorCode


@pytest.fixture
def vectors() -> InMemoryVectorStore:
    return InMemoryVectorStore(3)


class TestNamespaceIsolation:
    @pytest.mark.asyncio
    async def test_query_only_sees_own_namespace(self, vectors: InMemoryVectorStore) -> None:
        # Given
        await vectors.upsert("ns-a", [VectorRecord("a1", [1.0, 0.0, 0.0])])
        await vectors.upsert("ns-b", [VectorRecord("b1", [1.0, 0.0, 0.0])])

        # When
        matches = await vectors.query("ns-a", [1.0, 0.0, 0.0], top_k=10)

        # Then
        assert [m.id for m in matches] == ["a1"]

    @pytest.mark.asyncio
    async def test_delete_namespace_leaves_others(self, vectors: InMemoryVectorStore) -> None:
        await vectors.upsert("ns-a", [VectorRecord("a1", [1.0, 0.0, 0.0])])
        await vectors.upsert("ns-b", [VectorRecord("b1", [0.0, 1.0, 0.0])])

        await vectors.delete_namespace("ns-a")

        assert (await vectors.get_namespace_stats("ns-a")).vector_count == 0
        assert (await vectors.get_namespace_stats("ns-b")).vector_count == 1

    @pytest.mark.asyncio
    async def test_delete_ids_in_missing_namespace_is_noop(self, vectors: InMemoryVectorStore) -> None:
        await vectors.delete("ns-missing", ["x"])

        assert (await vectors.get_namespace_stats("ns-missing")).vector_count == 0


class TestQuery:
    @pytest.mark.asyncio
    async def test_matches_sorted_by_cosine(self, vectors: InMemoryVectorStore) -> None:
        # Given
        await vectors.upsert(
            "ns",
            [
                VectorRecord("far", [0.0, 0.0, 1.0]),
                VectorRecord("near", [2.0, 0.1, 0.0]),
                VectorRecord("mid", [1.0, 1.0, 0.0]),
            ],
        )

        # When
        matches = await vectors.query("ns", [1.0, 0.0, 0.0], top_k=2)

        # Then
        assert [m.id for m in matches] == ["near", "mid"]
        assert matches[0].score == pytest.approx(0.99875, abs=1e-4)

    @pytest.mark.asyncio
    async def test_upsert_replaces_by_id(self, vectors: InMemoryVectorStore) -> None:
        await vectors.upsert("ns", [VectorRecord("v", [1.0, 0.0, 0.0], {"path": "a.py"})])
        await vectors.upsert("ns", [VectorRecord("v", [0.0, 1.0, 0.0], {"path": "b.py"})])

        matches = await vectors.query("ns", [0.0, 1.0, 0.0], top_k=5)

        assert len(matches) == 1
        assert matches[0].metadata == {"path": "b.py"}
        assert matches[0].score == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_metadata_filter(self, vectors: InMemoryVectorStore) -> None:
        await vectors.upsert(
            "ns",
            [
                VectorRecord("py", [1.0, 0.0, 0.0], {"language": "python"}),
                VectorRecord("ts", [1.0, 0.0, 0.0], {"language": "typescript"}),
            ],
        )

        matches = await vectors.query("ns", [1.0, 0.0, 0.0], 5, metadata_filter={"language": "python"})

        assert [m.id for m in matches] == ["py"]

    @pytest.mark.asyncio
    async def test_content_metadata_truncated(self, vectors: InMemoryVectorStore) -> None:
        long_text = "x" * (METADATA_CONTENT_LIMIT + 50)
        await vectors.upsert("ns", [VectorRecord("v", [1.0, 0.0, 0.0], {"content": long_text})])

        matches = await vectors.query("ns", [1.0, 0.0, 0.0], 1)

        assert len(matches[0].metadata["content"]) == METADATA_CONTENT_LIMIT


class TestDimension:
    @pytest.mark.asyncio
    async def test_given_wrong_dimension_when_upsert_then_vector_store_error(
        self, vectors: InMemoryVectorStore
    ) -> None:
        with pytest.raises(EmbeddingProviderError) as exc_info:
            await vectors.upsert("ns", [VectorRecord("v", [1.0, 0.0])])

        assert exc_info.value.code == ErrorCode.VECTOR_STORE_FAILED

    @pytest.mark.asyncio
    async def test_given_wrong_dimension_when_query_then_vector_store_error(
        self, vectors: InMemoryVectorStore
    ) -> None:
        with pytest.raises(EmbeddingProviderError):
            await vectors.query("ns", [1.0, 0.0, 0.0, 0.0], 1)
