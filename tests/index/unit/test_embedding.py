"""Tests for local embedding runtimes and the fallback service."""

from __future__ import annotations

import sys
import types
from collections.abc import Iterator, Sequence
from pathlib import Path
from typing import Any

import numpy as np
import pytest

from codeindex.config.models import HASH_MODEL_ID, EmbeddingConfig
from codeindex.core.cancellation import CancellationToken
from codeindex.core.errors import ModelInstallError
from codeindex.index._internal.indexing.embedding import (
    HASH_DIMENSION,
    HASH_HANDLE,
    HashEmbeddingRuntime,
    LocalEmbeddingService,
    ModelHandle,
    ModelManager,
    hash_embed,
)
from codeindex.index.models import ModelDownloadState


class TestHashEmbedding:
    """Deterministic character-bucket vectors."""

    def test_given_identical_input_then_identical_vectors(self) -> None:
        assert np.array_equal(hash_embed("def foo(): pass"), hash_embed("def foo(): pass"))

    def test_given_empty_string_then_zero_vector(self) -> None:
        vec = hash_embed("")

        assert vec.shape == (HASH_DIMENSION,)
        assert not vec.any()

    def test_given_text_then_unit_norm_float32(self) -> None:
        vec = hash_embed("hello world")

        assert vec.dtype == np.float32
        assert float(np.linalg.norm(vec)) == pytest.approx(1.0, abs=1e-5)

    def test_given_different_text_then_different_vectors(self) -> None:
        assert not np.array_equal(hash_embed("alpha"), hash_embed("omega"))

    def test_given_non_bmp_characters_then_embeds(self) -> None:
        assert float(np.linalg.norm(hash_embed("emoji \U0001f600"))) == pytest.approx(1.0, abs=1e-5)


class TestHashEmbeddingRuntime:
    def test_rows_correspond_to_inputs_by_position(self) -> None:
        # Given
        texts = ["first", "", "third"]

        # When
        out = HashEmbeddingRuntime().embed(HASH_HANDLE, texts)

        # Then
        assert out.shape == (3, HASH_DIMENSION)
        for i, text in enumerate(texts):
            assert np.array_equal(out[i], hash_embed(text))

    def test_given_cancelled_token_then_rows_left_zero(self) -> None:
        # Given
        token = CancellationToken()
        token.cancel()

        # When
        out = HashEmbeddingRuntime().embed(HASH_HANDLE, ["a", "b"], token)

        # Then
        assert out.shape == (2, HASH_DIMENSION)
        assert not out.any()


class _FakeTextEmbedding:
    """Stands in for fastembed.TextEmbedding; 8-dim vectors from text length."""

    fail_loading = False

    def __init__(self, **kwargs: Any) -> None:
        if _FakeTextEmbedding.fail_loading:
            raise RuntimeError("no network")
        self.kwargs = kwargs

    def embed(self, texts: Sequence[str], batch_size: int = 256) -> Iterator[np.ndarray]:
        for text in texts:
            yield np.full(8, float(len(text)), dtype=np.float32)


@pytest.fixture
def fake_fastembed(monkeypatch: pytest.MonkeyPatch) -> type[_FakeTextEmbedding]:
    module = types.ModuleType("fastembed")
    module.TextEmbedding = _FakeTextEmbedding  # type: ignore[attr-defined]
    monkeypatch.setitem(sys.modules, "fastembed", module)
    monkeypatch.setattr(_FakeTextEmbedding, "fail_loading", False)
    return _FakeTextEmbedding


class TestModelManager:
    def test_hash_model_is_always_ready(self, tmp_path: Path) -> None:
        manager = ModelManager(tmp_path)

        assert manager.state(HASH_MODEL_ID) == ModelDownloadState.READY
        assert manager.get_or_install_model(HASH_MODEL_ID) is HASH_HANDLE
        assert manager.clear_model(HASH_MODEL_ID) is False

    def test_given_install_then_ready_with_detected_dimension(
        self, tmp_path: Path, fake_fastembed: type[_FakeTextEmbedding]
    ) -> None:
        # Given
        manager = ModelManager(tmp_path / "models")
        assert manager.state("org/model") == ModelDownloadState.NOT_STARTED

        # When
        handle = manager.get_or_install_model("org/model")

        # Then
        assert handle.dimension == 8
        assert manager.state("org/model") == ModelDownloadState.READY
        assert manager.runtime("org/model") is not None
        assert manager.get_or_install_model("org/model") is handle

    def test_given_load_failure_then_error_state_and_install_error(
        self, tmp_path: Path, fake_fastembed: type[_FakeTextEmbedding]
    ) -> None:
        # Given
        fake_fastembed.fail_loading = True
        manager = ModelManager(tmp_path)

        # When / Then
        with pytest.raises(ModelInstallError):
            manager.load_installed("org/model")
        assert manager.state("org/model") == ModelDownloadState.ERROR

    def test_clear_model_removes_cached_artifacts(
        self, tmp_path: Path, fake_fastembed: type[_FakeTextEmbedding]
    ) -> None:
        # Given
        manager = ModelManager(tmp_path)
        manager.get_or_install_model("org/Model-Small")
        (tmp_path / "models--org--model-small").mkdir()

        # When
        removed = manager.clear_model("org/Model-Small")

        # Then
        assert removed is True
        assert not (tmp_path / "models--org--model-small").exists()
        assert manager.state("org/Model-Small") == ModelDownloadState.NOT_STARTED
        assert manager.runtime("org/Model-Small") is None


class _BrokenRuntime:
    def embed(self, handle: ModelHandle, texts: Sequence[str], token: Any = None) -> np.ndarray:
        raise RuntimeError("onnx session crashed")


class _StubManager:
    """ModelManager double whose heavy runtime always fails."""

    def __init__(self, *, install_fails: bool = False) -> None:
        self.install_fails = install_fails
        self.handle = ModelHandle(model_id="org/model", model_version="fastembed", dimension=8)

    def state(self, model_id: str) -> ModelDownloadState:
        return ModelDownloadState.ERROR if self.install_fails else ModelDownloadState.READY

    def get_or_install_model(self, model_id: str) -> ModelHandle:
        if self.install_fails:
            raise ModelInstallError.download_failed(model_id, "offline")
        return self.handle

    load_installed = get_or_install_model

    def runtime(self, model_id: str) -> _BrokenRuntime:
        return _BrokenRuntime()


class TestLocalEmbeddingService:
    def test_given_hash_model_then_hash_handle(self, tmp_path: Path) -> None:
        service = LocalEmbeddingService(EmbeddingConfig(model="hash", cache_dir=str(tmp_path)))

        assert service.prepare() is HASH_HANDLE
        batch = service.embed(["x", "y"])
        assert batch.handle is HASH_HANDLE
        assert batch.degraded is False
        assert batch.vectors.shape == (2, HASH_DIMENSION)

    def test_given_install_failure_then_falls_back_to_hash(self, tmp_path: Path) -> None:
        # Given
        service = LocalEmbeddingService(
            EmbeddingConfig(model="org/model", cache_dir=str(tmp_path)),
            manager=_StubManager(install_fails=True),  # type: ignore[arg-type]
        )

        # When
        handle = service.prepare()

        # Then
        assert handle is HASH_HANDLE
        assert service.download_state == ModelDownloadState.ERROR
        assert service.embed(["x"]).handle is HASH_HANDLE

    def test_given_heavy_runtime_failure_then_degraded_hash_batch(self, tmp_path: Path) -> None:
        # Given
        service = LocalEmbeddingService(
            EmbeddingConfig(model="org/model", cache_dir=str(tmp_path)),
            manager=_StubManager(),  # type: ignore[arg-type]
        )
        assert service.prepare().model_id == "org/model"

        # When
        batch = service.embed(["alpha", "beta"])

        # Then
        assert batch.degraded is True
        assert batch.handle is HASH_HANDLE
        assert np.array_equal(batch.vectors[1], hash_embed("beta"))

    def test_given_working_heavy_model_then_positions_preserved(
        self, tmp_path: Path, fake_fastembed: type[_FakeTextEmbedding]
    ) -> None:
        # Given
        service = LocalEmbeddingService(EmbeddingConfig(model="org/model", cache_dir=str(tmp_path)))
        service.prepare()

        # When
        batch = service.embed(["aa", "", "aaaa"])

        # Then
        assert batch.handle.model_id == "org/model"
        assert batch.degraded is False
        assert batch.vectors.shape == (3, 8)
        assert not batch.vectors[1].any()
        assert batch.vectors[0] == pytest.approx(batch.vectors[2])
