"""Local embedding runtimes.

Two runtimes share one contract, ``embed(handle, texts, token) -> ndarray[n, D]``:

- HashEmbeddingRuntime: deterministic, dependency-free fallback. Each
  character's code point lands in one of 256 buckets with weight
  ``1 + (cp % 13) / 13``; the vector is L2-normalized and stays all-zero
  for empty input.
- FastEmbedRuntime: fastembed (ONNX) TextEmbedding, default
  BAAI/bge-small-en-v1.5 (384-dim).

Row i of the result always corresponds to texts[i]. On cancellation the
remaining rows are left zero instead of being dropped.

Model artifacts are managed separately by ModelManager; ``embed`` never
downloads anything. LocalEmbeddingService picks the heavy runtime when it is
installed and falls back to hashing on any failure.
"""

from __future__ import annotations

import os
import shutil
import threading
import time
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

import numpy as np
import structlog

from codeindex.config.models import HASH_MODEL_ID
from codeindex.core.cancellation import CancellationToken, ensure_token
from codeindex.core.errors import ModelInstallError
from codeindex.index.models import ModelDownloadState

if TYPE_CHECKING:
    from codeindex.config.models import EmbeddingConfig

log = structlog.get_logger()

HASH_DIMENSION = 256
HASH_MODEL_VERSION = "1"
FASTEMBED_MODEL_VERSION = "fastembed"

# Model inputs above this are clipped; bge-small has a 512-token window
_MAX_TEXT_CHARS = 2000


@dataclass(frozen=True, slots=True)
class ModelHandle:
    """Identity of an embedding model as recorded on embedding rows."""

    model_id: str
    model_version: str
    dimension: int
    cache_dir: Path | None = None


HASH_HANDLE = ModelHandle(
    model_id=HASH_MODEL_ID, model_version=HASH_MODEL_VERSION, dimension=HASH_DIMENSION
)


class EmbeddingRuntime(Protocol):
    def embed(
        self,
        handle: ModelHandle,
        texts: Sequence[str],
        token: CancellationToken | None = None,
    ) -> np.ndarray: ...


def hash_embed(text: str, dimension: int = HASH_DIMENSION) -> np.ndarray:
    """Hash one string into an L2-normalized float32 vector."""
    vec = np.zeros(dimension, dtype=np.float64)
    if text:
        codes = np.frombuffer(text.encode("utf-32-le", errors="surrogatepass"), dtype="<u4")
        np.add.at(vec, codes % dimension, 1.0 + (codes % 13) / 13.0)
    norm = float(np.linalg.norm(vec))
    if norm > 0.0:
        vec /= norm
    return vec.astype(np.float32)


class HashEmbeddingRuntime:
    """Deterministic character-bucket embedding. Never fails, never downloads."""

    handle = HASH_HANDLE

    def embed(
        self,
        handle: ModelHandle,
        texts: Sequence[str],
        token: CancellationToken | None = None,
    ) -> np.ndarray:
        token = ensure_token(token)
        out = np.zeros((len(texts), handle.dimension), dtype=np.float32)
        for i, text in enumerate(texts):
            if token.is_cancellation_requested:
                break
            out[i] = hash_embed(text, handle.dimension)
        return out


def _detect_providers() -> list[str]:
    """Detect available ONNX Runtime execution providers."""
    try:
        import onnxruntime as ort  # type: ignore[import-not-found]

        available = set(ort.get_available_providers())
    except Exception:
        return []

    providers: list[str] = []
    if "CUDAExecutionProvider" in available:
        providers.append("CUDAExecutionProvider")
    providers.append("CPUExecutionProvider")
    return providers


class FastEmbedRuntime:
    """fastembed-backed runtime wrapping an already-loaded TextEmbedding."""

    def __init__(self, model: Any, batch_size: int = 64) -> None:
        self._model = model
        self._batch_size = batch_size
        self._lock = threading.Lock()

    def embed(
        self,
        handle: ModelHandle,
        texts: Sequence[str],
        token: CancellationToken | None = None,
    ) -> np.ndarray:
        token = ensure_token(token)
        out = np.zeros((len(texts), handle.dimension), dtype=np.float32)
        # Empty strings keep their zero row
        pending = [(i, t[:_MAX_TEXT_CHARS]) for i, t in enumerate(texts) if t]
        for start in range(0, len(pending), self._batch_size):
            if token.is_cancellation_requested:
                log.debug("embedding.cancelled", done=start, total=len(pending))
                break
            batch = pending[start : start + self._batch_size]
            # ONNX sessions are not re-entrant across our worker threads
            with self._lock:
                vectors = list(self._model.embed([t for _, t in batch], batch_size=len(batch)))
            for (i, _), vec in zip(batch, vectors, strict=True):
                arr = np.asarray(vec, dtype=np.float32)
                if arr.shape[0] != handle.dimension:
                    msg = f"model returned {arr.shape[0]} dims, expected {handle.dimension}"
                    raise ValueError(msg)
                norm = float(np.linalg.norm(arr))
                out[i] = arr / norm if norm > 0.0 else arr
        return out


def _cache_key(model_id: str) -> str:
    return model_id.rsplit("/", 1)[-1].lower()


class ModelManager:
    """Install, load and clear local model artifacts; tracks download state per model."""

    def __init__(self, cache_dir: Path, *, batch_size: int = 64) -> None:
        self.cache_dir = cache_dir
        self._batch_size = batch_size
        self._states: dict[str, ModelDownloadState] = {}
        self._loaded: dict[str, tuple[ModelHandle, FastEmbedRuntime]] = {}
        self._lock = threading.Lock()

    def state(self, model_id: str) -> ModelDownloadState:
        if model_id == HASH_MODEL_ID:
            return ModelDownloadState.READY
        return self._states.get(model_id, ModelDownloadState.NOT_STARTED)

    def get_or_install_model(self, model_id: str) -> ModelHandle:
        """Ensure the model is on disk and loaded; downloads when missing."""
        return self._load(model_id, local_files_only=False)

    def load_installed(self, model_id: str) -> ModelHandle:
        """Load a model that is already on disk. Never touches the network."""
        return self._load(model_id, local_files_only=True)

    def runtime(self, model_id: str) -> FastEmbedRuntime | None:
        with self._lock:
            loaded = self._loaded.get(model_id)
        return loaded[1] if loaded is not None else None

    def _load(self, model_id: str, *, local_files_only: bool) -> ModelHandle:
        if model_id == HASH_MODEL_ID:
            return HASH_HANDLE
        with self._lock:
            loaded = self._loaded.get(model_id)
            if loaded is not None:
                return loaded[0]
            self._states[model_id] = ModelDownloadState.DOWNLOADING

            start = time.monotonic()
            try:
                from fastembed import TextEmbedding

                self.cache_dir.mkdir(parents=True, exist_ok=True)
                kwargs: dict[str, Any] = {
                    "model_name": model_id,
                    "cache_dir": str(self.cache_dir),
                    "threads": max(1, (os.cpu_count() or 4) // 2),
                    "local_files_only": local_files_only,
                }
                providers = _detect_providers()
                if providers:
                    kwargs["providers"] = providers
                model = TextEmbedding(**kwargs)
                sample = np.asarray(next(iter(model.embed(["dimension check"]))))
            except Exception as e:
                self._states[model_id] = ModelDownloadState.ERROR
                if local_files_only:
                    raise ModelInstallError.not_installed(model_id) from e
                raise ModelInstallError.download_failed(model_id, str(e)) from e

            handle = ModelHandle(
                model_id=model_id,
                model_version=FASTEMBED_MODEL_VERSION,
                dimension=int(sample.shape[0]),
                cache_dir=self.cache_dir,
            )
            self._loaded[model_id] = (handle, FastEmbedRuntime(model, self._batch_size))
            self._states[model_id] = ModelDownloadState.READY
            log.info(
                "embedding.model_loaded",
                model=model_id,
                dimension=handle.dimension,
                providers=providers or ["CPUExecutionProvider"],
                elapsed_s=round(time.monotonic() - start, 2),
            )
            return handle

    def clear_model(self, model_id: str) -> bool:
        """Unload the model and delete its cached artifacts. Returns True if anything was removed."""
        if model_id == HASH_MODEL_ID:
            return False
        with self._lock:
            removed = self._loaded.pop(model_id, None) is not None
            self._states[model_id] = ModelDownloadState.NOT_STARTED
            if self.cache_dir.is_dir():
                key = _cache_key(model_id)
                for child in self.cache_dir.iterdir():
                    if child.is_dir() and key in child.name.lower():
                        shutil.rmtree(child, ignore_errors=True)
                        removed = True
        log.info("embedding.model_cleared", model=model_id, removed=removed)
        return removed


@dataclass(frozen=True, slots=True)
class EmbeddingBatch:
    """Vectors plus the identity of the model that actually produced them."""

    vectors: np.ndarray
    handle: ModelHandle
    degraded: bool = False


class LocalEmbeddingService:
    """Try the configured heavy model, fall back to hashing on any failure.

    ``prepare()`` is the only place a model may be installed. ``embed()``
    uses whatever is loaded at that moment.
    """

    def __init__(self, config: EmbeddingConfig, manager: ModelManager | None = None) -> None:
        self._config = config
        self._manager = manager or ModelManager(config.cache_path, batch_size=config.batch_size)
        self._hash = HashEmbeddingRuntime()
        self._heavy_handle: ModelHandle | None = None

    @property
    def manager(self) -> ModelManager:
        return self._manager

    @property
    def requested_model(self) -> str:
        return self._config.model

    @property
    def handle(self) -> ModelHandle:
        """Handle new vectors are produced with."""
        return self._heavy_handle or HASH_HANDLE

    @property
    def download_state(self) -> ModelDownloadState:
        return self._manager.state(self._config.model)

    def prepare(self) -> ModelHandle:
        """Load (or install, when allowed) the heavy model. Failures degrade to hashing."""
        if self._config.model == HASH_MODEL_ID or self._heavy_handle is not None:
            return self.handle
        try:
            if self._config.auto_install:
                self._heavy_handle = self._manager.get_or_install_model(self._config.model)
            else:
                self._heavy_handle = self._manager.load_installed(self._config.model)
        except ModelInstallError as e:
            log.warning(
                "embedding.heavy_unavailable",
                model=self._config.model,
                error=e.message,
                fallback=HASH_MODEL_ID,
            )
        return self.handle

    def embed(self, texts: Sequence[str], token: CancellationToken | None = None) -> EmbeddingBatch:
        heavy = self._heavy_handle
        runtime = self._manager.runtime(heavy.model_id) if heavy is not None else None
        if heavy is not None and runtime is not None:
            try:
                return EmbeddingBatch(runtime.embed(heavy, texts, token), heavy)
            except Exception as e:
                log.warning(
                    "embedding.heavy_failed_fallback",
                    model=heavy.model_id,
                    error=str(e),
                    texts=len(texts),
                )
                return EmbeddingBatch(
                    self._hash.embed(HASH_HANDLE, texts, token), HASH_HANDLE, degraded=True
                )
        return EmbeddingBatch(self._hash.embed(HASH_HANDLE, texts, token), HASH_HANDLE)

    def embed_query(self, text: str) -> EmbeddingBatch:
        return self.embed([text])
