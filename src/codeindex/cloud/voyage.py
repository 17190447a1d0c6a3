"""Remote embedding client for the Voyage embeddings API.

Requests are split by count (at most 128 texts) and by estimated size
(~120k tokens at 4 chars/token), throttled client-side to the documented
requests-per-minute budget, and retried with exponential backoff on 429.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

import httpx
import numpy as np
import structlog

from codeindex.cloud.base import InputType
from codeindex.core.cancellation import CancellationToken, ensure_token
from codeindex.core.errors import EmbeddingProviderError

log = structlog.get_logger()

PROVIDER = "voyage"
DEFAULT_BASE_URL = "https://api.voyageai.com/v1"
DEFAULT_MODEL = "voyage-code-3"
DEFAULT_DIMENSION = 1024

MAX_BATCH_SIZE = 128
MAX_TOKENS_PER_BATCH = 120_000
CHARS_PER_TOKEN = 4
MAX_RETRIES = 5
BACKOFF_BASE_MS = 1000
BACKOFF_CAP_MS = 30_000
RATE_WINDOW_SEC = 60.0


def estimate_tokens(text: str) -> int:
    return max(1, -(-len(text) // CHARS_PER_TOKEN))


def backoff_delay(attempt: int) -> float:
    """Seconds to wait before retry ``attempt`` (0-based)."""
    return min(BACKOFF_BASE_MS * (2**attempt), BACKOFF_CAP_MS) / 1000.0


class _RateLimiter:
    """Sliding-window request budget."""

    def __init__(
        self,
        max_requests: int,
        window_sec: float = RATE_WINDOW_SEC,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._max = max_requests
        self._window = window_sec
        self._sleep = sleep
        self._sent: deque[float] = deque()
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        async with self._lock:
            while True:
                now = time.monotonic()
                while self._sent and now - self._sent[0] >= self._window:
                    self._sent.popleft()
                if len(self._sent) < self._max:
                    self._sent.append(now)
                    return
                wait = self._window - (now - self._sent[0])
                log.debug("voyage.rate_limit_wait", wait_sec=round(wait, 2))
                await self._sleep(wait)


def plan_batches(texts: Sequence[str], batch_size: int) -> list[list[int]]:
    """Group indices of non-empty texts into request batches."""
    batches: list[list[int]] = []
    current: list[int] = []
    current_tokens = 0
    for i, text in enumerate(texts):
        if not text:
            continue
        tokens = estimate_tokens(text)
        if current and (
            len(current) >= batch_size or current_tokens + tokens > MAX_TOKENS_PER_BATCH
        ):
            batches.append(current)
            current, current_tokens = [], 0
        current.append(i)
        current_tokens += tokens
    if current:
        batches.append(current)
    return batches


class VoyageEmbeddingClient:
    """Async client producing ``ndarray[n, dimension]`` aligned with the input texts.

    Empty strings get zero rows and are never sent. On cancellation the
    remaining rows stay zero.
    """

    def __init__(
        self,
        api_key: str,
        *,
        model: str = DEFAULT_MODEL,
        dimension: int = DEFAULT_DIMENSION,
        base_url: str = DEFAULT_BASE_URL,
        batch_size: int = 50,
        rate_limit_rpm: int = 300,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if not api_key:
            raise EmbeddingProviderError.not_configured(PROVIDER, "cloud.voyage_api_key")
        self.model_id = model
        self.dimension = dimension
        self._batch_size = max(1, min(batch_size, MAX_BATCH_SIZE))
        self._sleep = sleep
        self._limiter = _RateLimiter(rate_limit_rpm, sleep=sleep)
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
            timeout=httpx.Timeout(timeout, connect=10.0),
            transport=transport,
        )

    async def embed(
        self,
        texts: Sequence[str],
        input_type: InputType = "document",
        token: CancellationToken | None = None,
    ) -> np.ndarray:
        token = ensure_token(token)
        out = np.zeros((len(texts), self.dimension), dtype=np.float32)
        for batch in plan_batches(texts, self._batch_size):
            if token.is_cancellation_requested:
                log.debug("voyage.embed_cancelled", remaining=len(batch))
                break
            vectors = await self._request([texts[i] for i in batch], input_type)
            for i, vec in zip(batch, vectors, strict=True):
                out[i] = vec
        return out

    async def _request(self, batch: list[str], input_type: InputType) -> list[list[float]]:
        payload = {"input": batch, "model": self.model_id, "input_type": input_type}
        for attempt in range(MAX_RETRIES + 1):
            await self._limiter.acquire()
            try:
                response = await self._client.post("/embeddings", json=payload)
            except httpx.RequestError as e:
                raise EmbeddingProviderError.request_failed(PROVIDER, str(e)) from e

            if response.status_code == 429:
                if attempt >= MAX_RETRIES:
                    raise EmbeddingProviderError.rate_limited(PROVIDER, attempt + 1)
                delay = backoff_delay(attempt)
                log.warning("voyage.rate_limited", attempt=attempt + 1, delay_sec=delay)
                await self._sleep(delay)
                continue
            if response.status_code in (401, 403):
                raise EmbeddingProviderError.auth_failed(PROVIDER)
            if response.status_code >= 400:
                raise EmbeddingProviderError.request_failed(
                    PROVIDER, _error_detail(response), status_code=response.status_code
                )
            return self._parse(response, len(batch))

        raise EmbeddingProviderError.rate_limited(PROVIDER, MAX_RETRIES + 1)

    def _parse(self, response: httpx.Response, expected: int) -> list[list[float]]:
        try:
            data = response.json()["data"]
            rows = sorted(data, key=lambda item: item.get("index", 0))
            vectors = [row["embedding"] for row in rows]
        except (ValueError, KeyError, TypeError) as e:
            raise EmbeddingProviderError.bad_response(PROVIDER, f"malformed body: {e}") from e
        if len(vectors) != expected:
            raise EmbeddingProviderError.bad_response(
                PROVIDER, f"expected {expected} embeddings, got {len(vectors)}"
            )
        for vec in vectors:
            if len(vec) != self.dimension:
                raise EmbeddingProviderError.bad_response(
                    PROVIDER, f"expected dimension {self.dimension}, got {len(vec)}"
                )
        return vectors

    async def aclose(self) -> None:
        await self._client.aclose()


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return f"HTTP {response.status_code}"
    if isinstance(body, dict):
        return str(body.get("detail") or body.get("message") or body)
    return str(body)
