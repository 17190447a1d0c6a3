"""Hybrid search: BM25 lexical, vector similarity and recency merged into one ranking.

Scores per chunk:

    with vectors:    semantic_weight * sem + lexical_weight * lex + recency_weight * rec
    lexical only:    lexical_only_weight * lex + lexical_only_recency_weight * rec

``lex`` is the BM25 score divided by the best BM25 score of the query,
``sem`` is cosine similarity clamped to [0, 1], ``rec`` halves every
``recency_half_life_hours`` since the owning file was last indexed.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from typing import TYPE_CHECKING

import structlog

from codeindex.index._internal.indexing.lexical import LexicalIndex, LexicalResults
from codeindex.index.models import Provenance, SearchOptions, SemanticSearchResult

if TYPE_CHECKING:
    from codeindex.config.models import SearchConfig
    from codeindex.core.cancellation import CancellationToken
    from codeindex.index._internal.db.storage import WorkspaceStore
    from codeindex.index._internal.indexing.vectors import VectorHit, VectorSink

log = structlog.get_logger()

# Candidates fetched per signal, as a multiple of the requested result count
_CANDIDATE_FACTOR = 3


def recency_score(
    last_indexed_time: float | None, now: float, half_life_hours: float
) -> float:
    if last_indexed_time is None or half_life_hours <= 0:
        return 0.0
    age_hours = max(0.0, now - last_indexed_time) / 3600.0
    return float(0.5 ** (age_hours / half_life_hours))


def sort_key(result: SemanticSearchResult) -> tuple[float, int, float, str]:
    """Descending score, then lexical > vector > graph, then most recently indexed."""
    best = min((p.priority for p in result.provenance), default=len(Provenance))
    return (-result.score, best, -(result.last_indexed_time or 0.0), result.chunk_id)


class HybridSearcher:
    """Runs the lexical and vector signals concurrently and merges them."""

    def __init__(
        self,
        store: WorkspaceStore,
        sink: VectorSink,
        config: SearchConfig,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._sink = sink
        self._config = config
        self._lexical = LexicalIndex(store)
        self._clock = clock

    async def lexical(self, query: str, limit: int) -> LexicalResults:
        return await asyncio.to_thread(self._lexical.search, query, limit)

    async def vector(
        self, query: str, limit: int, token: CancellationToken | None = None
    ) -> list[VectorHit]:
        if not query.strip():
            return []
        return await self._sink.search(self._store, query, limit, token)

    async def search(
        self,
        query: str,
        options: SearchOptions | None = None,
        token: CancellationToken | None = None,
    ) -> list[SemanticSearchResult]:
        options = options or SearchOptions(max_results=self._config.max_results)
        if not query.strip() or options.max_results <= 0:
            return []
        candidates = options.max_results * _CANDIDATE_FACTOR

        async def _no_lexical() -> LexicalResults:
            return LexicalResults()

        async def _no_vector() -> list[VectorHit]:
            return []

        lexical, vector = await asyncio.gather(
            self.lexical(query, candidates) if options.include_lexical else _no_lexical(),
            self.vector(query, candidates, token) if options.include_vector else _no_vector(),
        )
        return await asyncio.to_thread(self._merge, lexical, vector, options)

    def _merge(
        self,
        lexical: LexicalResults,
        vector: list[VectorHit],
        options: SearchOptions,
    ) -> list[SemanticSearchResult]:
        cfg = self._config
        top_lexical = max((h.score for h in lexical.hits), default=0.0)
        lex_scores = {
            h.chunk.id: (h.score / top_lexical if top_lexical > 0 else 0.0) for h in lexical.hits
        }
        sem_scores = {h.chunk_id: max(0.0, min(1.0, h.score)) for h in vector}
        with_vectors = bool(vector)

        chunks = {h.chunk.id: h.chunk for h in lexical.hits}
        missing = [cid for cid in sem_scores if cid not in chunks]
        if missing:
            chunks.update(self._store.get_chunks(missing))
        files = self._store.get_files({c.path for c in chunks.values()})
        now = self._clock()

        results: list[SemanticSearchResult] = []
        for cid, chunk in chunks.items():
            if options.path_prefix and not chunk.path.startswith(options.path_prefix):
                continue
            if options.language_id and chunk.language_id != options.language_id:
                continue
            record = files.get(chunk.path)
            indexed_at = record.last_indexed_time if record is not None else None
            lex = lex_scores.get(cid, 0.0)
            sem = sem_scores.get(cid, 0.0)
            rec = recency_score(indexed_at, now, cfg.recency_half_life_hours)
            if with_vectors:
                score = cfg.semantic_weight * sem + cfg.lexical_weight * lex + cfg.recency_weight * rec
            else:
                score = cfg.lexical_only_weight * lex + cfg.lexical_only_recency_weight * rec

            provenance = set()
            if cid in lex_scores:
                provenance.add(Provenance.LEXICAL)
            if cid in sem_scores:
                provenance.add(Provenance.VECTOR)
            results.append(
                SemanticSearchResult(
                    chunk_id=cid,
                    path=chunk.path,
                    uri=chunk.uri,
                    content=chunk.content,
                    start_line=chunk.start_line,
                    end_line=chunk.end_line,
                    score=score,
                    provenance=frozenset(provenance),
                    language_id=chunk.language_id,
                    lexical_score=lex,
                    semantic_score=sem,
                    recency_score=rec,
                    last_indexed_time=indexed_at,
                )
            )

        results.sort(key=sort_key)
        log.debug(
            "search.merged",
            lexical_hits=len(lexical.hits),
            vector_hits=len(vector),
            results=len(results),
        )
        return results[: options.max_results]
