"""Lexical search over the token inverted index.

Scores chunks with Okapi BM25 using the ``tokens`` posting rows written at
index time. Query terms go through the same tokenizer as chunk content, so
``getUserById`` matches only the identical identifier. A query term that has
no postings is expanded to indexed terms sharing its prefix (fuzzy match).
"""

from __future__ import annotations

import math
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from codeindex.index._internal.indexing.chunking import tokenize_terms

if TYPE_CHECKING:
    from codeindex.index._internal.db.storage import WorkspaceStore
    from codeindex.index.models import ChunkRecord

BM25_K1 = 1.5
BM25_B = 0.75

# Shorter terms are not prefix-expanded; "a" would match half the vocabulary
_MIN_FUZZY_PREFIX = 3
_FUZZY_EXPANSION_LIMIT = 10


@dataclass
class LexicalHit:
    """A single scored chunk."""

    chunk: ChunkRecord
    score: float
    matched_terms: set[str] = field(default_factory=set)
    fuzzy: bool = False


@dataclass
class LexicalResults:
    hits: list[LexicalHit] = field(default_factory=list)
    query_terms: list[str] = field(default_factory=list)
    query_time_ms: int = 0


def bm25_idf(total_docs: int, doc_freq: int) -> float:
    return math.log((total_docs - doc_freq + 0.5) / (doc_freq + 0.5) + 1.0)


class LexicalIndex:
    """BM25 scorer bound to one workspace store."""

    def __init__(self, store: WorkspaceStore, *, k1: float = BM25_K1, b: float = BM25_B) -> None:
        self._store = store
        self._k1 = k1
        self._b = b

    def search(self, query: str, limit: int = 20, *, fuzzy: bool = True) -> LexicalResults:
        start = time.monotonic()
        terms = list(dict.fromkeys(tokenize_terms(query)))
        results = LexicalResults(query_terms=terms)
        if not terms or limit <= 0:
            return results

        postings = self._store.find_postings(terms)
        found_terms = {p.term for p in postings}
        fuzzy_terms: set[str] = set()
        if fuzzy:
            for term in terms:
                if term in found_terms or len(term) < _MIN_FUZZY_PREFIX:
                    continue
                expansions = self._store.find_terms_with_prefix(term, _FUZZY_EXPANSION_LIMIT)
                fuzzy_terms.update(expansions)
            if fuzzy_terms:
                postings.extend(self._store.find_postings(fuzzy_terms - found_terms))

        if not postings:
            results.query_time_ms = int((time.monotonic() - start) * 1000)
            return results

        total_docs, avg_len = self._store.lexical_stats()
        doc_freq: dict[str, int] = defaultdict(int)
        for p in postings:
            doc_freq[p.term] += 1

        chunks = self._store.get_chunks({p.chunk_id for p in postings})
        scores: dict[str, float] = defaultdict(float)
        matched: dict[str, set[str]] = defaultdict(set)
        avg_len = avg_len or 1.0
        for p in postings:
            chunk = chunks.get(p.chunk_id)
            if chunk is None:
                continue
            idf = bm25_idf(total_docs, doc_freq[p.term])
            dl = chunk.token_count or 0
            tf = p.term_frequency
            norm = tf + self._k1 * (1 - self._b + self._b * dl / avg_len)
            weight = 0.5 if p.term in fuzzy_terms and p.term not in found_terms else 1.0
            scores[p.chunk_id] += weight * idf * tf * (self._k1 + 1) / norm
            matched[p.chunk_id].add(p.term)

        ranked = sorted(scores.items(), key=lambda item: (-item[1], item[0]))[:limit]
        results.hits = [
            LexicalHit(
                chunk=chunks[chunk_id],
                score=score,
                matched_terms=matched[chunk_id],
                fuzzy=not (matched[chunk_id] & found_terms),
            )
            for chunk_id, score in ranked
        ]
        results.query_time_ms = int((time.monotonic() - start) * 1000)
        return results
