"""Context bundles: ranked snippets, symbols and edges under snippet/token budgets.

Pipeline for one query:

1. Fan out concurrently: hybrid lexical+vector search, and symbol lookup
   for the query terms.
2. Expand through the graph from symbols declared inside the hits, symbols
   named by the query, and the focus file's module node. Expanded snippets
   score ``graph_score_decay`` times the score of what led to them.
3. Merge: overlapping ranges in the same file collapse into the highest
   scoring instance, which inherits the union of provenance.
4. Sort by score, then lexical > vector > graph, then most recently indexed,
   and cut to ``max_snippets`` / ``max_tokens`` (4 chars per token). The
   snippet that crosses the token budget is truncated and ends the bundle.
"""

from __future__ import annotations

import asyncio
import math
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog

from codeindex.core.cancellation import CancellationToken, ensure_token
from codeindex.index._internal.indexing.chunking import split_lines, tokenize_terms
from codeindex.index.models import (
    ContextBundle,
    ContextEdge,
    ContextSnippet,
    ContextSymbol,
    GraphNode,
    IndexFreshness,
    IndexState,
    IndexStatus,
    Provenance,
    SearchOptions,
    SemanticSearchResult,
)

if TYPE_CHECKING:
    from codeindex.config.models import SearchConfig
    from codeindex.index._internal.db.storage import WorkspaceStore
    from codeindex.index._internal.indexing.graph import GraphStore, InMemoryGraphStore
    from codeindex.index.models import ChunkRecord
    from codeindex.index.search import HybridSearcher

log = structlog.get_logger()

CHARS_PER_TOKEN = 4
FOCUS_BOOST = 1.25
_MAX_SEEDS = 20
_NAME_PREFIX = "name:"


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def freshness_for(status: IndexStatus) -> IndexFreshness:
    if status.state == IndexState.BUILDING or status.rebuilding:
        return IndexFreshness.BUILDING
    if status.indexed_files == 0 or status.state == IndexState.UNINITIALIZED:
        return IndexFreshness.UNINITIALIZED
    if status.state == IndexState.READY and not status.paused:
        return IndexFreshness.FRESH
    return IndexFreshness.STALE


def snippet_sort_key(snippet: ContextSnippet) -> tuple[float, int, float, str, int]:
    return (
        -snippet.score,
        snippet.best_provenance,
        -(snippet.last_indexed_time or 0.0),
        snippet.path,
        snippet.start_line,
    )


def merge_overlapping(candidates: Iterable[ContextSnippet]) -> list[ContextSnippet]:
    """Collapse overlapping same-file ranges into the best-ranked instance."""
    kept: list[ContextSnippet] = []
    for candidate in sorted(candidates, key=snippet_sort_key):
        winner = next((k for k in kept if k.overlaps(candidate)), None)
        if winner is None:
            kept.append(candidate)
        else:
            winner.provenance |= candidate.provenance
    return kept


def truncate_snippet(snippet: ContextSnippet, max_tokens: int) -> ContextSnippet | None:
    """Cut a snippet to ``max_tokens`` on a line boundary where possible."""
    limit = max_tokens * CHARS_PER_TOKEN
    if limit <= 0:
        return None
    content = snippet.content[:limit]
    cut = content.rfind("\n")
    if 0 < cut < len(content) - 1:
        content = content[:cut]
    snippet.content = content
    snippet.end_line = snippet.start_line + content.count("\n")
    return snippet


def apply_budget(
    ranked: list[ContextSnippet], max_snippets: int, max_tokens: int
) -> tuple[list[ContextSnippet], int, bool]:
    """Take snippets in order until a budget is hit. Returns (snippets, tokens, truncated)."""
    selected: list[ContextSnippet] = []
    total = 0
    for snippet in ranked:
        if len(selected) >= max_snippets:
            break
        cost = estimate_tokens(snippet.content)
        if total + cost > max_tokens:
            cut = truncate_snippet(snippet, max_tokens - total)
            if cut is not None and cut.content:
                selected.append(cut)
                total += estimate_tokens(cut.content)
            return selected, total, True
        selected.append(snippet)
        total += cost
    return selected, total, False


@dataclass
class _Expansion:
    snippets: list[ContextSnippet] = field(default_factory=list)
    symbols: dict[str, ContextSymbol] = field(default_factory=dict)
    edges: dict[tuple[str, str, str], ContextEdge] = field(default_factory=dict)

    def add_symbol(self, node: GraphNode) -> None:
        if node.id not in self.symbols:
            self.symbols[node.id] = ContextSymbol(
                id=node.id,
                name=node.name,
                kind=node.kind,
                path=node.path,
                container_name=node.container_name,
                start_line=node.start_line,
                end_line=node.end_line,
            )


class ContextBundler:
    """Assembles a ContextBundle from hybrid search plus graph expansion."""

    def __init__(
        self,
        store: WorkspaceStore,
        searcher: HybridSearcher,
        graph: GraphStore | InMemoryGraphStore,
        config: SearchConfig,
    ) -> None:
        self._store = store
        self._searcher = searcher
        self._graph = graph
        self._config = config

    async def bundle(
        self,
        query: str,
        status: IndexStatus,
        *,
        focus_path: str | None = None,
        max_snippets: int | None = None,
        max_tokens: int | None = None,
        engine_metadata: dict[str, Any] | None = None,
        token: CancellationToken | None = None,
    ) -> ContextBundle:
        token = ensure_token(token)
        cfg = self._config
        max_snippets = cfg.max_snippets if max_snippets is None else max_snippets
        max_tokens = cfg.max_tokens if max_tokens is None else max_tokens
        freshness = freshness_for(status)

        bundle = ContextBundle(
            query=query,
            index_freshness=freshness,
            recency_info={
                "state": freshness.value,
                "index_state": status.state.value,
                "last_indexed_time": status.last_indexed_time,
                "indexed_files": status.indexed_files,
                "total_files": status.total_files,
            },
        )
        if not query.strip() or max_snippets <= 0 or max_tokens <= 0:
            bundle.engine_metadata = {"selection_strategy": "hybrid", **(engine_metadata or {})}
            return bundle

        terms = list(dict.fromkeys(tokenize_terms(query)))
        hits, named = await asyncio.gather(
            self._searcher.search(
                query, SearchOptions(max_results=max(cfg.max_results, max_snippets)), token
            ),
            asyncio.to_thread(self._graph.find_symbols, terms),
        )
        token.raise_if_cancelled("get_context")

        expansion = await asyncio.to_thread(self._expand, hits, named, focus_path)
        token.raise_if_cancelled("get_context")

        candidates = [self._from_hit(h) for h in hits] + expansion.snippets
        if focus_path is not None:
            for snippet in candidates:
                if snippet.path == focus_path:
                    snippet.score *= FOCUS_BOOST

        ranked = merge_overlapping(candidates)
        selected, total, truncated = apply_budget(ranked, max_snippets, max_tokens)

        bundle.snippets = selected
        bundle.total_tokens = total
        bundle.symbols = list(expansion.symbols.values())
        bundle.edges = list(expansion.edges.values())
        bundle.engine_metadata = {
            "selection_strategy": "hybrid",
            "lexical_hits": sum(1 for h in hits if Provenance.LEXICAL in h.provenance),
            "vector_hits": sum(1 for h in hits if Provenance.VECTOR in h.provenance),
            "graph_hits": len(expansion.snippets),
            "candidates": len(candidates),
            "truncated": truncated,
            "max_snippets": max_snippets,
            "max_tokens": max_tokens,
            **(engine_metadata or {}),
        }
        log.debug(
            "context.bundled",
            snippets=len(selected),
            tokens=total,
            freshness=freshness.value,
        )
        return bundle

    @staticmethod
    def _from_hit(hit: SemanticSearchResult) -> ContextSnippet:
        return ContextSnippet(
            path=hit.path,
            uri=hit.uri,
            start_line=hit.start_line,
            end_line=hit.end_line,
            content=hit.content,
            score=hit.score,
            provenance=set(hit.provenance),
            last_indexed_time=hit.last_indexed_time,
            chunk_id=hit.chunk_id,
        )

    # ------------------------------------------------------------------
    # Graph expansion (runs in a worker thread)
    # ------------------------------------------------------------------

    def _expand(
        self,
        hits: list[SemanticSearchResult],
        named: list[GraphNode],
        focus_path: str | None,
    ) -> _Expansion:
        decay = self._config.graph_score_decay
        top = max((h.score for h in hits), default=1.0)
        out = _Expansion()
        indexed_at: dict[str, float | None] = {}

        # seed node id -> score of what led to it
        seeds: dict[str, tuple[GraphNode, float]] = {}
        for hit in hits[:_MAX_SEEDS]:
            for node in self._graph.nodes_in_range(hit.path, hit.start_line, hit.end_line):
                indexed_at.setdefault(node.path, hit.last_indexed_time)
                if node.id not in seeds:
                    seeds[node.id] = (node, hit.score)
        for node in named:
            out.add_symbol(node)
            if node.id not in seeds:
                seeds[node.id] = (node, top)
                self._add_node_snippet(out, node, decay * top, indexed_at)
        if focus_path is not None:
            focus = self._graph.get_file_graph(self._uri_for(focus_path))
            for node in focus.nodes:
                if node.kind == "module" and node.id not in seeds:
                    seeds[node.id] = (node, top)

        for node, score in list(seeds.values())[: _MAX_SEEDS * 2]:
            out.add_symbol(node)
            for edge in self._graph.get_neighbors(node.id):
                out.edges.setdefault(
                    (edge.from_id, edge.to_id, edge.kind),
                    ContextEdge(from_id=edge.from_id, to_id=edge.to_id, kind=edge.kind),
                )
                other = edge.to_id if edge.from_id == node.id else edge.from_id
                for target in self._resolve(other):
                    if target.id in seeds:
                        continue
                    out.add_symbol(target)
                    self._add_node_snippet(out, target, decay * score, indexed_at)
        return out

    def _uri_for(self, path: str) -> str:
        return (self._store.workspace.root_path / path).as_uri()

    def _resolve(self, node_id: str) -> list[GraphNode]:
        if node_id.startswith(_NAME_PREFIX):
            return self._graph.get_definitions(node_id)[:3]
        node = self._graph.get_node(node_id)
        return [node] if node is not None else []

    def _add_node_snippet(
        self,
        out: _Expansion,
        node: GraphNode,
        score: float,
        indexed_at: dict[str, float | None],
    ) -> None:
        chunks = self._store.get_chunks_for_path(node.path)
        if not chunks:
            return
        if node.path not in indexed_at:
            record = self._store.get_file(node.path)
            indexed_at[node.path] = record.last_indexed_time if record is not None else None
        snippet = _node_snippet(node, chunks, score, indexed_at[node.path])
        if snippet is not None:
            out.snippets.append(snippet)


def _node_snippet(
    node: GraphNode,
    chunks: list[ChunkRecord],
    score: float,
    last_indexed_time: float | None,
) -> ContextSnippet | None:
    """Lines of ``node`` cut from the chunk that contains its first line.

    Module nodes have no range and map to the file's first chunk.
    """
    line = node.start_line if node.start_line > 0 else 1
    chunk = next((c for c in chunks if c.start_line <= line <= c.end_line), None)
    if chunk is None:
        return None
    if node.kind == "module" or node.end_line <= 0:
        start, end = chunk.start_line, chunk.end_line
    else:
        start, end = max(node.start_line, chunk.start_line), min(node.end_line, chunk.end_line)
    lines = split_lines(chunk.content)
    text = "\n".join(lines[start - chunk.start_line : end - chunk.start_line + 1])
    if not text:
        return None
    return ContextSnippet(
        path=chunk.path,
        uri=chunk.uri,
        start_line=start,
        end_line=end,
        content=text,
        score=score,
        provenance={Provenance.GRAPH},
        last_indexed_time=last_indexed_time,
        chunk_id=chunk.id,
    )
