"""Symbol/dependency graph storage and queries.

GraphStore persists each file's FileGraph in the workspace database and
replaces it wholesale on every update. InMemoryGraphStore keeps the same
interface over a per-file dict and is used when graph persistence is
disabled; callers see the same interface with weaker durability.

Edges may point at node ids that have not been observed yet (unresolved
``name:`` targets, modules not yet indexed). When a file is deleted, edges
from other files pointing at its nodes are pruned unless another file still
owns a node with the same id.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Literal

from sqlalchemy import delete, func, or_
from sqlmodel import Session, col, select

from codeindex.index._internal.indexing.symbols import FileGraph, name_id
from codeindex.index.models import GraphEdge, GraphNode, GraphOccurrence, OccurrenceRole

if TYPE_CHECKING:
    from codeindex.index._internal.db.storage import WorkspaceStore

Direction = Literal["in", "out", "both"]

_NAME_PREFIX = "name:"


@dataclass(frozen=True, slots=True)
class GraphStats:
    node_count: int
    edge_count: int


@dataclass
class StoredFileGraph:
    """Graph rows currently attributed to one file."""

    uri: str
    nodes: list[GraphNode] = field(default_factory=list)
    edges: list[GraphEdge] = field(default_factory=list)
    occurrences: list[GraphOccurrence] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.nodes or self.edges or self.occurrences)


def _rows(graph: FileGraph) -> tuple[list[GraphNode], list[GraphEdge], list[GraphOccurrence]]:
    nodes = [
        GraphNode(
            id=n.id,
            uri=graph.uri,
            path=graph.path,
            kind=n.kind,
            name=n.name,
            container_name=n.container_name,
            start_line=n.start_line,
            start_col=n.start_col,
            end_line=n.end_line,
            end_col=n.end_col,
        )
        for n in graph.nodes
    ]
    edges = [
        GraphEdge(uri=graph.uri, from_id=e.from_id, to_id=e.to_id, kind=e.kind.value)
        for e in graph.edges
    ]
    occurrences = [
        GraphOccurrence(
            uri=graph.uri,
            symbol_id=o.symbol_id,
            role=o.role.value,
            name=o.name,
            start_line=o.start_line,
            start_col=o.start_col,
            end_line=o.end_line,
            end_col=o.end_col,
        )
        for o in [*graph.definitions, *graph.references]
    ]
    return nodes, edges, occurrences


def _first_node(s: Session, node_id: str) -> GraphNode | None:
    stmt = select(GraphNode).where(GraphNode.id == node_id).order_by(col(GraphNode.uri))
    return s.exec(stmt).first()


def _reference_targets(symbol_id: str, node: GraphNode | None) -> set[str]:
    targets = {symbol_id}
    if node is not None:
        targets.add(name_id(node.name))
    return targets


class GraphStore:
    """SQL-backed graph. Writes join the caller's per-file transaction when one is given."""

    persistent = True

    def __init__(self, store: WorkspaceStore) -> None:
        self._store = store

    def update_from_file(self, graph: FileGraph, *, session: Session | None = None) -> None:
        """Replace everything previously attributed to ``graph.uri``."""
        if session is not None:
            self._replace(session, graph)
            return
        with self._store.transaction() as s:
            self._replace(s, graph)

    def _replace(self, s: Session, graph: FileGraph) -> None:
        uri = graph.uri
        s.execute(delete(GraphEdge).where(col(GraphEdge.uri) == uri))
        s.execute(delete(GraphOccurrence).where(col(GraphOccurrence.uri) == uri))
        s.execute(delete(GraphNode).where(col(GraphNode.uri) == uri))
        nodes, edges, occurrences = _rows(graph)
        for node in nodes:
            s.merge(node)
        s.add_all(edges)
        s.add_all(occurrences)

    def get_node(self, node_id: str) -> GraphNode | None:
        with self._store.db.session() as s:
            return _first_node(s, node_id)

    def get_definitions(self, symbol: str) -> list[GraphNode]:
        """Definition nodes for a node id, a ``name:`` target, or a bare name."""
        name = symbol[len(_NAME_PREFIX) :] if symbol.startswith(_NAME_PREFIX) else symbol
        with self._store.db.session() as s:
            node = _first_node(s, symbol)
            if node is not None:
                return [node]
            stmt = (
                select(GraphNode)
                .where(GraphNode.name == name, GraphNode.kind != "module")
                .order_by(col(GraphNode.id))
            )
            return list(s.exec(stmt).all())

    def get_references(self, symbol_id: str) -> list[GraphOccurrence]:
        with self._store.db.session() as s:
            targets = _reference_targets(symbol_id, _first_node(s, symbol_id))
            stmt = (
                select(GraphOccurrence)
                .where(
                    GraphOccurrence.role == OccurrenceRole.REFERENCE.value,
                    col(GraphOccurrence.symbol_id).in_(targets),
                )
                .order_by(col(GraphOccurrence.uri), col(GraphOccurrence.start_line))
            )
            return list(s.exec(stmt).all())

    def get_neighbors(
        self, node_id: str, direction: Direction = "both", kinds: Iterable[str] | None = None
    ) -> list[GraphEdge]:
        with self._store.db.session() as s:
            if direction == "out":
                cond = col(GraphEdge.from_id) == node_id
            elif direction == "in":
                cond = col(GraphEdge.to_id) == node_id
            else:
                cond = or_(col(GraphEdge.from_id) == node_id, col(GraphEdge.to_id) == node_id)
            stmt = select(GraphEdge).where(cond)
            if kinds is not None:
                stmt = stmt.where(col(GraphEdge.kind).in_(list(kinds)))
            return list(s.exec(stmt.order_by(col(GraphEdge.id))).all())

    def get_file_graph(self, uri: str) -> StoredFileGraph:
        with self._store.db.session() as s:
            return StoredFileGraph(
                uri=uri,
                nodes=list(s.exec(select(GraphNode).where(GraphNode.uri == uri)).all()),
                edges=list(s.exec(select(GraphEdge).where(GraphEdge.uri == uri)).all()),
                occurrences=list(
                    s.exec(select(GraphOccurrence).where(GraphOccurrence.uri == uri)).all()
                ),
            )

    def find_symbols(self, names: Iterable[str], limit: int = 50) -> list[GraphNode]:
        """Definition nodes whose name matches any of ``names`` (case-insensitive)."""
        wanted = sorted({n.lower() for n in names if n})
        if not wanted:
            return []
        with self._store.db.session() as s:
            stmt = (
                select(GraphNode)
                .where(func.lower(GraphNode.name).in_(wanted), GraphNode.kind != "module")
                .order_by(col(GraphNode.id))
                .limit(limit)
            )
            return list(s.exec(stmt).all())

    def nodes_in_range(self, path: str, start_line: int, end_line: int) -> list[GraphNode]:
        """Definitions declared in ``path`` whose range overlaps the line range."""
        with self._store.db.session() as s:
            stmt = (
                select(GraphNode)
                .where(
                    GraphNode.path == path,
                    GraphNode.kind != "module",
                    GraphNode.start_line <= end_line,
                    GraphNode.end_line >= start_line,
                )
                .order_by(col(GraphNode.start_line))
            )
            return list(s.exec(stmt).all())

    def delete_file(self, uri: str) -> None:
        self._store.delete_graph_for_uri(uri, prune_incoming=True)

    def get_stats(self) -> GraphStats:
        with self._store.db.session() as s:
            nodes = s.exec(select(func.count()).select_from(GraphNode)).one()
            edges = s.exec(select(func.count()).select_from(GraphEdge)).one()
        return GraphStats(node_count=int(nodes), edge_count=int(edges))

    def clear(self) -> None:
        with self._store.transaction() as s:
            s.execute(delete(GraphEdge))
            s.execute(delete(GraphOccurrence))
            s.execute(delete(GraphNode))


class InMemoryGraphStore:
    """Per-file in-memory graph with the GraphStore interface. Nothing survives a restart."""

    persistent = False

    def __init__(self) -> None:
        self._files: dict[str, StoredFileGraph] = {}

    def update_from_file(self, graph: FileGraph, *, session: Session | None = None) -> None:
        nodes, edges, occurrences = _rows(graph)
        self._files[graph.uri] = StoredFileGraph(
            uri=graph.uri, nodes=nodes, edges=edges, occurrences=occurrences
        )

    def _nodes(self) -> Iterable[GraphNode]:
        for stored in self._files.values():
            yield from stored.nodes

    def _edges(self) -> Iterable[GraphEdge]:
        for stored in self._files.values():
            yield from stored.edges

    def get_node(self, node_id: str) -> GraphNode | None:
        return next((n for n in self._nodes() if n.id == node_id), None)

    def get_definitions(self, symbol: str) -> list[GraphNode]:
        node = self.get_node(symbol)
        if node is not None:
            return [node]
        name = symbol[len(_NAME_PREFIX) :] if symbol.startswith(_NAME_PREFIX) else symbol
        return sorted(
            (n for n in self._nodes() if n.name == name and n.kind != "module"),
            key=lambda n: n.id,
        )

    def get_references(self, symbol_id: str) -> list[GraphOccurrence]:
        targets = _reference_targets(symbol_id, self.get_node(symbol_id))
        found = [
            o
            for stored in self._files.values()
            for o in stored.occurrences
            if o.role == OccurrenceRole.REFERENCE.value and o.symbol_id in targets
        ]
        return sorted(found, key=lambda o: (o.uri, o.start_line))

    def get_neighbors(
        self, node_id: str, direction: Direction = "both", kinds: Iterable[str] | None = None
    ) -> list[GraphEdge]:
        allowed = set(kinds) if kinds is not None else None
        result = []
        for edge in self._edges():
            if allowed is not None and edge.kind not in allowed:
                continue
            outgoing = edge.from_id == node_id and direction in ("out", "both")
            incoming = edge.to_id == node_id and direction in ("in", "both")
            if outgoing or incoming:
                result.append(edge)
        return result

    def get_file_graph(self, uri: str) -> StoredFileGraph:
        return self._files.get(uri) or StoredFileGraph(uri=uri)

    def find_symbols(self, names: Iterable[str], limit: int = 50) -> list[GraphNode]:
        wanted = {n.lower() for n in names if n}
        matches = sorted(
            (n for n in self._nodes() if n.kind != "module" and n.name.lower() in wanted),
            key=lambda n: n.id,
        )
        return matches[:limit]

    def nodes_in_range(self, path: str, start_line: int, end_line: int) -> list[GraphNode]:
        return sorted(
            (
                n
                for n in self._nodes()
                if n.path == path
                and n.kind != "module"
                and n.start_line <= end_line
                and n.end_line >= start_line
            ),
            key=lambda n: n.start_line,
        )

    def delete_file(self, uri: str) -> None:
        removed = self._files.pop(uri, None)
        if removed is None:
            return
        gone = {n.id for n in removed.nodes} - {n.id for n in self._nodes()}
        for stored in self._files.values():
            stored.edges = [e for e in stored.edges if e.to_id not in gone]

    def get_stats(self) -> GraphStats:
        return GraphStats(
            node_count=sum(len(f.nodes) for f in self._files.values()),
            edge_count=sum(len(f.edges) for f in self._files.values()),
        )

    def clear(self) -> None:
        self._files.clear()
