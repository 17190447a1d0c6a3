"""Tests for graph storage. Every case runs against the SQL and in-memory stores."""

from __future__ import annotations

import pytest

from codeindex.index._internal.db import WorkspaceStore
from codeindex.index._internal.indexing.graph import GraphStore, InMemoryGraphStore
from codeindex.index._internal.indexing.symbols import SymbolExtractor

AnyGraph = GraphStore | InMemoryGraphStore

UTIL = """def helper(x):
    return x * 2


def unused():
    pass
"""

APP = """import util


def main():
    return helper(3)
"""


@pytest.fixture(params=["sql", "memory"])
def graph(request: pytest.FixtureRequest, store: WorkspaceStore) -> AnyGraph:
    if request.param == "sql":
        return GraphStore(store)
    return InMemoryGraphStore()


@pytest.fixture
def populated(graph: AnyGraph) -> AnyGraph:
    extractor = SymbolExtractor()
    graph.update_from_file(extractor.extract("util.py", "file:///w/util.py", UTIL, "python"))
    graph.update_from_file(extractor.extract("app.py", "file:///w/app.py", APP, "python"))
    return graph


class TestGraphQueries:
    def test_get_definitions_by_bare_name_and_name_target(self, populated: AnyGraph) -> None:
        # When
        by_name = populated.get_definitions("helper")
        by_target = populated.get_definitions("name:helper")

        # Then
        assert [n.id for n in by_name] == ["util.py::helper"]
        assert [n.id for n in by_target] == ["util.py::helper"]

    def test_get_definitions_by_node_id(self, populated: AnyGraph) -> None:
        nodes = populated.get_definitions("module:util")

        assert [n.kind for n in nodes] == ["module"]

    def test_get_references_includes_unresolved_name_sites(self, populated: AnyGraph) -> None:
        # When
        refs = populated.get_references("util.py::helper")

        # Then
        assert [(r.uri, r.start_line) for r in refs] == [("file:///w/app.py", 5)]

    def test_get_neighbors_by_direction_and_kind(self, populated: AnyGraph) -> None:
        # When
        incoming = populated.get_neighbors("module:util", "in")
        outgoing = populated.get_neighbors("module:util", "out", kinds=["contains"])

        # Then
        assert {(e.from_id, e.kind) for e in incoming} == {("module:app", "imports")}
        assert {e.to_id for e in outgoing} == {"util.py::helper", "util.py::unused"}

    def test_find_symbols_is_case_insensitive(self, populated: AnyGraph) -> None:
        nodes = populated.find_symbols(["HELPER", "Main", ""])

        assert [n.id for n in nodes] == ["app.py::main", "util.py::helper"]

    def test_nodes_in_range_overlaps_line_window(self, populated: AnyGraph) -> None:
        assert [n.name for n in populated.nodes_in_range("util.py", 2, 5)] == ["helper", "unused"]
        assert [n.name for n in populated.nodes_in_range("util.py", 3, 4)] == []

    def test_get_file_graph_lists_rows_owned_by_file(self, populated: AnyGraph) -> None:
        stored = populated.get_file_graph("file:///w/util.py")

        assert {n.id for n in stored.nodes} == {
            "module:util",
            "util.py::helper",
            "util.py::unused",
        }
        assert populated.get_file_graph("file:///w/missing.py").is_empty


class TestGraphUpdates:
    def test_update_replaces_previous_contribution(self, populated: AnyGraph) -> None:
        # Given
        before = populated.get_stats()

        # When
        populated.update_from_file(
            SymbolExtractor().extract("util.py", "file:///w/util.py", "def helper(x):\n    return x\n", "python")
        )

        # Then
        after = populated.get_stats()
        assert after.node_count == before.node_count - 1
        assert populated.get_definitions("unused") == []

    def test_delete_file_prunes_incoming_edges(self, populated: AnyGraph) -> None:
        # When
        populated.delete_file("file:///w/util.py")

        # Then
        assert populated.get_node("util.py::helper") is None
        assert populated.get_neighbors("module:util", "in") == []
        assert populated.get_node("app.py::main") is not None
        assert populated.get_references("name:helper")

    def test_given_data_file_sharing_stem_when_deleted_then_module_and_imports_survive(
        self, populated: AnyGraph
    ) -> None:
        # Given
        extractor = SymbolExtractor()
        populated.update_from_file(
            extractor.extract("util.yaml", "file:///w/util.yaml", "key: value\n", "yaml")
        )

        # When
        populated.delete_file("file:///w/util.yaml")

        # Then
        module = populated.get_node("module:util")
        assert module is not None
        assert module.uri == "file:///w/util.py"
        assert {e.from_id for e in populated.get_neighbors("module:util", "in")} == {"module:app"}

    def test_given_two_importable_files_sharing_stem_when_one_deleted_then_edges_kept(
        self, populated: AnyGraph
    ) -> None:
        # Given
        extractor = SymbolExtractor()
        populated.update_from_file(
            extractor.extract(
                "util.js", "file:///w/util.js", "function helper() {}\n", "javascript"
            )
        )

        # When
        populated.delete_file("file:///w/util.js")

        # Then
        assert populated.get_node("module:util") is not None
        assert populated.get_node("module:util").uri == "file:///w/util.py"
        assert populated.get_neighbors("module:util", "in", kinds=["imports"])

    def test_clear_empties_graph(self, populated: AnyGraph) -> None:
        populated.clear()

        stats = populated.get_stats()
        assert (stats.node_count, stats.edge_count) == (0, 0)


def test_persistent_flag() -> None:
    assert InMemoryGraphStore.persistent is False
    assert GraphStore.persistent is True


def test_delete_for_uri_removes_graph_rows(store: WorkspaceStore) -> None:
    # Given
    graph = GraphStore(store)
    graph.update_from_file(
        SymbolExtractor().extract("util.py", "file:///w/util.py", UTIL, "python")
    )

    # When
    store.delete_for_uri("file:///w/util.py")

    # Then
    assert graph.get_file_graph("file:///w/util.py").is_empty
    assert graph.get_stats().node_count == 0
