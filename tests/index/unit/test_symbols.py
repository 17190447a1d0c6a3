"""Tests for tree-sitter symbol extraction."""

from __future__ import annotations

import pytest

from codeindex.index._internal.indexing.symbols import (
    FileGraph,
    SymbolExtractor,
    module_node_id,
    resolve_js_module,
    resolve_python_module,
)
from codeindex.index.models import EdgeKind

PY_SOURCE = '''import os.path
from .util import helper as h


class Greeter:
    def greet(self, name):
        return helper(name)


def main():
    Greeter().greet("x")
'''

TS_SOURCE = """import { a } from './lib/a';

export class Service {
  run(): number {
    return compute(1);
  }
}

export const helper = () => compute(2);
"""


@pytest.fixture(scope="module")
def extractor() -> SymbolExtractor:
    return SymbolExtractor()


def _edges(graph: FileGraph, kind: EdgeKind) -> set[tuple[str, str]]:
    return {(e.from_id, e.to_id) for e in graph.edges if e.kind == kind}


class TestPythonExtraction:
    def test_definitions_are_qualified_by_container(self, extractor: SymbolExtractor) -> None:
        # When
        graph = extractor.extract("pkg/app.py", "file:///w/pkg/app.py", PY_SOURCE, "python")

        # Then
        kinds = {n.id: n.kind for n in graph.nodes}
        assert kinds == {
            "module:pkg/app": "module",
            "pkg/app.py::Greeter": "class",
            "pkg/app.py::Greeter.greet": "method",
            "pkg/app.py::main": "function",
        }
        greet = next(n for n in graph.nodes if n.name == "greet")
        assert greet.container_name == "Greeter"
        assert (greet.start_line, greet.end_line) == (6, 7)

    def test_contains_edges_follow_nesting(self, extractor: SymbolExtractor) -> None:
        graph = extractor.extract("pkg/app.py", "file:///w/pkg/app.py", PY_SOURCE, "python")

        assert _edges(graph, EdgeKind.CONTAINS) == {
            ("module:pkg/app", "pkg/app.py::Greeter"),
            ("pkg/app.py::Greeter", "pkg/app.py::Greeter.greet"),
            ("module:pkg/app", "pkg/app.py::main"),
        }

    def test_imports_resolve_to_module_ids(self, extractor: SymbolExtractor) -> None:
        graph = extractor.extract("pkg/app.py", "file:///w/pkg/app.py", PY_SOURCE, "python")

        assert _edges(graph, EdgeKind.IMPORTS) == {
            ("module:pkg/app", "module:os/path"),
            ("module:pkg/app", "module:pkg/util"),
        }
        assert ("module:pkg/app", "name:helper") in _edges(graph, EdgeKind.REFERENCES)

    def test_calls_attributed_to_enclosing_definition(self, extractor: SymbolExtractor) -> None:
        graph = extractor.extract("pkg/app.py", "file:///w/pkg/app.py", PY_SOURCE, "python")

        calls = _edges(graph, EdgeKind.CALLS)
        assert ("pkg/app.py::Greeter.greet", "name:helper") in calls
        assert ("pkg/app.py::main", "name:Greeter") in calls
        assert ("pkg/app.py::main", "name:greet") in calls
        assert {r.name for r in graph.references} >= {"helper", "Greeter", "greet"}


class TestTypeScriptExtraction:
    def test_classes_methods_and_arrow_functions(self, extractor: SymbolExtractor) -> None:
        # When
        graph = extractor.extract("src/b.ts", "file:///w/src/b.ts", TS_SOURCE, "typescript")

        # Then
        kinds = {n.id: n.kind for n in graph.nodes}
        assert kinds == {
            "module:src/b": "module",
            "src/b.ts::Service": "class",
            "src/b.ts::Service.run": "method",
            "src/b.ts::helper": "function",
        }

    def test_relative_import_resolved_against_file_directory(
        self, extractor: SymbolExtractor
    ) -> None:
        graph = extractor.extract("src/b.ts", "file:///w/src/b.ts", TS_SOURCE, "typescript")

        assert _edges(graph, EdgeKind.IMPORTS) == {("module:src/b", "module:src/lib/a")}

    def test_calls_inside_method(self, extractor: SymbolExtractor) -> None:
        graph = extractor.extract("src/b.ts", "file:///w/src/b.ts", TS_SOURCE, "typescript")

        calls = _edges(graph, EdgeKind.CALLS)
        assert ("src/b.ts::Service.run", "name:compute") in calls
        assert ("src/b.ts::helper", "name:compute") in calls


class TestUnsupportedInput:
    @pytest.mark.parametrize(
        ("content", "language_id", "module_id"),
        [
            ("", "python", "module:m"),
            ("fn main() {}", "rust", "module:m.rs"),
            ("x = 1", None, "module:m.rs"),
        ],
    )
    def test_only_module_node(
        self,
        extractor: SymbolExtractor,
        content: str,
        language_id: str | None,
        module_id: str,
    ) -> None:
        graph = extractor.extract("m.rs", "file:///w/m.rs", content, language_id)

        assert [n.id for n in graph.nodes] == [module_id]
        assert graph.edges == []


class TestResolvers:
    @pytest.mark.parametrize(
        ("path", "module", "expected"),
        [
            ("pkg/app.py", "os.path", "os/path"),
            ("pkg/app.py", ".util", "pkg/util"),
            ("pkg/sub/app.py", "..core.x", "pkg/core/x"),
            ("pkg/app.py", ".", "pkg"),
        ],
    )
    def test_resolve_python_module(self, path: str, module: str, expected: str) -> None:
        assert resolve_python_module(path, module) == expected

    @pytest.mark.parametrize(
        ("path", "source", "expected"),
        [
            ("src/b.ts", "./a", "src/a"),
            ("src/b.ts", "../lib/c.js", "lib/c"),
            ("src/b.ts", "react", "react"),
        ],
    )
    def test_resolve_js_module(self, path: str, source: str, expected: str) -> None:
        assert resolve_js_module(path, source) == expected

    def test_module_node_id_strips_suffix(self) -> None:
        assert module_node_id("a/b/c.tsx") == "module:a/b/c"

    def test_module_node_id_keeps_suffix_for_non_importable_files(self) -> None:
        assert module_node_id("conf/config.yaml", importable=False) == "module:conf/config.yaml"
