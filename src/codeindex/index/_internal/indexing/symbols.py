"""Tree-sitter symbol extraction into per-file graph contributions.

Node ids:
- ``module:<path without suffix>``: one per file of an importable language
  (Python, JavaScript, TypeScript); other files keep their suffix
  (``module:config.yaml``) so they never share an id with an import target
- ``<path>::<qualified name>``: definitions (functions, classes, methods,
  interfaces, type aliases, enums)
- ``name:<identifier>``: unresolved call/reference targets

Imports resolve to module ids (``import a.b`` -> ``module:a/b``, relative JS
imports are resolved against the importing file's directory) so an edge may
point at a module that has not been indexed yet.

Languages without an installed grammar produce only the module node.
Importable files sharing a stem share a module id; every file owns its own
row for it.
"""

from __future__ import annotations

import importlib
import posixpath
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import structlog
import tree_sitter

from codeindex.index.models import EdgeKind, OccurrenceRole

log = structlog.get_logger()

# language id -> (grammar module, language function)
_GRAMMARS: dict[str, tuple[str, str]] = {
    "python": ("tree_sitter_python", "language"),
    "javascript": ("tree_sitter_javascript", "language"),
    "javascriptreact": ("tree_sitter_javascript", "language"),
    "typescript": ("tree_sitter_typescript", "language_typescript"),
    "typescriptreact": ("tree_sitter_typescript", "language_tsx"),
}

_JS_EXTENSIONS = (".ts", ".tsx", ".mts", ".cts", ".js", ".jsx", ".mjs", ".cjs")

_PY_DEFINITIONS = {"function_definition": "function", "class_definition": "class"}
_JS_DEFINITIONS = {
    "function_declaration": "function",
    "generator_function_declaration": "function",
    "class_declaration": "class",
    "abstract_class_declaration": "class",
    "method_definition": "method",
    "interface_declaration": "interface",
    "type_alias_declaration": "type",
    "enum_declaration": "enum",
}
_CLASS_KINDS = {"class", "interface"}


@dataclass(frozen=True, slots=True)
class SymbolNode:
    id: str
    kind: str
    name: str
    container_name: str | None = None
    start_line: int = 0
    start_col: int = 0
    end_line: int = 0
    end_col: int = 0


@dataclass(frozen=True, slots=True)
class SymbolOccurrence:
    symbol_id: str
    role: OccurrenceRole
    name: str
    start_line: int
    start_col: int
    end_line: int
    end_col: int


@dataclass(frozen=True, slots=True)
class SymbolEdge:
    from_id: str
    to_id: str
    kind: EdgeKind


@dataclass
class FileGraph:
    """Everything one file contributes to the graph."""

    path: str
    uri: str
    nodes: list[SymbolNode] = field(default_factory=list)
    definitions: list[SymbolOccurrence] = field(default_factory=list)
    references: list[SymbolOccurrence] = field(default_factory=list)
    edges: list[SymbolEdge] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.nodes or self.definitions or self.references or self.edges)


def module_node_id(path: str, importable: bool = True) -> str:
    if not importable:
        return f"module:{path}"
    stem, _ = posixpath.splitext(path)
    return f"module:{stem}"


def definition_id(path: str, qualified_name: str) -> str:
    return f"{path}::{qualified_name}"


def name_id(identifier: str) -> str:
    return f"name:{identifier}"


def _text(node: Any) -> str:
    return node.text.decode("utf-8", errors="replace") if node is not None and node.text else ""


def _import_target(node: Any) -> Any:
    return node.child_by_field_name("name") if node.type == "aliased_import" else node


def resolve_python_module(path: str, module: str) -> str:
    """``a.b`` -> ``a/b``; leading dots resolve against the importing file's package."""
    if not module.startswith("."):
        return module.replace(".", "/")
    dots = len(module) - len(module.lstrip("."))
    base = posixpath.dirname(path)
    for _ in range(dots - 1):
        base = posixpath.dirname(base)
    rest = module[dots:].replace(".", "/")
    return posixpath.normpath(posixpath.join(base, rest)) if rest else base or "."


def resolve_js_module(path: str, source: str) -> str:
    if not source.startswith("."):
        return source
    resolved = posixpath.normpath(posixpath.join(posixpath.dirname(path), source))
    for ext in _JS_EXTENSIONS:
        if resolved.endswith(ext):
            return resolved[: -len(ext)]
    return resolved


class _Builder:
    """Accumulates one file's graph while walking its syntax tree."""

    def __init__(self, path: str, uri: str, importable: bool = True) -> None:
        self.graph = FileGraph(path=path, uri=uri)
        self.module_id = module_node_id(path, importable)
        self._seen_edges: set[tuple[str, str, EdgeKind]] = set()
        self.class_ids: set[str] = set()
        self.graph.nodes.append(
            SymbolNode(id=self.module_id, kind="module", name=posixpath.basename(path))
        )

    def define(self, node: Any, name: str, kind: str, scope: list[tuple[str, str]]) -> str:
        qualified = ".".join([n for _, n in scope] + [name])
        node_id = definition_id(self.graph.path, qualified)
        container_id, container_name = (scope[-1] if scope else (self.module_id, None))
        start_line, start_col = node.start_point[0] + 1, node.start_point[1]
        end_line, end_col = node.end_point[0] + 1, node.end_point[1]
        self.graph.nodes.append(
            SymbolNode(
                id=node_id,
                kind=kind,
                name=name,
                container_name=container_name,
                start_line=start_line,
                start_col=start_col,
                end_line=end_line,
                end_col=end_col,
            )
        )
        self.graph.definitions.append(
            SymbolOccurrence(
                symbol_id=node_id,
                role=OccurrenceRole.DEFINITION,
                name=name,
                start_line=start_line,
                start_col=start_col,
                end_line=end_line,
                end_col=end_col,
            )
        )
        self.edge(container_id, node_id, EdgeKind.CONTAINS)
        return node_id

    def reference(self, node: Any, name: str, from_id: str, kind: EdgeKind) -> None:
        target = name_id(name)
        self.graph.references.append(
            SymbolOccurrence(
                symbol_id=target,
                role=OccurrenceRole.REFERENCE,
                name=name,
                start_line=node.start_point[0] + 1,
                start_col=node.start_point[1],
                end_line=node.end_point[0] + 1,
                end_col=node.end_point[1],
            )
        )
        self.edge(from_id, target, kind)

    def edge(self, from_id: str, to_id: str, kind: EdgeKind) -> None:
        key = (from_id, to_id, kind)
        if key in self._seen_edges or from_id == to_id:
            return
        self._seen_edges.add(key)
        self.graph.edges.append(SymbolEdge(from_id=from_id, to_id=to_id, kind=kind))


class SymbolExtractor:
    """Parses files with tree-sitter and builds FileGraph contributions.

    Thread-safe: parsing is serialized on one parser instance.
    """

    def __init__(self) -> None:
        self._parser = tree_sitter.Parser()
        self._languages: dict[str, tree_sitter.Language | None] = {}
        self._lock = threading.Lock()

    def _get_language(self, language_id: str) -> tree_sitter.Language | None:
        if language_id in self._languages:
            return self._languages[language_id]
        spec = _GRAMMARS.get(language_id)
        lang: tree_sitter.Language | None = None
        if spec is not None:
            module_name, func_name = spec
            try:
                mod = importlib.import_module(module_name)
                lang = tree_sitter.Language(getattr(mod, func_name)())
            except (ImportError, AttributeError):
                log.warning("symbols.grammar_unavailable", language=language_id, module=module_name)
        self._languages[language_id] = lang
        return lang

    def supports(self, language_id: str | None) -> bool:
        return language_id is not None and self._get_language(language_id) is not None

    def extract(self, path: str, uri: str, content: str, language_id: str | None) -> FileGraph:
        builder = _Builder(path, uri, importable=language_id in _GRAMMARS)
        if not content or language_id is None:
            return builder.graph
        with self._lock:
            lang = self._get_language(language_id)
            if lang is None:
                return builder.graph
            self._parser.language = lang
            tree = self._parser.parse(content.encode("utf-8"))

        if language_id == "python":
            walker: Callable[[Any, _Builder, list[tuple[str, str]]], None] = self._walk_python
        else:
            walker = self._walk_js
        walker(tree.root_node, builder, [])
        return builder.graph

    # ------------------------------------------------------------------
    # Python
    # ------------------------------------------------------------------

    def _walk_python(self, node: Any, b: _Builder, scope: list[tuple[str, str]]) -> None:
        stack: list[tuple[Any, list[tuple[str, str]]]] = [(node, scope)]
        while stack:
            current, current_scope = stack.pop()
            child_scope = current_scope
            kind = _PY_DEFINITIONS.get(current.type)
            if kind is not None:
                name = _text(current.child_by_field_name("name"))
                if name:
                    in_class = bool(current_scope) and current_scope[-1][0] in b.class_ids
                    if kind == "function" and in_class:
                        kind = "method"
                    node_id = b.define(current, name, kind, current_scope)
                    if kind == "class":
                        b.class_ids.add(node_id)
                    child_scope = [*current_scope, (node_id, name)]
            elif current.type == "import_statement":
                for child in current.named_children:
                    target = _import_target(child)
                    if target is not None and target.type == "dotted_name":
                        module = resolve_python_module(b.graph.path, _text(target))
                        b.edge(b.module_id, f"module:{module}", EdgeKind.IMPORTS)
            elif current.type == "import_from_statement":
                module_node = current.child_by_field_name("module_name")
                source = _text(module_node)
                if source:
                    module = resolve_python_module(b.graph.path, source)
                    b.edge(b.module_id, f"module:{module}", EdgeKind.IMPORTS)
                for child in current.named_children:
                    if child == module_node:
                        continue
                    target = _import_target(child)
                    if target is not None and target.type == "dotted_name":
                        imported = _text(target).rsplit(".", 1)[-1]
                        b.reference(target, imported, b.module_id, EdgeKind.REFERENCES)
            elif current.type == "call":
                func = current.child_by_field_name("function")
                if func is not None and func.type == "attribute":
                    func = func.child_by_field_name("attribute")
                if func is not None and func.type == "identifier":
                    caller = current_scope[-1][0] if current_scope else b.module_id
                    b.reference(func, _text(func), caller, EdgeKind.CALLS)
            # Reverse so siblings are visited in source order
            stack.extend((child, child_scope) for child in reversed(current.named_children))

    # ------------------------------------------------------------------
    # JavaScript / TypeScript
    # ------------------------------------------------------------------

    def _walk_js(self, node: Any, b: _Builder, scope: list[tuple[str, str]]) -> None:
        stack: list[tuple[Any, list[tuple[str, str]]]] = [(node, scope)]
        while stack:
            current, current_scope = stack.pop()
            child_scope = current_scope
            kind = _JS_DEFINITIONS.get(current.type)
            name = ""
            if kind is not None:
                name = _text(current.child_by_field_name("name"))
            elif current.type == "variable_declarator":
                value = current.child_by_field_name("value")
                name_node = current.child_by_field_name("name")
                if (
                    value is not None
                    and value.type in ("arrow_function", "function_expression", "function")
                    and name_node is not None
                    and name_node.type == "identifier"
                ):
                    kind, name = "function", _text(name_node)

            if kind is not None and name:
                node_id = b.define(current, name, kind, current_scope)
                if kind in _CLASS_KINDS:
                    b.class_ids.add(node_id)
                child_scope = [*current_scope, (node_id, name)]
            elif current.type == "import_statement":
                source = current.child_by_field_name("source")
                literal = _text(source).strip("'\"`")
                if literal:
                    module = resolve_js_module(b.graph.path, literal)
                    b.edge(b.module_id, f"module:{module}", EdgeKind.IMPORTS)
            elif current.type == "call_expression":
                func = current.child_by_field_name("function")
                if func is not None and func.type == "member_expression":
                    func = func.child_by_field_name("property")
                if func is not None and func.type in ("identifier", "property_identifier"):
                    caller = current_scope[-1][0] if current_scope else b.module_id
                    b.reference(func, _text(func), caller, EdgeKind.CALLS)
            stack.extend((child, child_scope) for child in reversed(current.named_children))
