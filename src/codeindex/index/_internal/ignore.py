"""Workspace file enumeration with directory pruning and ignore patterns.

Tiered exclusion:
- HARDCODED_DIRS: always pruned (VCS internals, our own data directory)
- DEFAULT_PRUNABLE_DIRS: dependency, cache and build output directories,
  pruned unless negated in the ignore file (``!vendor/``)
- ``.codeindex/ignore``: optional user glob patterns with ``!`` negation
"""

from __future__ import annotations

import fnmatch
import os
from pathlib import Path

import structlog

log = structlog.get_logger()

__all__ = [
    "HARDCODED_DIRS",
    "DEFAULT_PRUNABLE_DIRS",
    "PRUNABLE_DIRS",
    "IgnoreChecker",
    "matches_glob",
    "walk_workspace",
]

HARDCODED_DIRS: frozenset[str] = frozenset((".git", ".svn", ".hg", ".bzr", ".codeindex"))

DEFAULT_PRUNABLE_DIRS: frozenset[str] = frozenset(
    (
        # JavaScript/Node.js
        "node_modules",
        ".npm",
        ".yarn",
        ".pnpm-store",
        "bower_components",
        ".next",
        ".nuxt",
        ".turbo",
        # Python
        "venv",
        ".venv",
        "virtualenv",
        "__pycache__",
        ".pytest_cache",
        ".mypy_cache",
        ".ruff_cache",
        ".tox",
        ".nox",
        ".eggs",
        "site-packages",
        ".ipynb_checkpoints",
        # JVM / .NET / native
        ".gradle",
        ".idea",
        "bin",
        "obj",
        "target",
        # Build outputs
        "dist",
        "build",
        "out",
        "coverage",
        ".cache",
        ".vscode-test",
    )
)

PRUNABLE_DIRS: frozenset[str] = HARDCODED_DIRS | DEFAULT_PRUNABLE_DIRS

IGNORE_FILE = Path(".codeindex") / "ignore"


def matches_glob(rel_path: str, pattern: str) -> bool:
    """Check if a path matches a glob pattern, with ** support."""
    if fnmatch.fnmatch(rel_path, pattern):
        return True
    if pattern.startswith("**/"):
        return fnmatch.fnmatch(rel_path, pattern[3:])
    return False


class IgnoreChecker:
    """Decides which workspace-relative paths are excluded from indexing.

    Pattern syntax:
    - Standard glob patterns (fnmatch)
    - Directory patterns ending in / match contents
    - Negation with ! prefix; a root-level ``!dirname`` also stops the default
      pruning of that directory
    """

    def __init__(
        self,
        root: Path,
        extra_patterns: list[str] | None = None,
        excluded_extensions: list[str] | None = None,
    ) -> None:
        self._root = root
        self._patterns: list[str] = []
        self._negated_dirs: set[str] = set()
        self._excluded_extensions = tuple(e.lower() for e in (excluded_extensions or []))
        self._load_ignore_file(root / IGNORE_FILE)
        if extra_patterns:
            self._patterns.extend(extra_patterns)

    def should_prune_dir(self, dirname: str) -> bool:
        if dirname in HARDCODED_DIRS:
            return True
        if dirname in DEFAULT_PRUNABLE_DIRS:
            return dirname not in self._negated_dirs
        return False

    def _load_ignore_file(self, path: Path) -> None:
        try:
            content = path.read_text(encoding="utf-8")
        except OSError:
            return
        for line in content.splitlines():
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            is_negation = line.startswith("!")
            if is_negation:
                line = line[1:]
                dir_name = line.rstrip("/")
                if dir_name and "/" not in dir_name and "*" not in dir_name:
                    self._negated_dirs.add(dir_name)
            pattern = f"{line}**" if line.endswith("/") else line
            self._patterns.append(f"!{pattern}" if is_negation else pattern)

    def is_excluded_rel(self, rel_path: str) -> bool:
        rel_posix = rel_path.replace("\\", "/")
        if self._excluded_extensions and rel_posix.lower().endswith(self._excluded_extensions):
            return True
        parts = rel_posix.split("/")
        if any(self.should_prune_dir(part) for part in parts[:-1]):
            return True

        excluded = False
        for pattern in self._patterns:
            if pattern.startswith("!"):
                if matches_glob(rel_posix, pattern[1:]):
                    excluded = False
                continue
            if matches_glob(rel_posix, pattern):
                excluded = True
        return excluded


def walk_workspace(
    root: Path,
    *,
    max_files: int,
    excluded_extensions: list[str] | None = None,
) -> list[str]:
    """Walk the filesystem once and return indexable workspace-relative POSIX paths.

    Output is sorted and capped at ``max_files``.
    """
    checker = IgnoreChecker(root, excluded_extensions=excluded_extensions)
    found: list[str] = []
    for dirpath, dirnames, filenames in os.walk(root):
        # Prune dirs in-place to skip expensive subtrees
        dirnames[:] = sorted(d for d in dirnames if not checker.should_prune_dir(d))
        for filename in sorted(filenames):
            full_path = Path(dirpath) / filename
            if full_path.is_symlink() or not full_path.is_file():
                continue
            rel_str = full_path.relative_to(root).as_posix()
            if not checker.is_excluded_rel(rel_str):
                found.append(rel_str)

    found.sort()
    if len(found) > max_files:
        log.warning("index.file_cap_reached", found=len(found), max_files=max_files)
        found = found[:max_files]
    return found
