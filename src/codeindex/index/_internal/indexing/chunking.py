"""Deterministic chunking and lexical tokenization.

Chunks are fixed line windows (``chunk_size_lines``, default 200). Identical
content with identical parameters always yields identical boundaries, ids and
hashes, which is what makes re-indexing unchanged files a no-op.

Tokenization lowercases and splits on anything outside ``[a-z0-9_]``,
recording term frequency and ordinal positions per chunk.
"""

from __future__ import annotations

import hashlib
import re
from collections import defaultdict
from dataclasses import dataclass
from pathlib import PurePosixPath

DEFAULT_CHUNK_SIZE_LINES = 200

_TOKEN_SPLIT = re.compile(r"[^a-z0-9_]+")

# Extension -> language id (editor-style identifiers)
_LANGUAGE_BY_EXT: dict[str, str] = {
    ".py": "python",
    ".pyi": "python",
    ".js": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".jsx": "javascriptreact",
    ".ts": "typescript",
    ".mts": "typescript",
    ".cts": "typescript",
    ".tsx": "typescriptreact",
    ".go": "go",
    ".rs": "rust",
    ".java": "java",
    ".kt": "kotlin",
    ".scala": "scala",
    ".cs": "csharp",
    ".c": "c",
    ".h": "c",
    ".cc": "cpp",
    ".cpp": "cpp",
    ".hpp": "cpp",
    ".rb": "ruby",
    ".php": "php",
    ".swift": "swift",
    ".sh": "shellscript",
    ".bash": "shellscript",
    ".sql": "sql",
    ".html": "html",
    ".css": "css",
    ".scss": "scss",
    ".json": "json",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".toml": "toml",
    ".md": "markdown",
    ".rst": "restructuredtext",
    ".txt": "plaintext",
}


@dataclass(frozen=True, slots=True)
class Chunk:
    """One line window of a file. Lines are 1-based and inclusive."""

    id: str
    path: str
    chunk_index: int
    content: str
    language_id: str | None
    start_line: int
    start_char: int
    end_line: int
    end_char: int
    content_hash: str


@dataclass(frozen=True, slots=True)
class TokenPosting:
    term: str
    term_frequency: int
    positions: tuple[int, ...]


def content_hash(content: str | bytes) -> str:
    """SHA-256 hex digest used for files and chunks."""
    data = content.encode("utf-8") if isinstance(content, str) else content
    return hashlib.sha256(data).hexdigest()


def chunk_id(path: str, chunk_index: int) -> str:
    return f"{path}#{chunk_index}"


def detect_language_id(path: str) -> str | None:
    """Language id from the file suffix, or None when unknown."""
    suffix = PurePosixPath(path).suffix.lower()
    return _LANGUAGE_BY_EXT.get(suffix)


def truncate_content(content: str, max_bytes: int) -> tuple[str, bool]:
    """Cut ``content`` to at most ``max_bytes`` UTF-8 bytes at a line boundary.

    Returns (content, truncated).
    """
    encoded = content.encode("utf-8")
    if len(encoded) <= max_bytes:
        return content, False
    head = encoded[:max_bytes].decode("utf-8", errors="ignore")
    cut = head.rfind("\n")
    if cut > 0:
        head = head[: cut + 1]
    return head, True


def split_lines(content: str) -> list[str]:
    """Split into lines without terminators; a trailing newline adds no line."""
    if not content:
        return []
    lines = content.split("\n")
    if lines[-1] == "":
        lines.pop()
    return [line.rstrip("\r") for line in lines]


def chunk_content(
    path: str,
    content: str,
    language_id: str | None = None,
    chunk_size_lines: int = DEFAULT_CHUNK_SIZE_LINES,
) -> list[Chunk]:
    """Split file text into ordered, non-overlapping line windows.

    Empty content yields no chunks.
    """
    if chunk_size_lines <= 0:
        msg = f"chunk_size_lines must be positive, got {chunk_size_lines}"
        raise ValueError(msg)

    lines = split_lines(content)
    chunks: list[Chunk] = []
    for index, start in enumerate(range(0, len(lines), chunk_size_lines)):
        window = lines[start : start + chunk_size_lines]
        text = "\n".join(window)
        chunks.append(
            Chunk(
                id=chunk_id(path, index),
                path=path,
                chunk_index=index,
                content=text,
                language_id=language_id,
                start_line=start + 1,
                start_char=0,
                end_line=start + len(window),
                end_char=len(window[-1]),
                content_hash=content_hash(text),
            )
        )
    return chunks


def tokenize_terms(text: str) -> list[str]:
    """Lowercased terms in order of appearance."""
    return [t for t in _TOKEN_SPLIT.split(text.lower()) if t]


def tokenize(text: str) -> list[TokenPosting]:
    """Inverted-index postings for one chunk, ordered by first appearance."""
    positions: dict[str, list[int]] = defaultdict(list)
    for position, term in enumerate(tokenize_terms(text)):
        positions[term].append(position)
    return [
        TokenPosting(term=term, term_frequency=len(pos), positions=tuple(pos))
        for term, pos in positions.items()
    ]
