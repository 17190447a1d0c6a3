"""Namespace and vector id derivation for the remote vector store.

All functions are pure: the same inputs always give the same output, and
no filesystem or network access happens here.
"""

from __future__ import annotations

import hashlib
import posixpath
from pathlib import Path

VECTOR_ID_SEPARATOR = "::"


def _normalize_path(workspace_path: str | Path) -> str:
    text = str(workspace_path).replace("\\", "/")
    normalized = posixpath.normpath(text) if text else text
    return normalized.rstrip("/") or "/"


def _digest(*parts: str) -> str:
    hasher = hashlib.sha256()
    for part in parts:
        hasher.update(part.encode("utf-8"))
        hasher.update(b"\x00")
    return hasher.hexdigest()


def workspace_hash(workspace_path: str | Path) -> str:
    """16 hex chars identifying a workspace path."""
    return _digest(_normalize_path(workspace_path))[:16]


def namespace_for(user_id: str, workspace_path: str | Path) -> str:
    """Namespace for one (user, workspace) pair."""
    return f"ns-{_digest(user_id, _normalize_path(workspace_path))[:32]}"


def vector_id(ws_hash: str, path: str, chunk_index: int) -> str:
    return f"{ws_hash}{VECTOR_ID_SEPARATOR}{path}{VECTOR_ID_SEPARATOR}{chunk_index}"


def parse_vector_id(value: str) -> tuple[str, str, int]:
    """Inverse of vector_id; paths may themselves contain the separator."""
    ws_hash, _, rest = value.partition(VECTOR_ID_SEPARATOR)
    path, sep, index = rest.rpartition(VECTOR_ID_SEPARATOR)
    if not sep or not index.isdigit():
        msg = f"Not a vector id: {value!r}"
        raise ValueError(msg)
    return ws_hash, path, int(index)


def resolve_user_id(configured: str | None = None, home: Path | None = None) -> str:
    """Configured account id, or a stable hash of the home directory."""
    if configured:
        return configured
    home_dir = home if home is not None else Path.home()
    return _digest(str(home_dir))[:16]
