"""CLI utilities."""

import asyncio
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TypeVar

import click

from codeindex.config.loader import load_config
from codeindex.config.models import CodeIndexConfig
from codeindex.core.errors import CodeIndexError
from codeindex.index.router import CompositeIndexService

T = TypeVar("T")


def load_cli_config(ctx: click.Context, workspace: Path) -> CodeIndexConfig:
    """Load config for ``workspace``, applying the group-level --backend override."""
    overrides: dict[str, Any] = {}
    backend = (ctx.obj or {}).get("backend")
    if backend == "local":
        overrides["index"] = {"local_enabled": True, "cloud_enabled": False}
    elif backend == "cloud":
        overrides["index"] = {"cloud_enabled": True}
    try:
        return load_config(workspace, **overrides)
    except CodeIndexError as e:
        raise click.ClickException(e.message) from e


def run_with_service(
    config: CodeIndexConfig,
    fn: Callable[[CompositeIndexService], Awaitable[T]],
) -> T:
    """Run ``fn`` against a fresh service on a new event loop, closing it afterwards."""

    async def _run() -> T:
        service = CompositeIndexService(config)
        try:
            return await fn(service)
        finally:
            await service.close()

    try:
        return asyncio.run(_run())
    except CodeIndexError as e:
        raise click.ClickException(e.message) from e


def workspace_argument(fn: Callable[..., Any]) -> Callable[..., Any]:
    """PATH argument shared by every command: the workspace root."""
    return click.argument(
        "path", default=".", type=click.Path(exists=True, file_okay=False, path_type=Path)
    )(fn)
