"""cix index / rebuild / delete commands - write side of the index."""

import json
from pathlib import Path

import click
import questionary
from rich.console import Console

from codeindex.cli.utils import load_cli_config, run_with_service, workspace_argument
from codeindex.index.models import IndexState, IndexStatus
from codeindex.index.ops import RunStats
from codeindex.index.router import CompositeIndexService


def _print_status(console: Console, status: IndexStatus) -> None:
    color = {
        IndexState.READY: "green",
        IndexState.ERROR: "red",
        IndexState.PAUSED: "yellow",
    }.get(status.state, "cyan")
    console.print(f"State: [{color}]{status.state.value}[/{color}]")
    console.print(f"Files: {status.indexed_files}/{status.total_files} indexed")
    console.print(f"Chunks: {status.total_chunks} ({status.embedded_chunks} embedded)")
    if status.last_error:
        console.print(f"[red]Last error:[/red] {status.last_error}")


@click.command()
@workspace_argument
@click.option(
    "--file",
    "files",
    multiple=True,
    type=click.Path(path_type=Path),
    help="Refresh only these paths instead of the whole workspace (repeatable)",
)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def index_command(ctx: click.Context, path: Path, files: tuple[Path, ...], as_json: bool) -> None:
    """Build or refresh the index for a workspace.

    PATH is the workspace root (default: current directory). Files whose
    content is unchanged since the last build are skipped.
    """
    root = path.resolve()
    config = load_cli_config(ctx, root)
    console = Console(stderr=True)

    if files:

        async def _refresh(service: CompositeIndexService) -> RunStats:
            return await service.refresh_paths(root, [root / f for f in files])

        stats = run_with_service(config, _refresh)
        if as_json:
            click.echo(json.dumps(stats.to_dict()))
        else:
            counts = ", ".join(f"{k}={v}" for k, v in stats.to_dict().items())
            console.print(f"[green]Refreshed[/green] {len(files)} path(s): {counts}")
        return

    async def _build(service: CompositeIndexService) -> IndexStatus:
        return await service.build_full_index(root)

    with console.status(f"Indexing {root}..."):
        status = run_with_service(config, _build)
    if as_json:
        click.echo(json.dumps(status.to_dict()))
    else:
        _print_status(console, status)
    if status.state == IndexState.ERROR:
        raise SystemExit(1)


@click.command()
@workspace_argument
@click.option("--reason", default="cli", help="Reason recorded in the logs")
@click.pass_context
def rebuild_command(ctx: click.Context, path: Path, reason: str) -> None:
    """Drop every row and vector of the workspace and index it from scratch."""
    root = path.resolve()
    config = load_cli_config(ctx, root)
    console = Console(stderr=True)

    async def _rebuild(service: CompositeIndexService) -> IndexStatus:
        return await service.rebuild_workspace_index(root, reason)

    with console.status(f"Rebuilding {root}..."):
        status = run_with_service(config, _rebuild)
    _print_status(console, status)


@click.command()
@workspace_argument
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt")
@click.pass_context
def delete_command(ctx: click.Context, path: Path, yes: bool) -> None:
    """Permanently delete the index of a workspace (local rows and remote vectors)."""
    root = path.resolve()
    config = load_cli_config(ctx, root)
    console = Console(stderr=True)

    if not yes:
        answer = questionary.select(
            f"Delete the index for {root}? This cannot be undone.",
            choices=[
                questionary.Choice("No, keep the index", value=False),
                questionary.Choice("Yes, delete it", value=True),
            ],
            style=questionary.Style(
                [
                    ("question", "bold"),
                    ("highlighted", "fg:red bold"),
                    ("selected", "fg:red"),
                ]
            ),
        ).ask()
        if not answer:
            console.print("[dim]Cancelled[/dim]")
            return

    async def _delete(service: CompositeIndexService) -> bool:
        return await service.delete_index(root)

    removed = run_with_service(config, _delete)
    if removed:
        console.print(f"  [green]✓[/green] Deleted index for {root}")
    else:
        console.print("[yellow]Nothing to delete[/yellow] - no index found")
