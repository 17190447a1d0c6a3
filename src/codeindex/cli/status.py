"""cix status / diagnostics commands."""

import json
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from codeindex.cli.utils import load_cli_config, run_with_service, workspace_argument
from codeindex.index.models import IndexDiagnostics, IndexStatus
from codeindex.index.router import CompositeIndexService


@click.command()
@workspace_argument
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def status_command(ctx: click.Context, path: Path, as_json: bool) -> None:
    """Show index status for a workspace.

    PATH is the workspace root (default: current directory).
    """
    root = path.resolve()
    config = load_cli_config(ctx, root)

    async def _status(service: CompositeIndexService) -> IndexStatus:
        return await service.get_status(root)

    status = run_with_service(config, _status)
    if as_json:
        click.echo(json.dumps(status.to_dict()))
        return

    if status.disabled:
        click.echo("Index: disabled (enable index.local_enabled or index.cloud_enabled)")
        return

    click.echo(f"Workspace: {root}")
    click.echo(f"State: {status.state.value}" + (" (rebuilding)" if status.rebuilding else ""))
    click.echo(f"Files: {status.indexed_files}/{status.total_files}")
    click.echo(f"Chunks: {status.total_chunks} ({status.embedded_chunks} embedded)")
    if status.embedding_model:
        click.echo(f"Model: {status.embedding_model} ({status.model_download_state.value})")
    if status.paused:
        click.echo(f"Paused: {status.paused_reason or 'yes'}")
    if status.last_error:
        click.echo(f"Last error: {status.last_error}")


@click.command()
@workspace_argument
@click.option("--sample-query", default=None, help="Run this query and report the hit count")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def diagnostics_command(
    ctx: click.Context, path: Path, sample_query: str | None, as_json: bool
) -> None:
    """Show extended index diagnostics for troubleshooting."""
    root = path.resolve()
    config = load_cli_config(ctx, root)

    async def _diagnostics(service: CompositeIndexService) -> IndexDiagnostics:
        return await service.get_diagnostics(root, sample_query)

    diag = run_with_service(config, _diagnostics)
    if as_json:
        click.echo(json.dumps(diag.to_dict()))
        return

    table = Table(title=f"Index diagnostics: {root}", show_header=False)
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    data = diag.to_dict()
    status = data.pop("status")
    errors = data.pop("file_errors")
    for key in ("state", "total_files", "indexed_files", "total_chunks", "embedded_chunks"):
        table.add_row(key, str(status[key]))
    for key, value in data.items():
        if value is not None:
            table.add_row(key, str(value))

    console = Console()
    console.print(table)
    for err in errors:
        console.print(f"  [red]✗[/red] {err['path']}: {err['error']}")
