"""codeindex CLI - cix command."""

import click

from codeindex.cli.index import delete_command, index_command, rebuild_command
from codeindex.cli.query import context_command, search_command
from codeindex.cli.status import diagnostics_command, status_command
from codeindex.core.logging import configure_logging


@click.group()
@click.version_option(version="0.1.0", prog_name="cix")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.option(
    "--backend",
    type=click.Choice(["local", "cloud"]),
    default=None,
    help="Force a backend instead of the configured one",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, backend: str | None) -> None:
    """codeindex - hybrid lexical, vector and graph code index."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["backend"] = backend
    configure_logging(level="DEBUG" if verbose else "WARNING")


cli.add_command(index_command, name="index")
cli.add_command(rebuild_command, name="rebuild")
cli.add_command(delete_command, name="delete")
cli.add_command(status_command, name="status")
cli.add_command(diagnostics_command, name="diagnostics")
cli.add_command(search_command, name="search")
cli.add_command(context_command, name="context")


if __name__ == "__main__":
    cli()
