"""cix search / context commands - read side of the index."""

import json
from pathlib import Path

import click
from rich.console import Console

from codeindex.cli.utils import load_cli_config, run_with_service, workspace_argument
from codeindex.index.models import ContextBundle, SearchOptions, SemanticSearchResult
from codeindex.index.router import CompositeIndexService


@click.command()
@click.argument("query")
@workspace_argument
@click.option("--limit", "-n", default=10, show_default=True, help="Maximum results")
@click.option("--path-prefix", default=None, help="Only results under this workspace path")
@click.option("--language", default=None, help="Only results in this language id")
@click.option("--no-vector", is_flag=True, help="Lexical search only")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def search_command(
    ctx: click.Context,
    query: str,
    path: Path,
    limit: int,
    path_prefix: str | None,
    language: str | None,
    no_vector: bool,
    as_json: bool,
) -> None:
    """Hybrid search over an indexed workspace."""
    root = path.resolve()
    config = load_cli_config(ctx, root)
    options = SearchOptions(
        max_results=limit,
        include_vector=not no_vector,
        path_prefix=path_prefix,
        language_id=language,
    )

    async def _search(service: CompositeIndexService) -> list[SemanticSearchResult]:
        return await service.search(root, query, options)

    results = run_with_service(config, _search)
    if as_json:
        click.echo(json.dumps([r.to_dict() for r in results]))
        return

    console = Console()
    if not results:
        console.print("[dim]No results[/dim]")
        return
    for r in results:
        sources = ",".join(sorted(p.value for p in r.provenance))
        console.print(
            f"[cyan]{r.path}[/cyan]:{r.start_line}-{r.end_line}  "
            f"[bold]{r.score:.3f}[/bold]  [dim]{sources}[/dim]"
        )


@click.command()
@click.argument("query")
@workspace_argument
@click.option("--focus", default=None, help="Workspace path to boost and expand from")
@click.option("--max-snippets", type=int, default=None, help="Snippet budget")
@click.option("--max-tokens", type=int, default=None, help="Token budget")
@click.pass_context
def context_command(
    ctx: click.Context,
    query: str,
    path: Path,
    focus: str | None,
    max_snippets: int | None,
    max_tokens: int | None,
) -> None:
    """Print a budgeted context bundle for QUERY as JSON."""
    root = path.resolve()
    config = load_cli_config(ctx, root)

    async def _context(service: CompositeIndexService) -> ContextBundle:
        return await service.get_context_for_mcp(
            root, query, focus_path=focus, max_snippets=max_snippets, max_tokens=max_tokens
        )

    bundle = run_with_service(config, _context)
    click.echo(json.dumps(bundle.to_dict(), indent=2))
