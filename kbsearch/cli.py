import asyncio
import json
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from kbsearch.config import SearchConfig
from kbsearch.llm.ollama import OllamaClient
from kbsearch.logging import configure_logging
from kbsearch.search.fusion import weighted_rrf
from kbsearch.search.reranker import OllamaReranker
from kbsearch.search.types import RetrievalSource, SearchResult, SourceType

console = Console()


def load_source(path: Path) -> RetrievalSource:
    """Read one result batch: {"type", "weight", "original", "results": [...]}."""
    data = json.loads(path.read_text())
    results = [
        SearchResult(
            file_path=r["file_path"],
            line_number=int(r.get("line_number", 0)),
            preview=r.get("preview", ""),
            score=float(r.get("score", 0.0)),
            title=r.get("title"),
            distance=r.get("distance"),
            source_key=r.get("source_key", ""),
        )
        for r in data.get("results", [])
    ]
    return RetrievalSource(
        results=results,
        weight=float(data.get("weight", 0.5)),
        source_type=SourceType(data.get("type", SourceType.LEXICAL)),
        is_original_query=bool(data.get("original", True)),
    )


@click.group(invoke_without_command=True)
@click.option("--log-level", default="WARNING", help="Log level for diagnostics on stderr.")
@click.pass_context
def main(ctx, log_level):
    """kbsearch - fused lexical and semantic search over a knowledge base"""
    configure_logging(log_level)
    ctx.ensure_object(dict)
    try:
        ctx.obj["config"] = SearchConfig()
    except ValueError as e:
        ctx.obj["config_error"] = str(e)

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


def _require_config(ctx) -> SearchConfig:
    if "config_error" in ctx.obj:
        console.print(f"[red]Error:[/red] {ctx.obj['config_error']}")
        raise SystemExit(1)
    return ctx.obj["config"]


@main.command()
@click.argument("files", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("-k", "--rrf-k", type=int, default=None, help="RRF smoothing constant.")
@click.option("--no-bonus", is_flag=True, help="Disable the top-rank bonus.")
@click.option("--raw", is_flag=True, help="Fuse raw scores without normalizing first.")
@click.option("-n", "--limit", type=int, default=20, show_default=True)
@click.pass_context
def fuse(ctx, files, rrf_k, no_bonus, raw, limit):
    """Fuse result batches stored as JSON files."""
    config = _require_config(ctx)
    sources = [load_source(path) for path in files]
    fused = weighted_rrf(
        sources,
        k=rrf_k or config.hybrid.k,
        apply_top_bonus=not no_bonus,
        normalize_first=not raw,
        original_query_multiplier=config.hybrid.original_query_multiplier,
    )

    table = Table(title=f"{len(fused)} fused results")
    table.add_column("#", justify="right")
    table.add_column("key")
    table.add_column("score", justify="right")
    table.add_column("preview")
    for i, r in enumerate(fused[:limit], 1):
        table.add_row(str(i), r.source_key, f"{r.score:.5f}", r.preview[:60])
    console.print(table)


async def _probe(config: SearchConfig) -> dict[str, bool | str]:
    client = OllamaClient(config.ollama_url, timeout=config.request_timeout)
    try:
        try:
            models = await client.list_models(timeout=config.probe_timeout)
        except Exception as e:
            return {"server": False, "error": str(e)}

        reranker = OllamaReranker(client=client, model=config.reranking.model, probe_timeout=config.probe_timeout)
        return {
            "server": True,
            "models": ", ".join(models) or "-",
            "reranker": await reranker.is_available(),
            "expansion": await client.has_model(config.query_expansion.llm_model, timeout=config.probe_timeout),
        }
    finally:
        await client.close()


@main.command()
@click.pass_context
def probe(ctx):
    """Check whether the oracle server and its models are reachable."""
    config = _require_config(ctx)
    status = asyncio.run(_probe(config))

    console.print(f"[bold]Oracle:[/bold] {config.ollama_url}")
    if not status["server"]:
        console.print(f"  [red]unreachable[/red] ({status['error']})")
        return

    def mark(ok) -> str:
        return "[green]available[/green]" if ok else "[yellow]missing[/yellow]"

    console.print(f"  models: {status['models']}")
    console.print(f"  reranker {config.reranking.model}: {mark(status['reranker'])}")
    console.print(f"  expansion {config.query_expansion.llm_model}: {mark(status['expansion'])}")


@main.command("config")
@click.pass_context
def show_config(ctx):
    """Print the effective configuration."""
    config = _require_config(ctx)
    console.print_json(config.model_dump_json())


if __name__ == "__main__":
    main()
