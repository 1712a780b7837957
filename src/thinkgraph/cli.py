"""Command-line maintenance for a thinkgraph memory file.

Examples:
    thinkgraph prune --before "30 days ago" --dry-run
    thinkgraph prune --tag "#temp" --deprecate -y
    thinkgraph query --keyword sqlite --after 2025-01-01
    thinkgraph search "storage engines" --threshold 0.5
    thinkgraph export -o backup.json
"""

import asyncio
import json
import logging
import sys
from dataclasses import replace
from pathlib import Path

import click
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .config import Settings
from .constants import (
    DEFAULT_SEARCH_LIMIT,
    DEFAULT_SIMILARITY_THRESHOLD,
    PRUNE_PREVIEW_LIMIT,
)
from .embeddings import backend_from_settings
from .models import MemoryQuery, TimeRange
from .pruning import PruneRequest, is_deprecated, matches
from .store import JsonlStore
from .timeutil import format_relative_time, parse_time_reference, parse_timestamp

console = Console()
logger = logging.getLogger("thinkgraph")


def configure_logging(settings: Settings) -> None:
    """Log to a file next to the memory file and to stderr."""
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    try:
        settings.log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.insert(0, logging.FileHandler(settings.log_path))
    except OSError as e:
        print(f"thinkgraph: file logging disabled: {e}", file=sys.stderr)

    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


def _parse_when(value: str | None, option: str):
    if value is None:
        return None
    try:
        return parse_time_reference(value)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint=option) from e


def _truncate(text: str, width: int = 60) -> str:
    text = text if len(text) <= width else text[:width - 1] + "…"
    return escape(text)


def _age(timestamp: str) -> str:
    try:
        return format_relative_time(parse_timestamp(timestamp))
    except ValueError:
        return timestamp


@click.group()
@click.option(
    "--memory-path",
    type=click.Path(path_type=Path),
    help="Path to the memory JSONL file (default: $MEMORY_PATH or ~/.mcp-think-tank/memory.jsonl)",
)
@click.option("--debug", is_flag=True, help="Verbose logging")
@click.pass_context
def cli(ctx, memory_path, debug):
    """Thinkgraph - knowledge graph memory maintenance."""
    ctx.ensure_object(dict)
    try:
        settings = Settings.from_env()
    except ValueError as e:
        raise click.UsageError(str(e)) from e
    if memory_path is not None:
        settings = replace(settings, memory_path=memory_path)
    if debug:
        settings = replace(settings, debug=True)

    configure_logging(settings)
    ctx.obj["settings"] = settings


def _store(ctx, with_embeddings: bool = False) -> JsonlStore:
    settings: Settings = ctx.obj["settings"]
    backend = backend_from_settings(settings) if with_embeddings else None
    return JsonlStore.from_settings(settings, embedding_backend=backend)


# --- Pruning ---


@cli.command()
@click.option("--before", help='Prune observations older than this ("2025-01-01", "30 days ago")')
@click.option("--tag", help="Prune observations whose text contains this tag (case-sensitive)")
@click.option("--deprecate", is_flag=True, help="Mark with [DEPRECATED] instead of deleting")
@click.option("--dry-run", is_flag=True, help="Show what would be pruned without changing anything")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt")
@click.pass_context
def prune(ctx, before, tag, deprecate, dry_run, yes):
    """Delete or deprecate old or tagged observations.

    At least one of --before or --tag is required.

    Examples:
        thinkgraph prune --before "90 days ago" --dry-run
        thinkgraph prune --tag "#scratch" --deprecate
    """
    if before is None and not tag:
        raise click.UsageError("Specify --before and/or --tag; refusing to prune everything")

    request = PruneRequest(
        before=_parse_when(before, "--before"),
        tag=tag,
        deprecate=deprecate,
    )

    async def run() -> int | None:
        store = _store(ctx)
        await store.ensure_loaded()

        preview = [
            (entity, obs) for entity, obs in store.graph.iter_observations()
            if matches(obs, request.before, request.tag)
            and not (deprecate and is_deprecated(obs))
        ]
        count = await store.prune(request, dry_run=True)
        if count == 0:
            console.print("[green]No observations match; nothing to prune.[/green]")
            return 0

        action = "deprecate" if deprecate else "delete"
        console.print(f"[bold]{count} observation(s) would be {action}d.[/bold]")
        for entity, obs in preview[:PRUNE_PREVIEW_LIMIT]:
            console.print(
                f"  [cyan]{escape(entity.name)}[/cyan]: {_truncate(obs.text)} "
                f"[dim]({_age(obs.timestamp)})[/dim]"
            )
        if len(preview) > PRUNE_PREVIEW_LIMIT:
            console.print(f"  ... and {len(preview) - PRUNE_PREVIEW_LIMIT} more")

        if dry_run:
            console.print("[dim]Dry run: no changes made.[/dim]")
            return count

        if not yes and not click.confirm(f"Proceed to {action} {count} observation(s)?", default=False):
            console.print("[dim]Cancelled.[/dim]")
            return None

        pruned = await store.prune(request)
        console.print(f"[green]✓[/green] {action.capitalize()}d {pruned} observation(s)")
        return pruned

    asyncio.run(run())


# --- Read commands ---


@cli.command()
@click.option("--keyword", "-k", help="Case-insensitive substring of the observation text")
@click.option("--tag", help="Case-insensitive tag substring")
@click.option("--after", help="Only observations at or after this time")
@click.option("--before", help="Only observations at or before this time")
@click.option("-n", "--limit", type=int, default=0, help="Max results (0 = no limit)")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def query(ctx, keyword, tag, after, before, limit, as_json):
    """Find observations by keyword, tag and time range.

    Examples:
        thinkgraph query -k sqlite
        thinkgraph query --after "last week" --tag "#decision"
    """
    after_dt = _parse_when(after, "--after")
    before_dt = _parse_when(before, "--before")
    memory_query = MemoryQuery(
        keyword=keyword,
        tag=tag,
        time=TimeRange(after=after_dt, before=before_dt) if (after_dt or before_dt) else None,
        limit=limit or None,
    )

    async def run():
        return await _store(ctx).query(memory_query)

    hits = asyncio.run(run())

    if as_json:
        click.echo(json.dumps([h.to_dict() for h in hits], indent=2))
        return
    if not hits:
        console.print("[yellow]No matching observations[/yellow]")
        return

    table = Table()
    table.add_column("Entity", style="cyan")
    table.add_column("Observation")
    table.add_column("When", justify="right", style="dim")
    for hit in hits:
        table.add_row(
            escape(hit.entity_name[:25]),
            _truncate(hit.observation.text),
            _age(hit.observation.timestamp),
        )
    console.print(table)
    console.print(f"[dim]{len(hits)} observation(s)[/dim]")


@cli.command()
@click.argument("text")
@click.option("--threshold", type=float, default=DEFAULT_SIMILARITY_THRESHOLD, help="Minimum cosine similarity")
@click.option("-n", "--limit", type=int, default=DEFAULT_SEARCH_LIMIT, help="Max results")
@click.option("--no-backfill", is_flag=True, help="Do not embed entities that lack vectors")
@click.option("--no-embeddings", is_flag=True, help="Substring search only")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def search(ctx, text, threshold, limit, no_backfill, no_embeddings, as_json):
    """Semantic search over entities.

    Falls back to substring matching when the embedding model is unavailable.
    """
    store = _store(ctx, with_embeddings=not no_embeddings)

    async def run():
        try:
            return await store.semantic_search(
                text, threshold=threshold, limit=limit, backfill=not no_backfill
            )
        finally:
            await store.close()

    hits = asyncio.run(run())

    if as_json:
        click.echo(json.dumps([h.to_dict() for h in hits], indent=2))
        return
    if not hits:
        console.print(f"[yellow]No entities match '{escape(text)}'[/yellow]")
        return

    if any(h.degraded for h in hits):
        console.print("[dim]Embeddings unavailable; showing substring matches.[/dim]")

    table = Table()
    table.add_column("Entity", style="cyan")
    table.add_column("Type")
    table.add_column("Similarity", justify="right", style="green")
    table.add_column("Observations", justify="right", style="dim")
    for hit in hits:
        table.add_row(
            escape(hit.entity.name[:30]),
            escape(hit.entity.entity_type),
            f"{hit.similarity:.3f}",
            str(len(hit.entity.observations)),
        )
    console.print(table)


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def status(ctx, as_json):
    """Show entity, relation and observation counts."""
    stats = asyncio.run(_store(ctx).stats())

    if as_json:
        click.echo(json.dumps(stats, indent=2))
        return

    console.print(f"Memory file: [cyan]{stats['file']}[/cyan]")
    console.print(
        f"Graph: [bold]{stats['entity_count']}[/bold] entities, "
        f"[bold]{stats['relation_count']}[/bold] relations, "
        f"[bold]{stats['observation_count']}[/bold] observations"
    )
    console.print(f"Embedded: {stats['embedded_count']}/{stats['entity_count']}")
    if stats["types"]:
        console.print()
        table = Table(title="Entity types")
        table.add_column("Type", style="cyan")
        table.add_column("Count", justify="right")
        for entity_type, count in sorted(stats["types"].items(), key=lambda kv: -kv[1]):
            table.add_row(escape(entity_type), str(count))
        console.print(table)


# --- Import / export ---


@cli.command()
@click.option("-o", "--output", type=click.Path(path_type=Path), help="Write to file instead of stdout")
@click.pass_context
def export(ctx, output):
    """Export the graph as a single JSON document."""
    data = asyncio.run(_store(ctx).read_graph())
    data.pop("summary", None)
    for entity in data["entities"]:
        entity.pop("embedding", None)

    text = json.dumps(data, indent=2, ensure_ascii=False)
    if output is None:
        click.echo(text)
        return
    output.write_text(text + "\n", encoding="utf-8")
    console.print(
        f"[green]✓[/green] Exported {len(data['entities'])} entities, "
        f"{len(data['relations'])} relations to {output}"
    )


@cli.command("import")
@click.argument("source", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def import_(ctx, source):
    """Merge entities and relations from an exported JSON file.

    Entities that already exist are left unchanged.
    """
    try:
        data = json.loads(source.read_text(encoding="utf-8"))
    except UnicodeDecodeError as e:
        raise click.ClickException(f"{source} is not UTF-8 text: {e.reason}") from e
    except json.JSONDecodeError as e:
        raise click.ClickException(f"{source} is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise click.ClickException(f"{source} must contain an object with 'entities' and 'relations'")

    try:
        result = asyncio.run(_store(ctx).import_graph(data))
    except ValidationError as e:
        raise click.ClickException(f"{source} has invalid entities or relations: {e}") from e
    logger.info(f"Imported {result['entities_added']} entities from {source}")
    console.print(
        f"[green]✓[/green] Imported {result['entities_added']} entities, "
        f"{result['relations_added']} relations"
    )


if __name__ == "__main__":
    cli()
