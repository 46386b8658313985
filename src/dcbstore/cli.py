"""Command-line access to an event store.

    dcbstore --db events.db append CourseDefined --tag courseId=c1 --data '{"capacity": 10}'
    dcbstore --db events.db read --type CourseDefined --tag courseId=c1
    dcbstore --db events.db append CourseCapacityChanged --tag courseId=c1 \\
        --match-type CourseDefined --match-type CourseCapacityChanged \\
        --match-tag courseId=c1 --after 1
"""

import json
import logging
import sys

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .config import StoreSettings, open_store
from .constants import ENV_DB_PATH, WRITE_STRATEGIES
from .errors import DCBError
from .models import AppendCondition, NewEvent, Query

console = Console()


def parse_tags(pairs: tuple[str, ...]) -> dict[str, str]:
    """Parse ("key=value", ...) into a dict."""
    tags: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"Expected key=value, got {pair!r}", param_hint="--tag")
        tags[key] = value
    return tags


def _build_query(types: tuple[str, ...], tags: tuple[str, ...]) -> Query:
    return Query(types=frozenset(types) or None, tags=parse_tags(tags) or None)


def _open(ctx: click.Context):
    return open_store(ctx.obj["settings"])


@click.group()
@click.option(
    "--db",
    "db_path",
    envvar=ENV_DB_PATH,
    help="Path to the event database (':memory:' for a throwaway store)",
)
@click.option(
    "--strategy",
    type=click.Choice(WRITE_STRATEGIES),
    help="Write strategy for SQLite stores",
)
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx, db_path, strategy, verbose):
    """dcbstore - append-only event store with dynamic consistency boundaries."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            stream=sys.stderr,
        )
    ctx.ensure_object(dict)
    ctx.obj["settings"] = StoreSettings.from_env(db_path=db_path, strategy=strategy)


@cli.command()
@click.argument("event_type")
@click.option("--tag", "tags", multiple=True, help="Event tag as key=value (repeatable)")
@click.option("--data", default="", help="Event payload (stored as UTF-8 bytes)")
@click.option("--match-type", "match_types", multiple=True, help="Condition query type")
@click.option("--match-tag", "match_tags", multiple=True, help="Condition query tag key=value")
@click.option("--after", type=click.IntRange(min=0), default=None, help="Highest sequence seen for the condition query")
@click.option(
    "--fail-if-exists",
    is_flag=True,
    help="Condition on this event's own type and tags (creation guard)",
)
@click.pass_context
def append(ctx, event_type, tags, data, match_types, match_tags, after, fail_if_exists):
    """Append one event, optionally guarded by a condition."""
    event_tags = parse_tags(tags)
    condition = None
    if fail_if_exists:
        condition = AppendCondition(
            fail_if_events_match=Query(types=frozenset({event_type}), tags=event_tags or None),
            after=after or 0,
        )
    elif match_types or match_tags or after is not None:
        condition = AppendCondition(
            fail_if_events_match=_build_query(match_types, match_tags),
            after=after or 0,
        )

    try:
        with _open(ctx) as store:
            result = store.append(
                [NewEvent(type=event_type, tags=event_tags, data=data.encode("utf-8"))],
                condition,
            )
    except DCBError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        ctx.exit(1)

    if result.appended:
        first, last = result.range
        position = f"{first}" if first == last else f"{first}..{last}"
        console.print(f"[green]✓[/green] Appended {event_type} at sequence {position}")
    elif result.denied:
        console.print(
            f"[yellow]![/yellow] Condition denied: matching events up to "
            f"{result.observed}, expected at most {result.after}"
        )
        ctx.exit(2)
    else:
        console.print("[yellow]![/yellow] Transient conflict with a concurrent writer; retry")
        ctx.exit(3)


@cli.command()
@click.option("--type", "types", multiple=True, help="Event type (repeatable, OR-combined)")
@click.option("--tag", "tags", multiple=True, help="Required tag key=value (repeatable, AND-combined)")
@click.option("--from", "from_sequence", type=int, default=0, help="Lowest sequence (inclusive)")
@click.option("-n", "--limit", type=int, default=None, help="Maximum number of events")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def read(ctx, types, tags, from_sequence, limit, as_json):
    """Read events matching a type/tag query."""
    query = _build_query(types, tags)
    try:
        with _open(ctx) as store:
            events = list(store.read(query, from_sequence=from_sequence, limit=limit))
    except DCBError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        ctx.exit(1)

    if as_json:
        click.echo(json.dumps([e.to_dict() for e in events], indent=2))
        return

    if not events:
        console.print("No events found.")
        return

    table = Table(title=f"Events ({len(events)})")
    table.add_column("Seq", justify="right", style="cyan")
    table.add_column("Type", style="bold")
    table.add_column("Tags")
    table.add_column("Recorded", style="dim")
    table.add_column("Data")

    for event in events:
        tag_str = ", ".join(f"{k}={v}" for k, v in sorted(event.tags.items()))
        data_str = event.data.decode("utf-8", errors="replace")
        if len(data_str) > 40:
            data_str = data_str[:37] + "..."
        table.add_row(
            str(event.sequence),
            event.type,
            tag_str,
            event.recorded_at.strftime("%Y-%m-%d %H:%M:%S"),
            data_str,
        )

    console.print(table)


@cli.command()
@click.option("--type", "types", multiple=True, help="Event type (repeatable)")
@click.option("--tag", "tags", multiple=True, help="Required tag key=value (repeatable)")
@click.pass_context
def head(ctx, types, tags):
    """Print the highest sequence matching a query (0 if none)."""
    try:
        with _open(ctx) as store:
            position = store.highest_sequence(_build_query(types, tags))
    except DCBError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        ctx.exit(1)
    click.echo(str(position))


@cli.command()
@click.pass_context
def stats(ctx):
    """Show event count and head position."""
    settings = ctx.obj["settings"]
    try:
        with _open(ctx) as store:
            total = store.count()
            position = store.highest_sequence()
    except DCBError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        ctx.exit(1)

    console.print(f"Store: [cyan]{settings.db_path}[/cyan] ({settings.strategy})")
    console.print(f"Events: [bold]{total}[/bold]")
    console.print(f"Head: [bold]{position}[/bold]")


if __name__ == "__main__":
    cli()
