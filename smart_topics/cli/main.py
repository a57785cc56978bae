"""
Typer CLI for the smart-topics service.

Commands:
    smart-topics db init                     - Create the topic tables
    smart-topics topics rebuild OWNER        - Rebuild one user's topics
    smart-topics topics nightly              - Run the scheduled refresh
    smart-topics topics list OWNER           - List a user's topics
    smart-topics topics pin OWNER TOPIC      - Pin (or --unpin) a topic
    smart-topics topics archive OWNER TOPIC  - Archive (or --restore) a topic
    smart-topics topics show OWNER TOPIC     - Show members, timeline and events
    smart-topics topics members OWNER TOPIC ACTION NOTE - add/remove/confirm/exclude/set_time
    smart-topics topics merge OWNER TARGET SOURCE       - Merge SOURCE into TARGET
    smart-topics topics report OWNER TOPIC   - Regenerate the report (--full renames)

Usage:
    smart-topics --help
    smart-topics topics rebuild user-1 --algorithm kmeans --k 4
    smart-topics topics nightly --hours 48 --max-users 10
"""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import typer
from loguru import logger
from rich import print as rprint
from rich.console import Console
from rich.table import Table

from config import get_settings
from smart_topics.core.errors import TopicEngineError

T = TypeVar("T")

app = typer.Typer(
    help="smart-topics CLI: notes -> embeddings -> clusters -> topics",
    no_args_is_help=True,
)
db_app = typer.Typer(help="Database management")
topics_app = typer.Typer(help="Topic rebuilds and user actions")
app.add_typer(db_app, name="db")
app.add_typer(topics_app, name="topics")

console = Console()


def configure_logging(level: str | None = None) -> None:
    """Route loguru to stderr (and the optional log file) at the configured level."""
    settings = get_settings()
    level = level or settings.log_level
    logger.remove()
    logger.add(sys.stderr, level=level)
    if settings.log_file:
        logger.add(settings.log_file, level=level, rotation="10 MB", retention=5)


@app.callback()
def main_callback(
    database_url: str | None = typer.Option(None, "--database-url", help="Override DATABASE_URL"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """Smart topics: cluster saved notes into long-lived topics."""
    configure_logging("DEBUG" if verbose else None)
    if database_url:
        from smart_topics.db.database import configure_database

        configure_database(database_url)


def _run(factory: Callable[[], Awaitable[T]]) -> T:
    """Run an async command body; classified failures exit with code 1."""
    from smart_topics.db.database import dispose_engine

    async def runner() -> T:
        try:
            return await factory()
        finally:
            await dispose_engine()

    try:
        return asyncio.run(runner())
    except TopicEngineError as e:
        rprint(f"[red]✗[/red] {e.message} [dim]({e.kind.value})[/dim]")
        if e.hint:
            rprint(f"  [yellow]Hint:[/yellow] {e.hint}")
        raise typer.Exit(code=1)


def _store() -> Any:
    from smart_topics.db.database import get_async_session_factory
    from smart_topics.db.store import SqlAlchemyTopicStore

    return SqlAlchemyTopicStore(get_async_session_factory())


# ========================================
# Database Commands
# ========================================


@db_app.command("init")
def db_init() -> None:
    """
    Create the topic tables (and a notes table when missing).

    Safe to run multiple times (idempotent).
    """
    from smart_topics.db.database import init_db

    logger.info("Initializing database tables...")
    _run(init_db)
    rprint("[green]✓[/green] Database initialized!")


# ========================================
# Topic Commands
# ========================================


@topics_app.command("rebuild")
def topics_rebuild(
    owner_id: str = typer.Argument(..., help="Owner (user) id"),
    recent_days: int | None = typer.Option(None, "--recent-days", help="Only notes updated in the last N days"),
    k: int | None = typer.Option(None, "--k", help="Explicit k-means cluster count (max 12)"),
    algorithm: str = typer.Option("dbscan", "--algorithm", "-a", help="dbscan or kmeans"),
    eps: float | None = typer.Option(None, "--eps", help="Explicit DBSCAN eps"),
    min_samples: int | None = typer.Option(None, "--min-samples", help="DBSCAN min samples (max 12)"),
    as_json: bool = typer.Option(False, "--json", help="Print the raw result as JSON"),
) -> None:
    """Re-cluster a user's notes and update their topics."""
    from smart_topics.topics.rebuild import RebuildOptions, rebuild_topics

    if algorithm not in ("dbscan", "kmeans"):
        rprint(f"[red]✗[/red] Unknown algorithm: {algorithm}")
        raise typer.Exit(code=2)

    options = RebuildOptions(
        recent_days=recent_days, k=k, algorithm=algorithm, eps=eps, min_samples=min_samples
    )
    result = _run(lambda: rebuild_topics(owner_id, options, store=_store()))

    if as_json:
        console.print_json(json.dumps(result.to_dict(), default=str))
        return

    if result.message and not result.topics:
        rprint(f"[yellow]{result.message}[/yellow]")
        return

    table = Table(title=f"Topics for {owner_id}", show_header=True)
    table.add_column("Title", style="cyan")
    table.add_column("Members", justify="right", style="green")
    table.add_column("Keywords", style="dim")
    table.add_column("Id", style="dim")
    for topic in result.topics:
        table.add_row(
            topic["title"] or "-",
            str(topic["member_count"]),
            ", ".join(topic["keywords"]),
            topic["id"],
        )
    console.print(table)

    params = ", ".join(f"{key}={value}" for key, value in result.clustering.items())
    rprint(f"  Clustering: {params}")
    rprint(
        f"  Matching: {result.matching.get('matched', 0)} matched, "
        f"{result.matching.get('created', 0)} created, {result.matching.get('cleared', 0)} cleared"
    )
    for warning in result.warnings:
        rprint(f"  [yellow]⚠[/yellow] {warning.get('stage')}: {warning.get('error')}")
    rprint("\n[bold green]✓ Rebuild complete![/bold green]")


@topics_app.command("nightly")
def topics_nightly(
    hours: float | None = typer.Option(None, "--hours", help="Look-back window in hours (max 168)"),
    max_users: int | None = typer.Option(None, "--max-users", help="Maximum owners to refresh (max 200)"),
    algorithm: str = typer.Option("dbscan", "--algorithm", "-a", help="dbscan or kmeans"),
) -> None:
    """Rebuild recently active owners and archive stale topics."""
    from smart_topics.topics.nightly import NightlyRefresher
    from smart_topics.topics.rebuild import TopicRebuilder

    async def refresh():
        store = _store()
        rebuilder = TopicRebuilder.from_settings(store)
        try:
            refresher = NightlyRefresher.from_settings(store, rebuilder)
            return await refresher.run(hours=hours, max_users=max_users, algorithm=algorithm)
        finally:
            await rebuilder.close()

    result = _run(refresh)

    table = Table(title=f"Nightly Refresh (since {result.mark_since:%Y-%m-%d %H:%M} UTC)", show_header=True)
    table.add_column("Owner", style="cyan")
    table.add_column("Status")
    table.add_column("Topics", justify="right", style="green")
    table.add_column("Archived", justify="right", style="yellow")
    for owner in result.results:
        status = "[green]ok[/green]" if owner.ok else f"[red]{owner.kind}[/red]"
        table.add_row(owner.owner_id, status, str(owner.topics), str(owner.archived))
    console.print(table)
    rprint(
        f"\n  Refreshed {result.refreshed_users}/{result.candidates} owners, "
        f"{result.refreshed_topics} topics, {result.archived_topics} archived"
    )


@topics_app.command("list")
def topics_list(
    owner_id: str = typer.Argument(..., help="Owner (user) id"),
    include_archived: bool = typer.Option(False, "--all", help="Include archived topics"),
    limit: int = typer.Option(50, "--limit", help="Maximum topics to show"),
) -> None:
    """List a user's topics, pinned first."""
    topics = _run(lambda: _store().list_topics(owner_id, limit=limit, include_archived=include_archived))
    if not topics:
        rprint("[yellow]No topics yet.[/yellow] Run: smart-topics topics rebuild " + owner_id)
        return

    table = Table(title=f"Topics for {owner_id} ({len(topics)})", show_header=True)
    table.add_column("", width=2)
    table.add_column("Title", style="cyan")
    table.add_column("Members", justify="right", style="green")
    table.add_column("Last ingested", style="dim")
    table.add_column("Id", style="dim")
    for topic in topics:
        flag = "📌" if topic.pinned else ("🗄" if topic.archived else "")
        ingested = f"{topic.last_ingested_at:%Y-%m-%d}" if topic.last_ingested_at else "-"
        table.add_row(flag, topic.title or "-", str(topic.member_count), ingested, topic.id)
    console.print(table)


@topics_app.command("pin")
def topics_pin(
    owner_id: str = typer.Argument(..., help="Owner (user) id"),
    topic_id: str = typer.Argument(..., help="Topic id"),
    unpin: bool = typer.Option(False, "--unpin", help="Remove the pin"),
) -> None:
    """Pin a topic so it is matched first and never auto-archived."""
    topic = _run(lambda: _store().set_pinned(owner_id, topic_id, not unpin))
    rprint(f"[green]✓[/green] {'Unpinned' if unpin else 'Pinned'}: {topic.title or topic.id}")


@topics_app.command("archive")
def topics_archive(
    owner_id: str = typer.Argument(..., help="Owner (user) id"),
    topic_id: str = typer.Argument(..., help="Topic id"),
    restore: bool = typer.Option(False, "--restore", help="Un-archive the topic"),
) -> None:
    """Archive a topic; archived topics are never matched by rebuilds."""
    topic = _run(lambda: _store().set_archived(owner_id, topic_id, not restore))
    rprint(f"[green]✓[/green] {'Restored' if restore else 'Archived'}: {topic.title or topic.id}")


def _curate(work: Callable[[Any], Awaitable[T]]) -> T:
    """Run ``work(curator)`` with a curator whose naming client is closed afterwards."""
    from smart_topics.topics.curation import TopicCurator

    async def runner() -> T:
        curator = TopicCurator.from_settings(_store())
        try:
            return await work(curator)
        finally:
            await curator.close()

    return _run(runner)


@topics_app.command("show")
def topics_show(
    owner_id: str = typer.Argument(..., help="Owner (user) id"),
    topic_id: str = typer.Argument(..., help="Topic id"),
    as_json: bool = typer.Option(False, "--json", help="Print the raw detail as JSON"),
) -> None:
    """Show a topic's members, timeline and events."""
    detail = _curate(lambda curator: curator.get_topic_detail(owner_id, topic_id))
    if as_json:
        console.print_json(json.dumps(detail.to_dict(), default=str))
        return

    topic = detail.topic
    rprint(f"[bold cyan]{topic.title or topic.id}[/bold cyan] [dim]({topic.member_count} members)[/dim]")
    if topic.keywords:
        rprint(f"  Keywords: {', '.join(topic.keywords)}")
    if topic.summary_markdown:
        rprint(f"\n{topic.summary_markdown}\n")

    table = Table(title="Members", show_header=True)
    table.add_column("Note", style="cyan")
    table.add_column("Score", justify="right", style="green")
    table.add_column("Source")
    table.add_column("Event time", style="dim")
    for member in detail.members:
        doc = detail.documents.get(member.document_id)
        state = member.source if not member.manual_state else f"{member.source}/{member.manual_state}"
        when = f"{member.event_time:%Y-%m-%d}" if member.event_time else "-"
        table.add_row((doc.title if doc else None) or member.document_id, f"{member.score:.3f}", state, when)
    console.print(table)

    if detail.events:
        events = Table(title="Timeline", show_header=True)
        events.add_column("Day", style="dim")
        events.add_column("Event", style="cyan")
        events.add_column("Notes", justify="right", style="green")
        for event in detail.events:
            events.add_row(f"{event.event_time:%Y-%m-%d}", event.title or "-", str(event.count))
        console.print(events)


@topics_app.command("members")
def topics_members(
    owner_id: str = typer.Argument(..., help="Owner (user) id"),
    topic_id: str = typer.Argument(..., help="Topic id"),
    action: str = typer.Argument(..., help="add, remove, confirm, exclude or set_time"),
    note_id: str = typer.Argument(..., help="Note id"),
    event_time: str | None = typer.Option(None, "--time", help="ISO-8601 event time for set_time"),
) -> None:
    """Curate one member of a topic."""
    from smart_topics.topics.curation import MEMBER_ACTIONS

    if action not in MEMBER_ACTIONS:
        rprint(f"[red]✗[/red] Unknown action: {action} (use {', '.join(MEMBER_ACTIONS)})")
        raise typer.Exit(code=2)

    _curate(lambda curator: curator.apply_member_action(owner_id, topic_id, action, note_id, event_time=event_time))
    rprint(f"[green]✓[/green] {action}: {note_id}")


@topics_app.command("merge")
def topics_merge(
    owner_id: str = typer.Argument(..., help="Owner (user) id"),
    target_id: str = typer.Argument(..., help="Topic that receives the members"),
    source_id: str = typer.Argument(..., help="Topic that is merged and deleted"),
) -> None:
    """Merge SOURCE into TARGET; SOURCE is deleted."""
    result = _curate(lambda curator: curator.merge_topics(owner_id, target_id, source_id))
    rprint(
        f"[green]✓[/green] Merged {result.merged} members into {result.topic.title or result.topic.id} "
        f"({result.topic.member_count} members)"
    )


@topics_app.command("report")
def topics_report(
    owner_id: str = typer.Argument(..., help="Owner (user) id"),
    topic_id: str = typer.Argument(..., help="Topic id"),
    full: bool = typer.Option(False, "--full", help="Also replace the title and keywords"),
) -> None:
    """Regenerate a topic's report with the naming provider."""
    topic = _curate(lambda curator: curator.regenerate_report(owner_id, topic_id, full=full))
    rprint(f"[green]✓[/green] Report updated: {topic.title or topic.id}")
    if topic.summary_markdown:
        rprint(f"\n{topic.summary_markdown}")


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
