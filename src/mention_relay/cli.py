"""Command-line interface for operating the mention relay."""

from __future__ import annotations

import asyncio
import atexit
import json
import sys
from typing import Any, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from . import build_ingestor
from .config import get_settings
from .db import ensure_schema, reset_database_state
from .directory import SqlResponderDirectory, register_clone
from .dispatcher import MentionDispatcher
from .errors import MentionRelayError
from .ingest import IngestResult, MentionIngestor
from .logging_setup import configure_logging
from .messages import SqlMessageStore
from .models import CloneVisibility, Mention
from .processor import ProcessingSummary, build_processor
from .store import MentionStore
from .utils import excerpt

# aiosqlite uses background threads that can block Python shutdown if not cleaned up.
atexit.register(reset_database_state)

console = Console()


def _run_async(coro: Any) -> Any:
    """Run an async coroutine and ensure database cleanup on exit.

    Without the reset, Python's shutdown sequence can hang waiting for
    orphaned aiosqlite threads.
    """
    try:
        return asyncio.run(coro)
    finally:
        reset_database_state()


def _run_command(coro: Any) -> Any:
    """Run ``coro`` and turn domain errors into a red message and exit code 1."""
    try:
        return _run_async(coro)
    except (MentionRelayError, ValueError) as exc:
        console.print(f"[red]{escape(str(exc))}[/]")
        raise typer.Exit(code=1) from exc


app = typer.Typer(help="Operate clone mentions: ingest messages and drain replies.", no_args_is_help=True)
clones_app = typer.Typer(help="Register and inspect clones")
channels_app = typer.Typer(help="Manage channels")
mentions_app = typer.Typer(help="Inspect mention records")
app.add_typer(clones_app, name="clones")
app.add_typer(channels_app, name="channels")
app.add_typer(mentions_app, name="mentions")


@app.callback()
def _app_callback() -> None:
    configure_logging(get_settings())


def _ingestor(dispatcher: Optional[MentionDispatcher] = None) -> MentionIngestor:
    return build_ingestor(on_mentioned=dispatcher.notify if dispatcher is not None else None)


def _print_ingest(result: IngestResult, *, verb: str) -> None:
    console.print(f"[green]✓ {verb} message {result.message.id}[/]")
    console.print(f"[dim]{escape(result.message.content)}[/]")
    for mention in result.mentions:
        console.print(f"  → mention {mention.id} of clone {mention.entity_id} ({mention.scope})")
    for failure in result.failures:
        detail = escape(f": {failure.detail}") if failure.detail else ""
        span = escape(failure.candidate.raw_span)
        console.print(f"  [yellow]unresolved {span} ({failure.reason.value}){detail}[/]")


def _print_summaries(summaries: list[ProcessingSummary]) -> None:
    if not summaries:
        console.print("[dim]No pending mentions.[/]")
        return
    table = Table(title="Processed mentions", show_lines=False)
    table.add_column("Clone")
    table.add_column("Responded")
    table.add_column("Errored")
    for summary in summaries:
        table.add_row(summary.entity_id, str(len(summary.responded)), str(len(summary.errored)))
    console.print(table)


@app.command("init-db")
def init_db() -> None:
    """Create database schema from SQLModel definitions."""
    settings = get_settings()
    with console.status("Creating database schema from models..."):
        _run_async(ensure_schema(settings))
    console.print("[green]✓ Database schema ready.[/]")


@clones_app.command("add")
def clones_add(
    name: str = typer.Argument(..., help="Mention handle; reduced to word characters"),
    workspace: Optional[str] = typer.Option(None, help="Owning workspace id"),
    global_: bool = typer.Option(False, "--global", help="Visible from every workspace"),
    prompt: str = typer.Option("", help="Base prompt sent with every request"),
) -> None:
    """Register a clone."""
    visibility = CloneVisibility.GLOBAL if global_ else CloneVisibility.PRIVATE
    clone = _run_command(
        register_clone(name, workspace_id=workspace, visibility=visibility, base_prompt=prompt)
    )
    console.print(f"[green]✓ Registered @{clone.name} ({clone.visibility}) id={clone.id}[/]")


@clones_app.command("list")
def clones_list(
    workspace: Optional[str] = typer.Option(None, help="Only clones reachable from this workspace"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON for machine parsing."),
) -> None:
    """List registered clones."""
    clones = _run_command(SqlResponderDirectory().list_clones(workspace))
    if json_output:
        payload = [
            {
                "id": clone.id,
                "name": clone.name,
                "workspace_id": clone.workspace_id,
                "visibility": clone.visibility,
            }
            for clone in clones
        ]
        json.dump(payload, sys.stdout, indent=2)
        sys.stdout.write("\n")
        return
    table = Table(title="Clones", show_lines=False)
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("Workspace")
    table.add_column("Visibility")
    for clone in clones:
        table.add_row(clone.id, escape(clone.name), escape(clone.workspace_id or ""), clone.visibility)
    console.print(table)


@channels_app.command("add")
def channels_add(
    workspace: str = typer.Argument(..., help="Workspace id"),
    name: str = typer.Argument(..., help="Channel name"),
) -> None:
    """Create a channel inside a workspace."""
    channel = _run_command(SqlMessageStore().create_channel(workspace, name))
    console.print(f"[green]✓ Created channel {escape(channel.name)} id={channel.id}[/]")


@app.command("post")
def post(
    channel: str = typer.Argument(..., help="Channel id"),
    author: str = typer.Argument(..., help="Author id"),
    content: str = typer.Argument(..., help="Message text"),
    parent: Optional[str] = typer.Option(None, help="Message id this one replies to"),
    process: bool = typer.Option(False, "--process", help="Drain the mentioned clones before exiting"),
) -> None:
    """Post a message and record its mentions."""

    async def _run() -> tuple[IngestResult, list[ProcessingSummary]]:
        if not process:
            return await _ingestor().post_message(channel, author, content, parent), []
        dispatcher = MentionDispatcher(build_processor())
        try:
            result = await _ingestor(dispatcher).post_message(channel, author, content, parent)
            await dispatcher.join()
            return result, dispatcher.pop_summaries()
        finally:
            await dispatcher.shutdown()

    result, summaries = _run_command(_run())
    _print_ingest(result, verb="Posted")
    if process:
        _print_summaries(summaries)


@app.command("edit")
def edit(
    message: str = typer.Argument(..., help="Message id"),
    content: str = typer.Argument(..., help="Replacement text"),
) -> None:
    """Replace a message's text and rebuild its mentions."""
    result = _run_command(_ingestor().edit_message(message, content))
    _print_ingest(result, verb="Edited")


@app.command("delete")
def delete(message: str = typer.Argument(..., help="Message id")) -> None:
    """Delete a message and its mentions."""
    _run_command(_ingestor().delete_message(message))
    console.print(f"[green]✓ Deleted message {message}[/]")


@mentions_app.command("list")
def mentions_list(
    clone: Optional[str] = typer.Option(None, help="Only mentions of this clone id"),
    limit: int = typer.Option(50, min=1, help="Maximum rows"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON for machine parsing."),
) -> None:
    """Show recent mentions, newest first."""
    rows: list[Mention] = _run_command(MentionStore().list_recent(entity_id=clone, limit=limit))
    if json_output:
        payload = [
            {
                "id": mention.id,
                "message_id": mention.message_id,
                "entity_id": mention.entity_id,
                "scope": mention.scope,
                "status": mention.status.value,
                "response_message_id": mention.response_message_id,
                "error": mention.error,
                "created_at": mention.created_at.isoformat(),
            }
            for mention in rows
        ]
        json.dump(payload, sys.stdout, indent=2)
        sys.stdout.write("\n")
        return
    table = Table(title="Mentions", show_lines=False)
    table.add_column("ID")
    table.add_column("Clone")
    table.add_column("Message")
    table.add_column("Scope")
    table.add_column("Status")
    table.add_column("Detail")
    for mention in rows:
        detail = mention.error or mention.response_message_id or ""
        table.add_row(
            mention.id,
            mention.entity_id,
            mention.message_id,
            mention.scope,
            mention.status.value,
            escape(excerpt(detail, limit=60)),
        )
    console.print(table)


@app.command("process")
def process(clone: str = typer.Argument(..., help="Clone id")) -> None:
    """Process every pending mention of one clone, oldest first."""
    summary = _run_command(build_processor().process_all_pending(clone))
    _print_summaries([summary] if summary.total else [])


@app.command("process-all")
def process_all() -> None:
    """Drain pending mentions of every clone, clones concurrently."""

    async def _run() -> list[ProcessingSummary]:
        dispatcher = MentionDispatcher(build_processor())
        try:
            await dispatcher.drain_pending()
            await dispatcher.join()
            return dispatcher.pop_summaries()
        finally:
            await dispatcher.shutdown()

    _print_summaries(_run_command(_run()))


@app.command("worker")
def worker(
    interval: Optional[float] = typer.Option(None, help="Seconds between sweeps (default from settings)"),
    once: bool = typer.Option(False, "--once", help="Run a single sweep and exit"),
) -> None:
    """Periodically sweep for pending mentions and drain them."""
    settings = get_settings()
    period = interval if interval is not None else settings.dispatch_poll_interval_seconds

    async def _loop() -> None:
        dispatcher = MentionDispatcher(build_processor())
        try:
            while True:
                notified = await dispatcher.drain_pending()
                await dispatcher.join()
                swept = dispatcher.pop_summaries()
                if settings.log_rich_enabled:
                    for summary in swept:
                        console.print(
                            Panel(
                                f"responded={len(summary.responded)} errored={len(summary.errored)}",
                                title=f"clone {summary.entity_id}",
                                border_style="green" if not summary.errored else "yellow",
                            )
                        )
                elif notified:
                    console.print(f"[dim]swept {len(notified)} clone(s)[/]")
                if once:
                    return
                await asyncio.sleep(period)
        finally:
            await dispatcher.shutdown()

    console.print(f"[cyan]Mention worker started (interval {period:g}s)[/]")
    try:
        _run_command(_loop())
    except KeyboardInterrupt:
        console.print("[yellow]Worker stopped.[/]")
