"""CLI interface for whatisaid."""

from __future__ import annotations

import json
import logging
import shutil
from datetime import datetime, timezone
from pathlib import Path

import click

from . import __version__
from .config import DATA_DIR, MIN_PBKDF2_ITERATIONS, PBKDF2_ITERATIONS
from .crypto import CryptoService
from .errors import WhatISaidError
from .storage import ORDERABLE_COLUMNS, ConversationStore, open_store

password_option = click.option(
    "--password",
    envvar="WHATISAID_PASSWORD",
    prompt=True,
    hide_input=True,
    help="Store password (or set WHATISAID_PASSWORD)",
)


@click.group()
@click.version_option(version=__version__, prog_name="whatisaid")
@click.option(
    "--data-dir",
    envvar="WHATISAID_DATA_DIR",
    type=click.Path(file_okay=False, path_type=Path),
    default=DATA_DIR,
    show_default=True,
    help="Where the encrypted database lives",
)
@click.option(
    "--kdf-iterations",
    envvar="WHATISAID_KDF_ITERATIONS",
    type=click.IntRange(min=MIN_PBKDF2_ITERATIONS),
    default=PBKDF2_ITERATIONS,
    help="PBKDF2 iterations used when creating a new store",
)
@click.option("-v", "--verbose", is_flag=True, help="Log debug output to stderr")
@click.pass_context
def cli(ctx: click.Context, data_dir: Path, kdf_iterations: int, verbose: bool):
    """whatisaid: keep your chat history in one encrypted place.

    Import exports from ChatGPT, Claude, Gemini, Qwen and WhatsApp into a
    local SQLite database where names, authors and message text are
    encrypted with a key derived from your password.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = {
        "db_path": data_dir / "conversations.db",
        "data_dir": data_dir,
        "iterations": kdf_iterations,
    }


def _open(ctx: click.Context, password: str) -> ConversationStore:
    try:
        return open_store(
            password,
            ctx.obj["db_path"],
            CryptoService(iterations=ctx.obj["iterations"]),
        )
    except WhatISaidError as exc:
        raise click.ClickException(str(exc)) from exc


def _format_ts(ts: int) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M")


@cli.command("import")
@click.argument(
    "files", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False, path_type=Path)
)
@password_option
@click.option("--json", "as_json", is_flag=True, help="Print the summary as JSON")
@click.pass_context
def import_cmd(ctx: click.Context, files: tuple[Path, ...], password: str, as_json: bool):
    """Import one or more chat export files.

    The format of each file is detected automatically. A file that cannot be
    imported is reported and the others continue.

    Example:
        whatisaid import ~/Downloads/conversations.json chat.txt
    """
    from .importer import FileImporter

    store = _open(ctx, password)
    try:
        summary = FileImporter(store).import_files(files)
    except WhatISaidError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        store.close()

    if as_json:
        click.echo(json.dumps(summary.to_dict(), indent=2))
    else:
        for result in summary.files:
            name = Path(result.path).name
            if result.ok:
                click.echo(
                    f"  {click.style('OK', fg='green')}    {name} ({result.source_format}): "
                    f"{result.conversations} conversations, {result.messages} messages"
                )
                for warning in result.warnings:
                    click.echo(f"        {warning}")
            else:
                click.echo(f"  {click.style('FAIL', fg='red')}  {name}: {result.error}")

        click.echo()
        click.echo(click.style("Import complete!", fg="green", bold=True))
        click.echo(
            f"  Files:    {summary.successful_imports}/{summary.total_files_processed} imported"
        )
        click.echo(
            f"  Imported: {summary.total_conversations} conversations "
            f"({summary.total_messages} messages)"
        )
        click.echo(f"  Time:     {summary.processing_time_ms} ms")

    if summary.failed_imports:
        ctx.exit(1)


@cli.command("list")
@password_option
@click.option("--limit", type=click.IntRange(min=0), default=50, show_default=True)
@click.option("--offset", type=click.IntRange(min=0), default=0, show_default=True)
@click.option("--sort", type=click.Choice(ORDERABLE_COLUMNS), default="end_time", show_default=True)
@click.option("--ascending", is_flag=True, help="Oldest first")
@click.pass_context
def list_cmd(ctx: click.Context, password: str, limit: int, offset: int, sort: str, ascending: bool):
    """List imported conversations, most recent first."""
    store = _open(ctx, password)
    try:
        conversations = store.get_conversations(
            order_by=sort, limit=limit, offset=offset, descending=not ascending
        )
        total = store.get_conversation_count()
    except WhatISaidError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        store.close()

    if not conversations:
        click.echo("No conversations found.")
        return

    for conv in conversations:
        click.echo(
            f"{conv.id}  {_format_ts(conv.end_time)}  [{conv.source_app}]  {conv.display_name}"
        )
    click.echo(f"\nShowing {offset + 1}-{offset + len(conversations)} of {total}")


@cli.command()
@click.argument("conversation_id")
@password_option
@click.pass_context
def show(ctx: click.Context, conversation_id: str, password: str):
    """Print every message of one conversation."""
    store = _open(ctx, password)
    try:
        conv = store.get_conversation(conversation_id)
        messages = store.get_messages_for_conversation(conversation_id) if conv else []
    except WhatISaidError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        store.close()

    if conv is None:
        raise click.ClickException(f"No conversation with id {conversation_id}")

    click.echo(click.style(conv.display_name, bold=True))
    click.echo(
        f"{conv.source_app} · {_format_ts(conv.start_time)} → {_format_ts(conv.end_time)}"
        + (f" · tags: {', '.join(conv.tags)}" if conv.tags else "")
    )
    for msg in messages:
        click.echo()
        header = f"[{_format_ts(msg.timestamp_utc)}] {msg.author}"
        if msg.content_type == "code":
            header += " (code)"
        click.echo(click.style(header, fg="cyan"))
        click.echo(msg.content)


@cli.command()
@click.pass_context
def stats(ctx: click.Context):
    """Show statistics about your imported conversations."""
    db_path: Path = ctx.obj["db_path"]
    if not db_path.exists():
        click.echo("No data found. Import a chat export first:")
        click.echo("  whatisaid import ~/Downloads/conversations.json")
        return

    # Counts and dates are stored in the clear, so no password is needed
    store = ConversationStore(db_path, CryptoService(iterations=ctx.obj["iterations"]))
    try:
        store.initialize_database()
        s = store.get_stats()
    except WhatISaidError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        store.close()

    click.echo()
    click.echo(click.style("Import Statistics", bold=True))
    click.echo(f"  Conversations:  {s['total_conversations']:,}")
    click.echo(f"  Messages:       {s['total_messages']:,}")
    click.echo(f"  Avg msgs/conv:  {s['avg_messages_per_conversation']}")
    click.echo(f"  Imports run:    {s['imports']:,}")
    if s["date_range_start"]:
        click.echo(f"  Date range:     {s['date_range_start']} → {s['date_range_end']}")
    if s["sources"]:
        click.echo("  Sources:")
        for src in s["sources"]:
            click.echo(f"    {src['source_app']}: {src['count']:,}")

    db_size = db_path.stat().st_size
    click.echo(f"  Storage:        {db_size / (1024 * 1024):.1f} MB")
    click.echo(f"  Location:       {ctx.obj['data_dir']}")
    click.echo()


@cli.command()
def formats():
    """List the export formats that can be imported."""
    from .registry import ParserRegistry

    registry = ParserRegistry()
    for name in registry.available_formats():
        parser = registry.get(name)
        click.echo(f"  {name:<10} {parser.source_app}")


@cli.command()
@click.confirmation_option(prompt="This will delete all imported data. Are you sure?")
@click.pass_context
def reset(ctx: click.Context):
    """Delete all imported data and start fresh."""
    data_dir: Path = ctx.obj["data_dir"]
    if data_dir.exists():
        shutil.rmtree(data_dir)
        click.echo(f"Deleted {data_dir}")
    else:
        click.echo("No data to delete.")
