"""Queue commands for the fieldsync CLI.

Commands:
- enqueue: Copy files into the pending area
- status: Show queue counts and cumulative statistics
- requeue-errors: Move failed items back to pending
"""

from __future__ import annotations

from pathlib import Path

import click

from fieldsync.client.cli.config import get_stats_file, load_context_config
from fieldsync.client.state import StatsStore
from fieldsync.client.sync.queue import QueueStore


@click.command()
@click.argument(
    "files",
    nargs=-1,
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
@click.pass_context
def enqueue(ctx: click.Context, files: tuple[Path, ...]) -> None:
    """Queue FILES for upload.

    Each file is copied to pending/<parent folder>/<name>. Files already
    pending or already sent are skipped.
    """
    config = load_context_config(ctx)
    store = QueueStore(config.upload.queue_dir)

    queued = 0
    for path in files:
        if store.enqueue(path):
            queued += 1
            click.echo(f"  + {path.parent.name}/{path.name}")
        else:
            click.echo(f"  = {path.parent.name}/{path.name} (skipped)")
    click.echo(f"{queued} file(s) queued")


@click.command()
@click.option("--errors", "show_errors", is_flag=True, help="List failed items with their reason.")
@click.pass_context
def status(ctx: click.Context, show_errors: bool) -> None:
    """Show queue counts and cumulative statistics."""
    config = load_context_config(ctx)
    store = QueueStore(config.upload.queue_dir)
    stats = StatsStore(get_stats_file()).load()

    click.echo(f"Queue: {store.root}")
    click.echo(f"  Pending: {store.pending_count()}")
    click.echo(f"  Sent:    {store.sent_count()}")
    click.echo(f"  Errors:  {store.error_count()}")
    click.echo(f"Total uploaded:   {stats.uploaded}")
    click.echo(f"Total downloaded: {stats.downloaded}")

    if show_errors:
        for item in store.list_errors():
            detail = store.read_error(item) or {}
            reason = detail.get("message") or "unknown reason"
            kind = detail.get("kind")
            click.echo(f"  ✗ {item.relative_path}: {reason}" + (f" [{kind}]" if kind else ""))


@click.command("requeue-errors")
@click.pass_context
def requeue_errors(ctx: click.Context) -> None:
    """Move every failed item back to pending."""
    config = load_context_config(ctx)
    store = QueueStore(config.upload.queue_dir)
    moved = store.requeue_errors()
    click.echo(f"{moved} item(s) requeued")
