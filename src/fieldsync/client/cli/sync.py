"""Transfer commands for the fieldsync CLI.

Commands:
- run-once: Run a single upload cycle
- watch: Run upload cycles periodically until interrupted
- download: Download remote files matching name prefixes
"""

from __future__ import annotations

import sys
import time
from pathlib import Path

import click

from fieldsync.client.api import APIError
from fieldsync.client.auth import StaticTokenProvider, TokenError
from fieldsync.client.cli.config import get_stats_file, load_context_config
from fieldsync.client.state import StatsStore
from fieldsync.client.sync import (
    BulkDownloader,
    FileUploaded,
    FileUploadFailed,
    QueueStore,
    TransferEvent,
    UploadEngine,
)
from fieldsync.core.config import AppConfig


def _build_engine(config: AppConfig) -> UploadEngine:
    engine = UploadEngine(
        config.upload,
        QueueStore(config.upload.queue_dir),
        StaticTokenProvider.from_env(config.auth_token),
        remote=config.remote,
        stats=StatsStore(get_stats_file()),
    )

    def on_event(event: TransferEvent) -> None:
        if isinstance(event, FileUploaded):
            click.echo(f"  ↑ {event.remote_path}")
        elif isinstance(event, FileUploadFailed):
            click.echo(f"  ✗ {event.remote_path}: {event.message}", err=True)

    engine.events.subscribe(on_event)
    return engine


@click.command("run-once")
@click.pass_context
def run_once(ctx: click.Context) -> None:
    """Run a single upload cycle over the pending queue."""
    config = load_context_config(ctx)
    engine = _build_engine(config)
    try:
        summary = engine.run_once()
    finally:
        engine.close()

    if summary is None:
        click.echo("Another upload cycle is already running")
        return
    if summary.pending_at_start == 0:
        click.echo("Nothing to upload")
        return

    click.echo(
        f"Uploaded {summary.uploaded}, failed {summary.failed}, skipped {summary.skipped}"
    )
    if summary.aborted:
        click.echo(f"Error: cycle aborted ({summary.aborted})", err=True)
        sys.exit(1)


@click.command()
@click.pass_context
def watch(ctx: click.Context) -> None:
    """Upload pending files periodically until interrupted (Ctrl+C)."""
    config = load_context_config(ctx)
    engine = _build_engine(config)
    engine.start()
    click.echo(
        f"Watching {config.upload.queue_dir} every {config.upload.poll_seconds:g}s. "
        "Press Ctrl+C to stop."
    )
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        click.echo("\nStopping...")
    finally:
        engine.close()


@click.command()
@click.argument("target", type=click.Path(file_okay=False, path_type=Path))
@click.option(
    "--prefix",
    "prefixes",
    multiple=True,
    help="Name prefix to download, in addition to the configured ones.",
)
@click.pass_context
def download(ctx: click.Context, target: Path, prefixes: tuple[str, ...]) -> None:
    """Download new or changed remote files into TARGET."""
    config = load_context_config(ctx)
    downloader = BulkDownloader(
        config.download,
        StaticTokenProvider.from_env(config.auth_token),
        remote=config.remote,
        stats=StatsStore(get_stats_file()),
    )
    try:
        summary = downloader.download_matching(target, prefixes)
    except (TokenError, APIError, ValueError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    finally:
        downloader.close()

    for path in summary.downloaded:
        click.echo(f"  ↓ {path.name}")
    click.echo(
        f"Downloaded {len(summary.downloaded)}, unchanged {summary.skipped_unchanged}, "
        f"failed {summary.failed}"
    )
