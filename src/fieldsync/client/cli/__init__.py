"""Command-line interface for fieldsync.

This module provides the main CLI entry point and assembles all commands.

Commands:
- enqueue: Queue files for upload
- status: Show queue counts and cumulative statistics
- requeue-errors: Move failed items back to pending
- run-once: Run a single upload cycle
- watch: Run upload cycles periodically
- download: Download remote files matching name prefixes
"""

from __future__ import annotations

from pathlib import Path

import click

from fieldsync.client.cli.config import (
    get_config_dir,
    get_config_file,
    get_stats_file,
    load_config,
    save_config,
    setup_logging,
)
from fieldsync.client.cli.queue import enqueue, requeue_errors, status
from fieldsync.client.cli.sync import download, run_once, watch


@click.group()
@click.version_option(package_name="fieldsync")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Config file (default: ~/.fieldsync/config.json).",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None, verbose: bool) -> None:
    """FieldSync - Durable transfer queue for client-visit files."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    setup_logging(verbose, get_config_dir() / "fieldsync.log")


# Queue commands
cli.add_command(enqueue)
cli.add_command(status)
cli.add_command(requeue_errors)

# Transfer commands
cli.add_command(run_once)
cli.add_command(watch)
cli.add_command(download)


def main() -> None:
    """Entry point for the CLI."""
    cli()


__all__ = [
    # Main entry points
    "cli",
    "main",
    # Config utilities
    "get_config_dir",
    "get_config_file",
    "get_stats_file",
    "load_config",
    "save_config",
    "setup_logging",
]
