"""Configuration utilities for the fieldsync CLI.

This module provides shared configuration functions used across CLI commands.
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

import click

from fieldsync.core.config import AppConfig, ConfigError, load_app_config, save_app_config

HOME_ENV_VAR = "FIELDSYNC_HOME"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def get_config_dir() -> Path:
    """Get the configuration directory for fieldsync.

    Returns:
        Path from FIELDSYNC_HOME, or ~/.fieldsync.
    """
    override = os.environ.get(HOME_ENV_VAR)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".fieldsync"


def get_config_file() -> Path:
    """Get the path to the config file."""
    return get_config_dir() / "config.json"


def get_stats_file() -> Path:
    """Get the path to the cumulative statistics file."""
    return get_config_dir() / "stats.json"


def load_config(path: Path | None = None) -> AppConfig:
    """Load configuration from the config file (defaults if absent)."""
    return load_app_config(path or get_config_file())


def save_config(config: AppConfig, path: Path | None = None) -> None:
    """Save configuration to the config file."""
    save_app_config(config, path or get_config_file())


def load_context_config(ctx: click.Context) -> AppConfig:
    """Load the configuration selected by the global --config option.

    Exits with status 1 if the file is invalid.
    """
    path = (ctx.obj or {}).get("config_path")
    try:
        return load_config(path)
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


def setup_logging(verbose: bool = False, log_path: Path | None = None) -> None:
    """Configure logging to output to stdout and, optionally, a file.

    Args:
        verbose: Log at DEBUG instead of INFO.
        log_path: Optional path to a log file.
    """
    formatter = logging.Formatter(LOG_FORMAT)

    # Root logger for fieldsync
    root_logger = logging.getLogger("fieldsync")
    root_logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()

    # Stdout handler
    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(formatter)
    root_logger.addHandler(stdout_handler)

    # File handler
    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)
