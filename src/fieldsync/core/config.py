"""Shared configuration classes for fieldsync.

This module defines configuration classes used by the upload engine,
the bulk downloader and the CLI. Every class can be built from the JSON
config document with ``from_dict``; missing keys take their defaults and
unknown keys are ignored.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

MIB = 1024 * 1024

DEFAULT_API_URL = "https://graph.microsoft.com/v1.0"

BACKOFF_STRATEGIES = ("linear", "exponential")


class ConfigError(ValueError):
    """Raised when a configuration value is invalid."""


def _known(cls: type, data: dict[str, Any]) -> dict[str, Any]:
    """Keep only the keys that are fields of a dataclass."""
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


@dataclass
class RemoteConfig:
    """Connection settings for the remote object store.

    Attributes:
        api_url: Root of the content API (e.g., "https://graph.microsoft.com/v1.0").
        timeout: Per-request timeout in seconds.
        session_timeout: Timeout for each chunk PUT of an upload session.
        verify_ssl: Whether to verify SSL certificates (default True).
    """

    api_url: str = DEFAULT_API_URL
    timeout: float = 120.0
    session_timeout: float = 300.0
    verify_ssl: bool = True

    def __post_init__(self) -> None:
        """Normalize API URL."""
        self.api_url = self.api_url.rstrip("/")
        if self.timeout <= 0 or self.session_timeout <= 0:
            raise ConfigError("timeouts must be positive")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RemoteConfig:
        return cls(**_known(cls, data))


@dataclass
class ContainerRef:
    """Locates a remote container (drive).

    Resolution order: explicit drive_id, then site_id + list_id
    (document library drive), then site_id alone (site default drive).
    """

    drive_id: str | None = None
    site_id: str | None = None
    list_id: str | None = None

    @property
    def is_configured(self) -> bool:
        return bool(self.drive_id or self.site_id)

    @property
    def key(self) -> str:
        """Cache key identifying this reference."""
        return f"{self.drive_id or ''}|{self.site_id or ''}|{self.list_id or ''}"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ContainerRef:
        return cls(**_known(cls, data or {}))


@dataclass
class UploadConfig:
    """Settings for the durable upload queue and its transfer cycles."""

    queue_dir: Path = field(default_factory=lambda: Path.home() / ".fieldsync" / "queue")
    remote_root: str = "FieldSync"
    container: ContainerRef = field(default_factory=ContainerRef)
    small_upload_threshold: int = 4 * MIB
    chunk_size: int = 5 * MIB
    max_workers: int = 4
    max_attempts: int = 5
    backoff_base: float = 2.0
    backoff_cap: float = 60.0
    backoff_strategy: str = "exponential"
    batch_size: int = 200
    poll_seconds: float = 30.0
    lock_timeout: float = 0.1

    def __post_init__(self) -> None:
        """Normalize paths and validate tunables."""
        self.queue_dir = Path(self.queue_dir).expanduser()
        self.remote_root = self.remote_root.strip("/")
        if self.chunk_size <= 0:
            raise ConfigError("chunk_size must be positive")
        if self.small_upload_threshold < 0:
            raise ConfigError("small_upload_threshold must not be negative")
        if self.max_workers < 1:
            raise ConfigError("max_workers must be at least 1")
        if self.max_attempts < 1:
            raise ConfigError("max_attempts must be at least 1")
        if self.batch_size < 1:
            raise ConfigError("batch_size must be at least 1")
        if self.poll_seconds <= 0:
            raise ConfigError("poll_seconds must be positive")
        if self.backoff_strategy not in BACKOFF_STRATEGIES:
            raise ConfigError(
                f"backoff_strategy must be one of {', '.join(BACKOFF_STRATEGIES)}"
            )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UploadConfig:
        values = _known(cls, data)
        values["container"] = ContainerRef.from_dict(data.get("container"))
        return cls(**values)


@dataclass
class DownloadConfig:
    """Settings for the bulk downloader."""

    container: ContainerRef = field(default_factory=ContainerRef)
    wanted_prefixes: list[str] = field(default_factory=list)
    name_suffix: str = ".json"
    max_workers: int = 8
    skip_unchanged: bool = True
    force_drive_search: bool = True
    index_filename: str = ".index.json"

    def __post_init__(self) -> None:
        if self.max_workers < 1:
            raise ConfigError("max_workers must be at least 1")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DownloadConfig:
        values = _known(cls, data)
        values["container"] = ContainerRef.from_dict(data.get("container"))
        values["wanted_prefixes"] = list(data.get("wanted_prefixes") or [])
        return cls(**values)


@dataclass
class AppConfig:
    """Complete fieldsync configuration."""

    remote: RemoteConfig = field(default_factory=RemoteConfig)
    upload: UploadConfig = field(default_factory=UploadConfig)
    download: DownloadConfig = field(default_factory=DownloadConfig)
    auth_token: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AppConfig:
        return cls(
            remote=RemoteConfig.from_dict(data.get("remote") or {}),
            upload=UploadConfig.from_dict(data.get("upload") or {}),
            download=DownloadConfig.from_dict(data.get("download") or {}),
            auth_token=data.get("auth_token"),
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dictionary."""
        upload = {f.name: getattr(self.upload, f.name) for f in fields(self.upload)}
        upload["queue_dir"] = str(self.upload.queue_dir)
        upload["container"] = vars(self.upload.container).copy()
        download = {f.name: getattr(self.download, f.name) for f in fields(self.download)}
        download["container"] = vars(self.download.container).copy()
        data: dict[str, Any] = {
            "remote": vars(self.remote).copy(),
            "upload": upload,
            "download": download,
        }
        if self.auth_token:
            data["auth_token"] = self.auth_token
        return data


def load_app_config(path: Path) -> AppConfig:
    """Load configuration from a JSON file.

    A missing file yields the defaults.

    Raises:
        ConfigError: If the file is not valid JSON or holds invalid values.
    """
    if not path.exists():
        return AppConfig()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Invalid config file {path}: expected an object")
    return AppConfig.from_dict(data)


def save_app_config(config: AppConfig, path: Path) -> None:
    """Write configuration to a JSON file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(config.to_dict(), indent=2), encoding="utf-8")
