"""Core module - Shared configuration."""

from fieldsync.core.config import (
    DEFAULT_API_URL,
    MIB,
    AppConfig,
    ConfigError,
    ContainerRef,
    DownloadConfig,
    RemoteConfig,
    UploadConfig,
    load_app_config,
    save_app_config,
)

__all__ = [
    "DEFAULT_API_URL",
    "MIB",
    "AppConfig",
    "ConfigError",
    "ContainerRef",
    "DownloadConfig",
    "RemoteConfig",
    "UploadConfig",
    "load_app_config",
    "save_app_config",
]
