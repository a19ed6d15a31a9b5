"""Durable transfer queue and the machinery draining it.

Architecture:
    QueueStore → UploadEngine → BoundedWorkerPool → UploadWorker → GraphClient

Components:
- **QueueStore**: pending/sent/error directories; a file's directory is its state
- **UploadEngine**: single-flight cycles, run on demand or by a periodic scheduler
- **Workers**: bounded fan-out, one item per call, retries with backoff
- **BulkDownloader**: prefix query/search, change index, concurrent downloads
- **EventBus**: status, per-file and counter events for observers

All public symbols are re-exported here.
"""

from fieldsync.client.sync.download import BulkDownloader, build_prefix_filter, merge_prefixes
from fieldsync.client.sync.engine import UploadEngine
from fieldsync.client.sync.events import (
    CountersChanged,
    CycleCompleted,
    DownloadCompleted,
    DownloadProgress,
    EventBus,
    FileDownloaded,
    FileUploaded,
    FileUploadFailed,
    StatusMessage,
    TransferEvent,
)
from fieldsync.client.sync.queue import QueueStore
from fieldsync.client.sync.retry import (
    DEFAULT_BACKOFF_BASE,
    DEFAULT_BACKOFF_CAP,
    DEFAULT_MAX_ATTEMPTS,
    classify_error,
    compute_backoff,
    is_transient,
    retry_with_backoff,
)
from fieldsync.client.sync.types import (
    CycleState,
    CycleSummary,
    DownloadSummary,
    ErrorKind,
    ProgressCallback,
    QueueItem,
    TransferCancelled,
    TransferOutcome,
)
from fieldsync.client.sync.workers import BoundedWorkerPool, FileUploader, UploadWorker

__all__ = [
    # Retry functions and constants
    "DEFAULT_BACKOFF_BASE",
    "DEFAULT_BACKOFF_CAP",
    "DEFAULT_MAX_ATTEMPTS",
    "classify_error",
    "compute_backoff",
    "is_transient",
    "retry_with_backoff",
    # Types and dataclasses
    "CycleState",
    "CycleSummary",
    "DownloadSummary",
    "ErrorKind",
    "ProgressCallback",
    "QueueItem",
    "TransferCancelled",
    "TransferOutcome",
    # Events
    "CountersChanged",
    "CycleCompleted",
    "DownloadCompleted",
    "DownloadProgress",
    "EventBus",
    "FileDownloaded",
    "FileUploaded",
    "FileUploadFailed",
    "StatusMessage",
    "TransferEvent",
    # Queue, engine and downloader
    "BulkDownloader",
    "QueueStore",
    "UploadEngine",
    "build_prefix_filter",
    "merge_prefixes",
    # Workers
    "BoundedWorkerPool",
    "FileUploader",
    "UploadWorker",
]
