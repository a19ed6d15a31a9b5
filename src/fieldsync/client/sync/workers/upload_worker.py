"""Upload worker for queued files.

This module provides:
- UploadWorker: Uploads one queue item with bounded retries and records
  the outcome in the queue store, the counters and the event bus
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

from fieldsync.client.sync.events import CountersChanged, FileUploaded, FileUploadFailed
from fieldsync.client.sync.retry import classify_error, retry_with_backoff
from fieldsync.client.sync.types import QueueItem, TransferOutcome
from fieldsync.client.sync.workers.transfers import FileUploader, join_remote
from fieldsync.core.types import ErrorKind, TransferCancelled

if TYPE_CHECKING:
    from fieldsync.client.state import TransferCounters
    from fieldsync.client.sync.events import EventBus
    from fieldsync.client.sync.queue import QueueStore
    from fieldsync.core.config import UploadConfig

logger = logging.getLogger(__name__)


class UploadWorker:
    """Processes queue items one at a time; safe to share between threads.

    Outcome handling by error kind:
    - success: moved to sent, uploaded counter incremented
    - TRANSIENT after the last attempt, FATAL: moved to error with a sidecar
    - AUTH: left in pending and ``auth_failed`` is set so the remaining
      items of the cycle are not attempted
    - LOCAL_IO, CANCELLED: left in pending

    Usage:
        worker = UploadWorker(uploader, store, counters, bus, config)
        outcome = worker.process(item, drive_id, cancel)
    """

    def __init__(
        self,
        uploader: FileUploader,
        store: QueueStore,
        counters: TransferCounters,
        bus: EventBus,
        config: UploadConfig,
        auth_failed: threading.Event | None = None,
    ) -> None:
        """Initialize the worker.

        Args:
            uploader: Performs the actual transfer.
            store: Queue store the items come from.
            counters: Shared counters updated on each outcome.
            bus: Event bus for per-file events.
            config: Remote root and retry settings.
            auth_failed: Event set when the remote store rejects the token.
        """
        self._uploader = uploader
        self._store = store
        self._counters = counters
        self._bus = bus
        self._config = config
        self.auth_failed = auth_failed or threading.Event()

    def remote_folder_for(self, item: QueueItem) -> str:
        """Remote folder an item is uploaded into."""
        return join_remote(self._config.remote_root, item.remote_subfolder)

    def process(
        self,
        item: QueueItem,
        container_id: str,
        cancel: threading.Event | None = None,
    ) -> TransferOutcome:
        """Upload one item and record where it ended up.

        Never raises; the returned outcome describes what happened.
        """
        remote_folder = self.remote_folder_for(item)
        remote_path = "/" + join_remote(remote_folder, item.name)

        if self.auth_failed.is_set():
            return TransferOutcome.failed(
                item,
                TransferCancelled("Skipped after authentication failure"),
                ErrorKind.AUTH,
                remote_path=remote_path,
            )

        attempts = 0

        def attempt() -> str:
            nonlocal attempts
            attempts += 1
            return self._uploader.upload(item, container_id, remote_folder, cancel=cancel)

        try:
            uploaded_path = retry_with_backoff(
                attempt,
                max_attempts=self._config.max_attempts,
                backoff_base=self._config.backoff_base,
                backoff_cap=self._config.backoff_cap,
                strategy=self._config.backoff_strategy,
                cancel=cancel,
            )
        except Exception as e:
            return self._on_failure(item, e, attempts, remote_path)

        return self._on_success(item, uploaded_path, attempts)

    def _on_success(self, item: QueueItem, remote_path: str, attempts: int) -> TransferOutcome:
        logger.info("Uploaded %s -> %s (%d bytes)", item.relative_path, remote_path, item.size)
        if self._store.mark_sent(item):
            self._bus.emit(CountersChanged.from_snapshot(self._counters.record_uploaded()))
        else:
            logger.warning("Uploaded %s but could not move it to sent", item.relative_path)
        self._bus.emit(FileUploaded(item.local_path, remote_path, item.size))
        return TransferOutcome.succeeded(item, remote_path, attempts)

    def _on_failure(
        self,
        item: QueueItem,
        error: Exception,
        attempts: int,
        remote_path: str,
    ) -> TransferOutcome:
        kind = classify_error(error)
        outcome = TransferOutcome.failed(item, error, kind, attempts, remote_path)

        if kind is ErrorKind.CANCELLED:
            logger.info("Upload of %s cancelled, left in pending", item.relative_path)
            return outcome
        if kind is ErrorKind.AUTH:
            logger.warning("Authentication rejected while uploading %s: %s", item.relative_path, error)
            self.auth_failed.set()
            return outcome
        if kind is ErrorKind.LOCAL_IO:
            logger.warning("Skipping %s: %s", item.relative_path, error)
            return outcome

        logger.error(
            "Upload of %s failed after %d attempt(s): %s", item.relative_path, attempts, error
        )
        if self._store.mark_error(item, error, kind):
            self._bus.emit(CountersChanged.from_snapshot(self._counters.record_failed()))
        self._bus.emit(FileUploadFailed(item.local_path, remote_path, kind, str(error)))
        return outcome
