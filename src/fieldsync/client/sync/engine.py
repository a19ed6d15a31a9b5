"""Upload engine driving transfer cycles.

This module provides:
- UploadEngine: Single-flight, periodically scheduled upload cycles over
  the durable queue

One cycle goes through the states
IDLE -> LOCKED -> AUTHENTICATING -> RESOLVING_TARGET -> LISTING -> TRANSFERRING -> IDLE.
Failures resolving shared state (token, container, root folder) end the
cycle with ``CycleSummary.aborted`` set; the next tick tries again.
Failures of a single item never end the cycle.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from fieldsync.client.api import GraphClient
from fieldsync.client.state import CounterSnapshot, TransferCounters
from fieldsync.client.sync.events import CountersChanged, CycleCompleted, EventBus
from fieldsync.client.sync.retry import classify_error
from fieldsync.client.sync.types import CycleState, CycleSummary, QueueItem, TransferOutcome
from fieldsync.client.sync.workers import BoundedWorkerPool, FileUploader, UploadWorker
from fieldsync.core.config import RemoteConfig
from fieldsync.core.types import ErrorKind

if TYPE_CHECKING:
    from pathlib import Path

    from fieldsync.client.auth import TokenProvider
    from fieldsync.client.state import StatsStore
    from fieldsync.client.sync.queue import QueueStore
    from fieldsync.core.config import UploadConfig

logger = logging.getLogger(__name__)

JOB_ID = "upload_cycle"


class UploadEngine:
    """Moves queued files to the remote store, one cycle at a time.

    At most one cycle runs at any moment: a call to ``run_once`` while
    another cycle holds the lock returns None without doing anything.

    Usage:
        engine = UploadEngine(config.upload, store, StaticTokenProvider(token))
        engine.events.subscribe(print)
        summary = engine.run_once()

        engine.start()   # periodic cycles every poll_seconds
        ...
        engine.stop()
    """

    def __init__(
        self,
        config: UploadConfig,
        store: QueueStore,
        token_provider: TokenProvider,
        client: GraphClient | None = None,
        remote: RemoteConfig | None = None,
        bus: EventBus | None = None,
        counters: TransferCounters | None = None,
        stats: StatsStore | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            config: Upload settings.
            store: Durable queue to drain.
            token_provider: Source of bearer tokens, asked once per cycle.
            client: Remote client; one is created from ``remote`` if omitted.
            remote: Connection settings used when ``client`` is omitted.
            bus: Event bus for observers.
            counters: Shared counters.
            stats: Optional persisted totals, updated after each cycle.
        """
        self._config = config
        self._store = store
        self._token_provider = token_provider
        self._owns_client = client is None
        self._client = client or GraphClient(remote or RemoteConfig())
        self._bus = bus or EventBus()
        self._counters = counters or TransferCounters()
        self._stats = stats
        self._uploader = FileUploader(
            self._client,
            small_upload_threshold=config.small_upload_threshold,
            chunk_size=config.chunk_size,
        )
        self._pool = BoundedWorkerPool(config.max_workers, name="upload")

        self._lock = threading.Lock()
        self._state = CycleState.IDLE
        self._cycle_cancel: threading.Event | None = None
        self._scheduler: BackgroundScheduler | None = None
        self.last_run: datetime | None = None

    @property
    def state(self) -> CycleState:
        return self._state

    @property
    def counters(self) -> TransferCounters:
        return self._counters

    @property
    def events(self) -> EventBus:
        return self._bus

    @property
    def pool(self) -> BoundedWorkerPool:
        return self._pool

    @property
    def store(self) -> QueueStore:
        return self._store

    @property
    def is_running(self) -> bool:
        """True while the periodic scheduler is active."""
        return self._scheduler is not None

    # === Producer helpers ===

    def enqueue(self, source: Path) -> bool:
        """Queue a file for upload (see QueueStore.enqueue)."""
        return self._store.enqueue(source)

    def requeue_errors(self) -> int:
        """Move every errored item back to pending."""
        return self._store.requeue_errors()

    # === Cycle ===

    def run_once(self, cancel: threading.Event | None = None) -> CycleSummary | None:
        """Run one upload cycle unless another one is in progress.

        Args:
            cancel: Optional external cancellation event. ``cancel()`` and
                ``stop()`` set it too.

        Returns:
            The cycle summary, or None if another cycle held the lock.
        """
        if not self._lock.acquire(timeout=self._config.lock_timeout):
            logger.debug("Upload cycle already in progress, skipping")
            return None

        cancel = cancel or threading.Event()
        self._cycle_cancel = cancel
        try:
            return self._run_cycle(cancel)
        finally:
            self._cycle_cancel = None
            self._state = CycleState.IDLE
            self._lock.release()

    def cancel(self) -> None:
        """Ask the running cycle, if any, to stop as soon as possible."""
        event = self._cycle_cancel
        if event is not None:
            logger.info("Cancelling upload cycle")
            event.set()

    def _run_cycle(self, cancel: threading.Event) -> CycleSummary:
        summary = CycleSummary(started_at=datetime.now(timezone.utc))
        self._state = CycleState.LOCKED

        snapshot = self._refresh_counters()
        summary.pending_at_start = snapshot.pending
        if snapshot.pending == 0:
            logger.debug("Nothing pending")
            return self._finish(summary)

        try:
            self._state = CycleState.AUTHENTICATING
            self._client.set_token(self._token_provider.get_token())

            self._state = CycleState.RESOLVING_TARGET
            container_id = self._client.resolve_container_id(self._config.container)
            self._client.ensure_folder(container_id, self._config.remote_root, cancel=cancel)
        except Exception as e:
            kind = classify_error(e)
            if kind is ErrorKind.CANCELLED:
                summary.cancelled = True
            else:
                summary.aborted = f"{kind.value}: {e}"
                logger.warning("Upload cycle aborted (%s): %s", kind.value, e)
            return self._finish(summary)

        self._state = CycleState.LISTING
        items = self._store.list_pending(self._config.batch_size)

        self._state = CycleState.TRANSFERRING
        self._bus.status(f"Uploading {len(items)} of {snapshot.pending} pending file(s)")
        worker = UploadWorker(self._uploader, self._store, self._counters, self._bus, self._config)

        def process(item: QueueItem) -> TransferOutcome:
            return worker.process(item, container_id, cancel)

        outcomes = self._pool.run(items, process, cancel=cancel)

        summary.attempted = sum(1 for o in outcomes if o.attempts > 0)
        summary.uploaded = sum(1 for o in outcomes if o.success)
        summary.failed = sum(1 for o in outcomes if not o.success and not o.retained)
        summary.skipped = len(items) - summary.uploaded - summary.failed
        summary.cancelled = cancel.is_set()
        if worker.auth_failed.is_set():
            summary.aborted = "auth: token rejected by the remote store"

        self.last_run = datetime.now(timezone.utc)
        if self._stats is not None and summary.uploaded:
            self._stats.add(uploaded=summary.uploaded)
        return self._finish(summary)

    def _refresh_counters(self) -> CounterSnapshot:
        snapshot = self._counters.refresh(self._store.pending_count(), self._store.error_count())
        self._bus.emit(CountersChanged.from_snapshot(snapshot))
        return snapshot

    def _finish(self, summary: CycleSummary) -> CycleSummary:
        summary.finished_at = datetime.now(timezone.utc)
        if summary.pending_at_start:
            logger.info(
                "Upload cycle finished in %.1fs: %d uploaded, %d failed, %d skipped%s",
                summary.duration,
                summary.uploaded,
                summary.failed,
                summary.skipped,
                " (cancelled)" if summary.cancelled else "",
            )
        self._bus.emit(CycleCompleted(summary))
        return summary

    # === Scheduling ===

    def _scheduled_cycle(self) -> None:
        """Job function for the periodic scheduler."""
        try:
            self.run_once()
        except Exception:
            logger.exception("Error during scheduled upload cycle")

    def start(self) -> None:
        """Run a cycle now and then every ``poll_seconds``."""
        if self._scheduler is not None:
            return  # Already running

        self._scheduler = BackgroundScheduler()
        self._scheduler.add_job(
            self._scheduled_cycle,
            trigger=IntervalTrigger(seconds=self._config.poll_seconds),
            id=JOB_ID,
            name="Upload cycle",
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(timezone.utc),
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info("Upload scheduler started (every %ss)", self._config.poll_seconds)

    def stop(self, wait: bool = True) -> None:
        """Cancel the running cycle and stop the scheduler."""
        self.cancel()
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=wait)
            self._scheduler = None
            logger.info("Upload scheduler stopped")

    def close(self) -> None:
        """Stop scheduling and release the client if the engine created it."""
        self.stop()
        if self._owns_client:
            self._client.close()
