"""Tests for the worker pool, file uploader and upload worker."""

from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import IO

import pytest

from fieldsync.client.api import BadRequestError, ServerError
from fieldsync.client.state import TransferCounters
from fieldsync.client.sync.events import EventBus, FileUploaded, FileUploadFailed, TransferEvent
from fieldsync.client.sync.queue import QueueStore
from fieldsync.client.sync.types import QueueItem
from fieldsync.client.sync.workers import BoundedWorkerPool, FileUploader, UploadWorker, join_remote
from fieldsync.core.config import UploadConfig
from fieldsync.core.types import ErrorKind


class RecordingClient:
    """Stand-in for GraphClient recording upload calls."""

    def __init__(self, errors: list[Exception] | None = None) -> None:
        self.errors = list(errors or [])
        self.folders: list[str] = []
        self.small: list[tuple[str, str, bytes]] = []
        self.large: list[tuple[str, str, int, int, bytes]] = []

    def ensure_folder(self, container_id: str, path: str, cancel: threading.Event | None = None) -> None:
        self.folders.append(path)

    def upload_small(
        self,
        container_id: str,
        folder: str,
        name: str,
        data: bytes,
        cancel: threading.Event | None = None,
    ) -> None:
        if self.errors:
            raise self.errors.pop(0)
        self.small.append((folder, name, data))

    def upload_large(
        self,
        container_id: str,
        folder: str,
        name: str,
        stream: IO[bytes],
        size: int,
        chunk_size: int = 0,
        cancel: threading.Event | None = None,
        on_progress: object = None,
    ) -> None:
        if self.errors:
            raise self.errors.pop(0)
        self.large.append((folder, name, size, chunk_size, stream.read()))


def make_item(root: Path, relative: str, size: int) -> QueueItem:
    """Create a pending file and its queue item."""
    path = root / "pending" / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"z" * size)
    return QueueItem(local_path=path, relative_path=relative, size=size)


class TestJoinRemote:
    """Tests for join_remote."""

    def test_drops_empty_segments(self) -> None:
        """Empty parts and stray separators are ignored."""
        assert join_remote("/FieldSync/", "", "client\\visit", "a.txt") == "FieldSync/client/visit/a.txt"


class TestBoundedWorkerPool:
    """Tests for BoundedWorkerPool."""

    def test_rejects_zero_workers(self) -> None:
        """At least one worker is required."""
        with pytest.raises(ValueError):
            BoundedWorkerPool(0)

    def test_results_in_item_order(self) -> None:
        """Results come back in item order."""
        pool = BoundedWorkerPool(3)
        assert pool.run(range(6), lambda n: n * n) == [0, 1, 4, 9, 16, 25]

    def test_concurrency_bound(self) -> None:
        """No more than max_workers calls are ever in flight."""
        pool = BoundedWorkerPool(3)
        lock = threading.Lock()
        active = 0
        peak = 0

        def work(n: int) -> int:
            nonlocal active, peak
            with lock:
                active += 1
                peak = max(peak, active)
            time.sleep(0.02)
            with lock:
                active -= 1
            return n

        assert len(pool.run(range(12), work)) == 12
        assert peak <= 3
        assert pool.peak_in_flight <= 3
        assert pool.in_flight == 0

    def test_cancel_skips_unstarted_items(self) -> None:
        """Items not started when cancel is set are skipped."""
        pool = BoundedWorkerPool(1)
        cancel = threading.Event()

        def work(n: int) -> int:
            cancel.set()
            return n

        assert pool.run(range(5), work, cancel=cancel) == [0]

    def test_escaping_exception_is_logged(self) -> None:
        """An exception escaping the function drops only that result."""
        pool = BoundedWorkerPool(2)

        def work(n: int) -> int:
            if n == 1:
                raise RuntimeError("boom")
            return n

        assert pool.run(range(3), work) == [0, 2]


class TestFileUploader:
    """Tests for FileUploader protocol selection."""

    def test_small_file_single_put(self, tmp_path: Path) -> None:
        """Files up to the threshold go in one request."""
        client = RecordingClient()
        uploader = FileUploader(client, small_upload_threshold=100, chunk_size=40)  # type: ignore[arg-type]
        item = make_item(tmp_path, "client/a.txt", 100)

        remote = uploader.upload(item, "d1", "FieldSync/client")

        assert remote == "/FieldSync/client/a.txt"
        assert client.folders == ["FieldSync/client"]
        assert client.small == [("FieldSync/client", "a.txt", b"z" * 100)]
        assert client.large == []

    def test_large_file_uses_session(self, tmp_path: Path) -> None:
        """Files above the threshold use a chunked session."""
        client = RecordingClient()
        uploader = FileUploader(client, small_upload_threshold=100, chunk_size=40)  # type: ignore[arg-type]
        item = make_item(tmp_path, "client/b.bin", 101)

        uploader.upload(item, "d1", "FieldSync/client")

        assert client.small == []
        assert client.large == [("FieldSync/client", "b.bin", 101, 40, b"z" * 101)]

    def test_missing_file_raises_oserror(self, tmp_path: Path) -> None:
        """A vanished local file surfaces as OSError."""
        uploader = FileUploader(RecordingClient())  # type: ignore[arg-type]
        item = QueueItem(local_path=tmp_path / "gone.txt", relative_path="c/gone.txt", size=1)
        with pytest.raises(OSError):
            uploader.upload(item, "d1", "FieldSync/c")


class TestUploadWorker:
    """Tests for UploadWorker outcome handling."""

    def make_worker(
        self, tmp_path: Path, client: RecordingClient
    ) -> tuple[UploadWorker, QueueStore, TransferCounters, list[TransferEvent]]:
        store = QueueStore(tmp_path)
        counters = TransferCounters()
        bus = EventBus()
        events: list[TransferEvent] = []
        bus.subscribe(events.append)
        config = UploadConfig(queue_dir=tmp_path, max_attempts=3, backoff_base=0.0)
        uploader = FileUploader(client, small_upload_threshold=config.small_upload_threshold)  # type: ignore[arg-type]
        return UploadWorker(uploader, store, counters, bus, config), store, counters, events

    def test_success_moves_to_sent(self, tmp_path: Path) -> None:
        """A successful upload is moved to sent and counted."""
        worker, store, counters, events = self.make_worker(tmp_path, RecordingClient())
        item = make_item(tmp_path, "client/a.txt", 10)
        counters.refresh(pending=1, errors=0)

        outcome = worker.process(item, "d1")

        assert outcome.success is True
        assert outcome.remote_path == "/FieldSync/client/a.txt"
        assert outcome.attempts == 1
        assert store.sent_count() == 1
        assert counters.snapshot().uploaded == 1
        assert counters.snapshot().pending == 0
        assert FileUploaded(item.local_path, "/FieldSync/client/a.txt", 10) in events

    def test_transient_then_success(self, tmp_path: Path) -> None:
        """Transient failures are retried within the same item."""
        client = RecordingClient(errors=[ServerError("503"), ServerError("503")])
        worker, store, _, _ = self.make_worker(tmp_path, client)
        item = make_item(tmp_path, "client/a.txt", 10)

        outcome = worker.process(item, "d1")

        assert outcome.success is True
        assert outcome.attempts == 3
        assert store.sent_count() == 1

    def test_exhausted_retries_move_to_error(self, tmp_path: Path) -> None:
        """After the last attempt the item goes to error with a sidecar."""
        client = RecordingClient(errors=[ServerError("503")] * 3)
        worker, store, counters, events = self.make_worker(tmp_path, client)
        item = make_item(tmp_path, "client/a.txt", 10)
        counters.refresh(pending=1, errors=0)

        outcome = worker.process(item, "d1")

        assert outcome.success is False
        assert outcome.error_kind is ErrorKind.TRANSIENT
        assert outcome.attempts == 3
        assert store.error_count() == 1
        assert (store.error_dir / "client" / "a.txt.error").exists()
        assert counters.snapshot().errors == 1
        failed = [e for e in events if isinstance(e, FileUploadFailed)]
        assert len(failed) == 1
        assert failed[0].error_kind is ErrorKind.TRANSIENT

    def test_fatal_fails_immediately(self, tmp_path: Path) -> None:
        """Non-transient failures are not retried."""
        client = RecordingClient(errors=[BadRequestError("400 invalid name")])
        worker, store, _, _ = self.make_worker(tmp_path, client)
        item = make_item(tmp_path, "client/a.txt", 10)

        outcome = worker.process(item, "d1")

        assert outcome.error_kind is ErrorKind.FATAL
        assert outcome.attempts == 1
        assert store.read_error(store.list_errors()[0])["error_type"] == "BadRequestError"

    def test_local_io_leaves_item_pending(self, tmp_path: Path) -> None:
        """Local read failures skip the item without moving it."""
        client = RecordingClient(errors=[PermissionError("locked by another process")])
        worker, store, counters, _ = self.make_worker(tmp_path, client)
        item = make_item(tmp_path, "client/a.txt", 10)

        outcome = worker.process(item, "d1")

        assert outcome.error_kind is ErrorKind.LOCAL_IO
        assert outcome.retained is True
        assert store.pending_count() == 1
        assert store.error_count() == 0
        assert counters.snapshot().errors == 0

    def test_cancelled_leaves_item_pending(self, tmp_path: Path) -> None:
        """A cancelled upload leaves the queue untouched."""
        worker, store, _, _ = self.make_worker(tmp_path, RecordingClient())
        item = make_item(tmp_path, "client/a.txt", 10)
        cancel = threading.Event()
        cancel.set()

        outcome = worker.process(item, "d1", cancel)

        assert outcome.error_kind is ErrorKind.CANCELLED
        assert store.pending_count() == 1
