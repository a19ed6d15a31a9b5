"""Observable events emitted by the transfer machinery.

This module provides:
- Event dataclasses (status messages, per-file results, counters,
  cycle and download summaries)
- EventBus: fan-out to subscribed callbacks

Observers are called synchronously from the emitting thread (often a
worker). Exceptions raised by an observer are logged and dropped so a
faulty observer can never fail a transfer.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Union

from fieldsync.client.state import CounterSnapshot
from fieldsync.client.sync.types import CycleSummary, DownloadSummary
from fieldsync.core.types import ErrorKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StatusMessage:
    message: str


@dataclass(frozen=True)
class FileUploaded:
    local_path: Path
    remote_path: str
    size: int


@dataclass(frozen=True)
class FileUploadFailed:
    local_path: Path
    remote_path: str
    error_kind: ErrorKind
    message: str


@dataclass(frozen=True)
class CountersChanged:
    pending: int
    uploaded: int
    errors: int

    @classmethod
    def from_snapshot(cls, snapshot: CounterSnapshot) -> CountersChanged:
        return cls(snapshot.pending, snapshot.uploaded, snapshot.errors)


@dataclass(frozen=True)
class CycleCompleted:
    summary: CycleSummary


@dataclass(frozen=True)
class FileDownloaded:
    local_path: Path
    item_id: str
    size: int


@dataclass(frozen=True)
class DownloadProgress:
    done: int
    total: int


@dataclass(frozen=True)
class DownloadCompleted:
    summary: DownloadSummary


TransferEvent = Union[
    StatusMessage,
    FileUploaded,
    FileUploadFailed,
    CountersChanged,
    CycleCompleted,
    FileDownloaded,
    DownloadProgress,
    DownloadCompleted,
]

EventCallback = Callable[[TransferEvent], None]


class EventBus:
    """Delivers events to every subscriber, never raising to the emitter.

    Usage:
        bus = EventBus()
        unsubscribe = bus.subscribe(lambda event: print(event))
        bus.emit(StatusMessage("cycle started"))
        unsubscribe()
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: list[EventCallback] = []

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """Register a callback; returns a function that removes it."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def emit(self, event: TransferEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception("Event observer failed on %s", type(event).__name__)

    def status(self, message: str) -> None:
        """Log and emit a status message."""
        logger.info(message)
        self.emit(StatusMessage(message))
