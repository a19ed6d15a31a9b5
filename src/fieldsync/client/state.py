"""Transfer counters and persisted statistics.

This module provides:
- CounterSnapshot: Immutable view of the live counters
- TransferCounters: Thread-safe pending/uploaded/error counters
- SyncStats / StatsStore: Cumulative totals persisted across sessions
"""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import asdict, dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CounterSnapshot:
    """Counters as observed at one instant."""

    pending: int = 0
    uploaded: int = 0
    errors: int = 0


class TransferCounters:
    """Live counters shared by the engine and its workers.

    Every update happens under one lock and returns the resulting
    snapshot, so a success is observed as pending-1 and uploaded+1
    together.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pending = 0
        self._uploaded = 0
        self._errors = 0

    def snapshot(self) -> CounterSnapshot:
        with self._lock:
            return CounterSnapshot(self._pending, self._uploaded, self._errors)

    def refresh(self, pending: int, errors: int) -> CounterSnapshot:
        """Reset pending/error counts from the queue store."""
        with self._lock:
            self._pending = max(pending, 0)
            self._errors = max(errors, 0)
            return CounterSnapshot(self._pending, self._uploaded, self._errors)

    def record_uploaded(self) -> CounterSnapshot:
        with self._lock:
            self._pending = max(self._pending - 1, 0)
            self._uploaded += 1
            return CounterSnapshot(self._pending, self._uploaded, self._errors)

    def record_failed(self) -> CounterSnapshot:
        with self._lock:
            self._pending = max(self._pending - 1, 0)
            self._errors += 1
            return CounterSnapshot(self._pending, self._uploaded, self._errors)


@dataclass
class SyncStats:
    """Cumulative transfer totals."""

    uploaded: int = 0
    downloaded: int = 0


class StatsStore:
    """JSON file holding SyncStats across sessions.

    Reading or writing never raises; statistics are informational.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> SyncStats:
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            return SyncStats(
                uploaded=int(data.get("uploaded", 0)),
                downloaded=int(data.get("downloaded", 0)),
            )
        except FileNotFoundError:
            return SyncStats()
        except (OSError, ValueError, AttributeError) as e:
            logger.warning("Could not read stats %s: %s", self._path, e)
            return SyncStats()

    def save(self, stats: SyncStats) -> None:
        tmp = self._path.with_name(self._path.name + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(asdict(stats)), encoding="utf-8")
            os.replace(tmp, self._path)
        except OSError as e:
            logger.warning("Could not save stats %s: %s", self._path, e)

    def add(self, uploaded: int = 0, downloaded: int = 0) -> SyncStats:
        """Add to the persisted totals and return the new values."""
        with self._lock:
            stats = self.load()
            stats.uploaded += uploaded
            stats.downloaded += downloaded
            if uploaded or downloaded:
                self.save(stats)
            return stats
