"""Durable transfer queue backed by the filesystem.

This module provides:
- QueueStore: three sibling areas (pending, sent, error) whose
  directory a file lives in is its transfer state

Layout:
    <root>/pending/<folder>/<name>   waiting for upload
    <root>/sent/<folder>/<name>      delivered
    <root>/error/<folder>/<name>     retries exhausted
    <root>/error/<folder>/<name>.error   diagnostic sidecar (JSON)

Crash recovery needs no journal: whatever is found in pending after a
restart is simply retried from scratch. Every public method swallows
and logs OSError so that one bad file never aborts a cycle; the item
just stays where it is.
"""

from __future__ import annotations

import errno
import json
import logging
import os
import shutil
from collections.abc import Iterator
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from fieldsync.client.sync.types import QueueItem
from fieldsync.core.types import ErrorKind

logger = logging.getLogger(__name__)

PENDING_DIR = "pending"
SENT_DIR = "sent"
ERROR_DIR = "error"

ERROR_SUFFIX = ".error"
PARTIAL_SUFFIX = ".partial"


class QueueStore:
    """Filesystem-backed staging areas for files awaiting transfer.

    Usage:
        store = QueueStore(Path("~/.fieldsync/queue").expanduser())
        store.enqueue(Path("visits/client-042/report.pdf"))
        for item in store.iter_pending():
            ...
            store.mark_sent(item)
    """

    def __init__(self, root: Path) -> None:
        """Create the queue areas under ``root`` if needed.

        Args:
            root: Directory holding the pending, sent and error areas.
        """
        self._root = Path(root)
        self._pending = self._root / PENDING_DIR
        self._sent = self._root / SENT_DIR
        self._error = self._root / ERROR_DIR
        for area in (self._pending, self._sent, self._error):
            area.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    @property
    def pending_dir(self) -> Path:
        return self._pending

    @property
    def sent_dir(self) -> Path:
        return self._sent

    @property
    def error_dir(self) -> Path:
        return self._error

    # === Producer side ===

    def enqueue(self, source: Path) -> bool:
        """Copy a file into pending/<parent folder name>/<file name>.

        Nothing happens when the same relative path was already sent or
        is already pending. Copy errors are logged, never raised.

        Returns:
            True if a new queue entry was created.
        """
        source = Path(source)
        if not source.is_file():
            logger.warning("Not enqueueing %s: not a file", source)
            return False

        relative = f"{source.parent.name}/{source.name}" if source.parent.name else source.name
        if (self._sent / relative).exists():
            logger.debug("Already sent, skipping: %s", relative)
            return False
        destination = self._pending / relative
        if destination.exists():
            logger.debug("Already pending: %s", relative)
            return False

        partial = destination.with_name(destination.name + PARTIAL_SUFFIX)
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, partial)
            os.replace(partial, destination)
        except OSError as e:
            logger.error("Failed to enqueue %s: %s", source, e)
            try:
                partial.unlink(missing_ok=True)
            except OSError:
                logger.debug("Could not remove partial copy %s", partial)
            return False

        logger.info("Enqueued %s", relative)
        return True

    # === Enumeration ===

    def iter_pending(self) -> Iterator[QueueItem]:
        """Lazily enumerate pending items."""
        return self._iter_area(self._pending)

    def iter_sent(self) -> Iterator[QueueItem]:
        """Lazily enumerate delivered items."""
        return self._iter_area(self._sent)

    def iter_errors(self) -> Iterator[QueueItem]:
        """Lazily enumerate failed items (sidecars excluded)."""
        return self._iter_area(self._error)

    def list_pending(self, limit: int | None = None) -> list[QueueItem]:
        """Snapshot of pending items in path order, at most ``limit``."""
        items = sorted(self.iter_pending(), key=lambda i: i.relative_path)
        return items if limit is None else items[:limit]

    def list_sent(self) -> list[QueueItem]:
        return sorted(self.iter_sent(), key=lambda i: i.relative_path)

    def list_errors(self) -> list[QueueItem]:
        return sorted(self.iter_errors(), key=lambda i: i.relative_path)

    def pending_count(self) -> int:
        return sum(1 for _ in self.iter_pending())

    def sent_count(self) -> int:
        return sum(1 for _ in self.iter_sent())

    def error_count(self) -> int:
        return sum(1 for _ in self.iter_errors())

    def _iter_area(self, area: Path) -> Iterator[QueueItem]:
        """Walk an area, tolerating files that move while we look."""

        def on_error(e: OSError) -> None:
            logger.debug("Skipping unreadable directory: %s", e)

        for dirpath, _dirnames, filenames in os.walk(area, onerror=on_error):
            for filename in sorted(filenames):
                if filename.endswith((ERROR_SUFFIX, PARTIAL_SUFFIX)):
                    continue
                path = Path(dirpath) / filename
                try:
                    size = path.stat().st_size
                except OSError:
                    # Moved or deleted since the directory was listed
                    continue
                yield QueueItem(
                    local_path=path,
                    relative_path=path.relative_to(area).as_posix(),
                    size=size,
                )

    # === Outcome recording ===

    def mark_sent(self, item: QueueItem) -> bool:
        """Move an item from pending to sent, replacing any stale copy.

        Returns:
            True if the item was relocated.
        """
        destination = self._sent / item.relative_path
        if not self._relocate(item.local_path, destination):
            return False
        logger.debug("Marked sent: %s", item.relative_path)
        return True

    def mark_error(
        self,
        item: QueueItem,
        error: BaseException | str,
        kind: ErrorKind | None = None,
    ) -> bool:
        """Move an item to the error area and write its diagnostic sidecar.

        The sidecar is best-effort: failing to write it does not undo or
        block the relocation.

        Returns:
            True if the item was relocated.
        """
        destination = self._error / item.relative_path
        if not self._relocate(item.local_path, destination):
            return False

        record: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "kind": kind.value if kind else None,
            "error_type": type(error).__name__ if isinstance(error, BaseException) else None,
            "message": str(error),
        }
        sidecar = destination.with_name(destination.name + ERROR_SUFFIX)
        try:
            sidecar.write_text(json.dumps(record, indent=2), encoding="utf-8")
        except OSError as e:
            logger.warning("Could not write error sidecar for %s: %s", item.relative_path, e)

        logger.debug("Marked error: %s", item.relative_path)
        return True

    def read_error(self, item: QueueItem) -> dict[str, Any] | None:
        """Return the diagnostic recorded for an errored item, if readable."""
        sidecar = self._error / (item.relative_path + ERROR_SUFFIX)
        try:
            data = json.loads(sidecar.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None
        return data if isinstance(data, dict) else None

    def requeue_errors(self) -> int:
        """Move every errored item back to pending and drop its sidecar.

        When the same relative path was enqueued again in the meantime,
        the pending copy is newer: it is kept and the errored copy is
        discarded.

        Returns:
            Number of items moved.
        """
        moved = 0
        for item in list(self.iter_errors()):
            destination = self._pending / item.relative_path
            if destination.exists():
                logger.info("Newer copy already pending, discarding errored %s", item.relative_path)
                try:
                    item.local_path.unlink()
                except OSError as e:
                    logger.warning("Could not remove errored copy %s: %s", item.local_path, e)
                    continue
            elif self._relocate(item.local_path, destination):
                moved += 1
            else:
                continue
            sidecar = item.local_path.with_name(item.local_path.name + ERROR_SUFFIX)
            try:
                sidecar.unlink(missing_ok=True)
            except OSError as e:
                logger.warning("Could not remove sidecar %s: %s", sidecar, e)

        if moved:
            logger.info("Requeued %d errored item(s)", moved)
        return moved

    def _relocate(self, source: Path, destination: Path) -> bool:
        """Move ``source`` onto ``destination``, overwriting it.

        Uses an atomic rename, falling back to copy+delete across volumes.
        """
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            try:
                os.replace(source, destination)
            except OSError as e:
                if e.errno != errno.EXDEV:
                    raise
                shutil.copy2(source, destination)
                source.unlink()
        except OSError as e:
            logger.error("Failed to move %s -> %s: %s", source, destination, e)
            return False
        return True
