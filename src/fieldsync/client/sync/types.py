"""Shared types and dataclasses for transfer operations.

This module provides:
- ErrorKind, TransferCancelled: Re-exported from fieldsync.core.types
- QueueItem: A file waiting in the durable queue
- TransferOutcome: Result of one item's transfer
- CycleState, CycleSummary: Upload cycle state machine and summary
- DownloadSummary: Result of a bulk download pass
- Type aliases for callbacks
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import IntEnum, auto
from pathlib import Path, PurePosixPath

from fieldsync.core.types import ErrorKind, TransferCancelled


@dataclass(frozen=True)
class QueueItem:
    """A file sitting in one of the queue store areas.

    Attributes:
        local_path: Absolute path of the file on disk.
        relative_path: Path relative to the area root, with "/" separators.
        size: Byte length when the item was listed.
    """

    local_path: Path
    relative_path: str
    size: int

    @property
    def name(self) -> str:
        return PurePosixPath(self.relative_path).name

    @property
    def remote_subfolder(self) -> str:
        """Folder part of the relative path ("" for top-level items)."""
        parent = str(PurePosixPath(self.relative_path).parent)
        return "" if parent == "." else parent


@dataclass
class TransferOutcome:
    """Result of transferring one queue item.

    On success ``remote_path`` and ``size`` are set; on failure
    ``error_kind``, ``error_type`` and ``message`` describe it.
    """

    item: QueueItem
    success: bool
    remote_path: str | None = None
    size: int = 0
    error_kind: ErrorKind | None = None
    error_type: str | None = None
    message: str | None = None
    attempts: int = 0
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def retained(self) -> bool:
        """True if the failed item was left in pending for a later cycle."""
        return not self.success and self.error_kind in (
            ErrorKind.AUTH,
            ErrorKind.LOCAL_IO,
            ErrorKind.CANCELLED,
        )

    @classmethod
    def succeeded(
        cls, item: QueueItem, remote_path: str, attempts: int = 1
    ) -> TransferOutcome:
        return cls(
            item=item,
            success=True,
            remote_path=remote_path,
            size=item.size,
            attempts=attempts,
        )

    @classmethod
    def failed(
        cls,
        item: QueueItem,
        error: BaseException,
        kind: ErrorKind,
        attempts: int = 0,
        remote_path: str | None = None,
    ) -> TransferOutcome:
        return cls(
            item=item,
            success=False,
            remote_path=remote_path,
            error_kind=kind,
            error_type=type(error).__name__,
            message=str(error),
            attempts=attempts,
        )


class CycleState(IntEnum):
    """State of the upload engine within one cycle."""

    IDLE = auto()
    LOCKED = auto()
    AUTHENTICATING = auto()
    RESOLVING_TARGET = auto()
    LISTING = auto()
    TRANSFERRING = auto()


@dataclass
class CycleSummary:
    """What one upload cycle did.

    ``aborted`` holds the reason when shared state (token, container,
    root folder) could not be resolved.
    """

    started_at: datetime
    finished_at: datetime | None = None
    pending_at_start: int = 0
    attempted: int = 0
    uploaded: int = 0
    failed: int = 0
    skipped: int = 0
    aborted: str | None = None
    cancelled: bool = False

    @property
    def duration(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()


@dataclass
class DownloadSummary:
    """What one bulk download pass did."""

    candidates: int = 0
    skipped_unchanged: int = 0
    downloaded: list[Path] = field(default_factory=list)
    failed: int = 0


ProgressCallback = Callable[[int, int], None]
