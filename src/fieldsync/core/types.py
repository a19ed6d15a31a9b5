"""Shared types for fieldsync.

This module defines types used by both the remote client and the
transfer machinery.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """How a failure is handled by the transfer machinery.

    AUTH aborts the whole cycle, TRANSIENT is retried with backoff,
    FATAL fails the item immediately, LOCAL_IO skips the item and
    CANCELLED unwinds without touching queue state.
    """

    AUTH = "auth"
    TRANSIENT = "transient"
    FATAL = "fatal"
    LOCAL_IO = "local_io"
    CANCELLED = "cancelled"


class TransferCancelled(Exception):
    """Raised when a blocking operation observes the cancellation signal."""
