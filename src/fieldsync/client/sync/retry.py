"""Retry logic with cancellable backoff.

This module provides:
- classify_error: Map an exception to the ErrorKind driving its handling
- compute_backoff: Linear or capped exponential delay for an attempt
- retry_with_backoff: Bounded retry that sleeps on the cancellation event
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import Any

from fieldsync.client.api import APIError, AuthenticationError, RateLimitedError
from fieldsync.client.auth import TokenError
from fieldsync.core.types import ErrorKind, TransferCancelled

logger = logging.getLogger(__name__)

# Default retry configuration
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_BACKOFF_BASE = 2.0  # seconds
DEFAULT_BACKOFF_CAP = 60.0  # seconds
DEFAULT_STRATEGY = "exponential"


def classify_error(error: BaseException) -> ErrorKind:
    """Decide how a failure is handled.

    Token and 401/403 failures are AUTH, rate limiting, 5xx and
    transport failures are TRANSIENT, other API errors (400, unexpected
    409, ...) are FATAL and filesystem errors are LOCAL_IO.
    """
    if isinstance(error, TransferCancelled):
        return ErrorKind.CANCELLED
    if isinstance(error, (AuthenticationError, TokenError)):
        return ErrorKind.AUTH
    if isinstance(error, APIError):
        return ErrorKind.TRANSIENT if error.retryable else ErrorKind.FATAL
    if isinstance(error, (TimeoutError, ConnectionError)):
        return ErrorKind.TRANSIENT
    if isinstance(error, OSError):
        return ErrorKind.LOCAL_IO
    return ErrorKind.FATAL


def is_transient(error: BaseException) -> bool:
    return classify_error(error) is ErrorKind.TRANSIENT


def compute_backoff(
    attempt: int,
    base: float = DEFAULT_BACKOFF_BASE,
    cap: float = DEFAULT_BACKOFF_CAP,
    strategy: str = DEFAULT_STRATEGY,
) -> float:
    """Delay before retrying after failed attempt number ``attempt`` (1-based).

    linear: ``base * attempt``; exponential: ``min(cap, base * 2**attempt)``.
    Both are capped.
    """
    if strategy == "linear":
        delay = base * attempt
    else:
        delay = base * (2 ** attempt)
    return max(min(delay, cap), 0.0)


def retry_with_backoff(
    func: Callable[[], Any],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    backoff_base: float = DEFAULT_BACKOFF_BASE,
    backoff_cap: float = DEFAULT_BACKOFF_CAP,
    strategy: str = DEFAULT_STRATEGY,
    is_retryable: Callable[[BaseException], bool] = is_transient,
    cancel: threading.Event | None = None,
    on_retry: Callable[[int, BaseException, float], None] | None = None,
) -> Any:
    """Execute a function, retrying transient failures with backoff.

    Backoff sleeps wait on ``cancel`` so a cancellation interrupts them
    immediately. A RateLimitedError's ``retry_after`` is used as a lower
    bound for the delay (still capped).

    Args:
        func: Function to execute.
        max_attempts: Total attempts, including the first one.
        backoff_base: Base delay in seconds.
        backoff_cap: Maximum delay in seconds.
        strategy: "linear" or "exponential".
        is_retryable: Predicate deciding whether an error is worth retrying.
        cancel: Optional cancellation event.
        on_retry: Optional callback (attempt, error, delay) before sleeping.

    Returns:
        Result of the function.

    Raises:
        TransferCancelled: If cancellation is observed.
        The last exception if it is not retryable or attempts run out.
    """
    attempt = 0
    while True:
        if cancel is not None and cancel.is_set():
            raise TransferCancelled("Cancelled before attempt")
        attempt += 1
        try:
            return func()
        except TransferCancelled:
            raise
        except Exception as e:
            if not is_retryable(e):
                raise
            if attempt >= max_attempts:
                logger.error(f"All {max_attempts} attempts failed: {e}")
                raise

            delay = compute_backoff(attempt, backoff_base, backoff_cap, strategy)
            if isinstance(e, RateLimitedError) and e.retry_after is not None:
                delay = min(max(delay, e.retry_after), backoff_cap)

            logger.warning(
                f"Attempt {attempt}/{max_attempts} failed: {e}. "
                f"Retrying in {delay:.1f}s..."
            )
            if on_retry:
                on_retry(attempt, e, delay)

            if cancel is not None:
                if cancel.wait(delay):
                    raise TransferCancelled("Cancelled during backoff") from e
            else:
                time.sleep(delay)
