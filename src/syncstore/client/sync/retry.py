"""Retry logic with jittered exponential backoff.

This module provides:
- jittered_backoff: Delay (ms) before the next attempt, or False to stop
- retry: Call a function until it succeeds, backing off between attempts

Delays:
    attempt a, non-network error: 2**a * 100 ms + jitter in [0, 100) ms,
    False once 2**a * 100 >= 2**12 * 100 (a >= 12).

    Network error: never False, capped at 5 minutes. A client that lost
    connectivity keeps its mutations and keeps trying.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable
from typing import Any, Literal, TypeVar

from syncstore.client.sync.errors import classify_error, is_network_error
from syncstore.client.sync.types import (
    ErrorRecord,
    NonRetryableError,
    SyncCancelledError,
)
from syncstore.core.types import ErrorType

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Backoff configuration (milliseconds)
BASE_TIME_MS = 100
JITTER_MS = 100
MAX_ATTEMPTS_EXPONENT = 12
MAX_RETRY_DELAY_MS = 5 * 60 * 1000

# Exponent past which a network delay is always capped
_MAX_NETWORK_EXPONENT = 32

BackoffFunction = Callable[[int, list[ErrorRecord], Any], int | bool]


def jittered_backoff(
    attempt: int,
    prior_errors: list[ErrorRecord] | None = None,
    latest_error: Any = None,
) -> int | Literal[False]:
    """Compute the delay before the next attempt.

    Args:
        attempt: Zero-based number of the attempt that just failed.
        prior_errors: Earlier failures of the same operation (unused by
            the default policy, available to custom policies).
        latest_error: The error of the failed attempt.

    Returns:
        Delay in milliseconds, or False to stop retrying.
    """
    if attempt < 0:
        raise ValueError(f"attempt must be >= 0, got {attempt}")

    jitter = random.randrange(JITTER_MS)

    if is_network_error(latest_error):
        base = 2 ** min(attempt, _MAX_NETWORK_EXPONENT) * BASE_TIME_MS
        return min(base + jitter, MAX_RETRY_DELAY_MS)

    base = 2**attempt * BASE_TIME_MS
    if base >= 2**MAX_ATTEMPTS_EXPONENT * BASE_TIME_MS:
        return False
    return base + jitter


def _wait(delay_ms: int, stop_event: threading.Event | None) -> None:
    """Sleep for delay_ms, waking early if stop_event is set.

    Raises:
        SyncCancelledError: If stop_event was set.
    """
    if stop_event is None:
        time.sleep(delay_ms / 1000)
        return
    if stop_event.wait(delay_ms / 1000):
        raise SyncCancelledError("Retry cancelled")


def retry(
    func: Callable[[], T],
    backoff: BackoffFunction = jittered_backoff,
    stop_event: threading.Event | None = None,
    description: str = "operation",
) -> T:
    """Execute a function, retrying with backoff until it succeeds.

    Unauthorized errors and NonRetryableError are raised at once; other
    errors are retried until the backoff function returns False, then
    the last error is raised.

    Args:
        func: Function to execute.
        backoff: Maps (attempt, prior errors, latest error) to a delay.
        stop_event: Set to abandon waiting between attempts.
        description: Name used in log messages.

    Returns:
        Result of the function.

    Raises:
        SyncCancelledError: If stop_event was set.
        NonRetryableError: If func raised it.
        The last exception if all retries fail.
    """
    attempt = 0
    errors: list[ErrorRecord] = []

    while True:
        if stop_event is not None and stop_event.is_set():
            raise SyncCancelledError(f"{description} cancelled")

        try:
            return func()
        except NonRetryableError:
            raise
        except Exception as e:
            error_type = classify_error(e)
            if error_type is ErrorType.UNAUTHORIZED:
                raise

            delay = backoff(attempt, errors, e)
            errors.append(ErrorRecord(error_type, str(e), attempt=attempt, cause=e))
            if delay is False:
                logger.error(
                    "%s failed after %d attempts: %s", description, attempt + 1, e
                )
                raise

            logger.warning(
                "%s attempt %d failed (%s): %s. Retrying in %.1fs...",
                description,
                attempt + 1,
                error_type.value,
                e,
                delay / 1000,
            )
            _wait(delay, stop_event)
            attempt += 1
