"""
Retry logic with exponential backoff for transient failures.

Provides decorators and utilities for handling SQLite lock contention
and optimistic-locking version conflicts gracefully.
"""

import sqlite3
from collections.abc import Callable
from typing import TypeVar

from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random_exponential,
)

from budget_ledger.kernel.errors import StreamVersionConflict
from budget_ledger.kernel.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# ============================================================================
# Retry Decorators
# ============================================================================


def retry_on_sqlite_lock(
    max_attempts: int = 3,
    min_wait_ms: int = 100,
    max_wait_ms: int = 1000,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Retry decorator for SQLite lock contention (OperationalError).

    SQLite uses file-based locking and can encounter "database is locked"
    errors under concurrent access. This decorator retries with exponential
    backoff to handle transient locking issues.

    Args:
        max_attempts: Maximum number of retry attempts (default: 3)
        min_wait_ms: Minimum wait time in milliseconds (default: 100)
        max_wait_ms: Maximum wait time in milliseconds (default: 1000)

    Returns:
        Decorated function that retries on sqlite3.OperationalError

    Example:
        @retry_on_sqlite_lock()
        def append_streams(...):
            # This will retry up to 3 times on database lock errors
            conn.execute("BEGIN IMMEDIATE")
    """
    return retry(
        retry=retry_if_exception_type(sqlite3.OperationalError),
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(
            multiplier=1,
            min=min_wait_ms / 1000.0,  # Convert to seconds
            max=max_wait_ms / 1000.0,
        ),
        before_sleep=lambda retry_state: logger.warning(
            "SQLite lock detected, retrying",
            attempt=retry_state.attempt_number,
            exception=str(retry_state.outcome.exception()) if retry_state.outcome else None,
        ),
        reraise=True,
    )


def retry_on_version_conflict(
    max_attempts: int = 5,
    max_wait_ms: int = 200,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Retry decorator for optimistic-locking conflicts (StreamVersionConflict).

    A read-decide-append cycle that loses the compare-and-swap re-runs from
    the read, so the retried attempt sees the winner's write. Randomized
    backoff keeps contending writers from colliding in lockstep.

    Args:
        max_attempts: Maximum number of attempts including the first (default: 5)
        max_wait_ms: Upper bound of the randomized wait (default: 200)

    Returns:
        Decorated function that retries on StreamVersionConflict
    """
    return retry(
        retry=retry_if_exception_type(StreamVersionConflict),
        stop=stop_after_attempt(max_attempts),
        wait=wait_random_exponential(multiplier=0.005, max=max_wait_ms / 1000.0),
        before_sleep=lambda retry_state: logger.debug(
            "Stream version conflict, retrying",
            attempt=retry_state.attempt_number,
            exception=str(retry_state.outcome.exception()) if retry_state.outcome else None,
        ),
        reraise=True,
    )


def run_with_version_retry(operation: Callable[[], T], max_attempts: int = 5) -> T:
    """
    Run a zero-argument read-decide-append operation under version retry.

    Args:
        operation: Callable that re-reads state, decides and appends
        max_attempts: Maximum number of attempts including the first

    Returns:
        Whatever the operation returns on its successful attempt

    Raises:
        StreamVersionConflict: If every attempt lost the race
    """
    return retry_on_version_conflict(max_attempts=max_attempts)(operation)()


# ============================================================================
# Projection Rebuild Retry
# ============================================================================


def retry_projection_rebuild(
    max_attempts: int = 3,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Retry decorator specifically for projection rebuilds.

    Projection rebuilds can fail due to SQLite lock contention while
    reading many events or transient I/O errors.

    Args:
        max_attempts: Maximum number of retry attempts (default: 3)

    Returns:
        Decorated function that retries projection rebuilds
    """
    return retry(
        retry=retry_if_exception_type((sqlite3.OperationalError, OSError)),
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(
            multiplier=1,
            min=0.5,  # 500ms min for rebuilds (longer operations)
            max=5.0,  # 5s max
        ),
        before_sleep=lambda retry_state: logger.warning(
            "Projection rebuild failed, retrying",
            attempt=retry_state.attempt_number,
            exception=str(retry_state.outcome.exception()) if retry_state.outcome else None,
        ),
        reraise=True,
    )
