# Hey future me - the scheduler, the finalizer and a CLI command can all write to the
# same SQLite file. SQLite allows ONE writer at a time, even in WAL mode, so a write can
# bounce with "database is locked". Those locks are short-lived: waiting and retrying
# almost always works. This module wraps ItemStore writes with that retry.
#
# Don't confuse this with the ITEM lease (lock_token)! That one is a business lock we
# take on purpose. This is SQLite's own file lock.
"""Database retry utilities for handling SQLite lock errors."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from functools import wraps
from typing import Any, ParamSpec, TypeVar

from sqlalchemy.exc import OperationalError

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


class DatabaseLockMetrics:
    """Track database lock events for monitoring.

    Counters are process-wide (singleton). DownloadQueue.get_status() includes
    them so a slow queue can be traced back to write contention.
    """

    _instance: DatabaseLockMetrics | None = None

    def __init__(self) -> None:
        """Initialize metrics counters."""
        self.lock_attempts: int = 0
        self.lock_successes: int = 0
        self.lock_failures: int = 0
        self.lock_retries: int = 0
        self.total_wait_time_ms: float = 0.0
        self.max_wait_time_ms: float = 0.0

    @classmethod
    def get_instance(cls) -> DatabaseLockMetrics:
        """Get singleton instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def record_attempt(self) -> None:
        """Record a database operation attempt."""
        self.lock_attempts += 1

    def record_success(self, wait_time_ms: float = 0.0) -> None:
        """Record a successful operation.

        Args:
            wait_time_ms: Time spent waiting for lock (0 if no wait needed)
        """
        self.lock_successes += 1
        self.total_wait_time_ms += wait_time_ms
        self.max_wait_time_ms = max(self.max_wait_time_ms, wait_time_ms)

    def record_failure(self) -> None:
        """Record a failed operation (all retries exhausted)."""
        self.lock_failures += 1

    def record_retry(self) -> None:
        """Record a retry attempt."""
        self.lock_retries += 1

    def get_stats(self) -> dict[str, Any]:
        """Get all metrics as a dictionary."""
        return {
            "lock_attempts": self.lock_attempts,
            "lock_successes": self.lock_successes,
            "lock_failures": self.lock_failures,
            "lock_retries": self.lock_retries,
            "total_wait_time_ms": round(self.total_wait_time_ms, 2),
            "max_wait_time_ms": round(self.max_wait_time_ms, 2),
        }

    def reset(self) -> None:
        """Reset all metrics (for testing)."""
        self.lock_attempts = 0
        self.lock_successes = 0
        self.lock_failures = 0
        self.lock_retries = 0
        self.total_wait_time_ms = 0.0
        self.max_wait_time_ms = 0.0


def is_lock_error(exception: Exception) -> bool:
    """Check if an exception is a retryable SQLite lock error."""
    if not isinstance(exception, OperationalError):
        return False
    error_msg = str(exception).lower()
    return "locked" in error_msg or "busy" in error_msg


def with_db_retry(
    max_attempts: int = 3,
    initial_delay: float = 0.5,
    max_delay: float = 5.0,
    backoff_factor: float = 2.0,
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Decorator for retrying async database operations on lock errors.

    The backoff is exponential: 0.5s → 1s → 2s (capped at max_delay). Only
    "database is locked"/"busy" errors are retried; every other error is raised
    immediately. Each attempt must be a complete transaction - decorate methods
    that open their own session_scope(), never code running inside one.

    Args:
        max_attempts: Maximum attempts including the first (default: 3)
        initial_delay: Initial delay in seconds (default: 0.5)
        max_delay: Maximum delay cap in seconds (default: 5.0)
        backoff_factor: Multiply delay by this each retry (default: 2.0)

    Returns:
        Decorated function with automatic retry logic.
    """

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            metrics = DatabaseLockMetrics.get_instance()
            delay = initial_delay
            total_wait_ms = 0.0
            start_time = time.monotonic()

            metrics.record_attempt()

            for attempt in range(max_attempts):
                try:
                    result = await func(*args, **kwargs)
                except OperationalError as e:
                    if not is_lock_error(e) or attempt == max_attempts - 1:
                        metrics.record_failure()
                        if is_lock_error(e):
                            logger.error(
                                "Database locked after %d attempts (%.0fms total), giving up: %s",
                                max_attempts,
                                (time.monotonic() - start_time) * 1000,
                                func.__qualname__,
                            )
                        raise

                    metrics.record_retry()
                    logger.warning(
                        "Database locked (attempt %d/%d), retrying in %.1fs: %s",
                        attempt + 1,
                        max_attempts,
                        delay,
                        func.__qualname__,
                    )
                    await asyncio.sleep(delay)
                    total_wait_ms += delay * 1000
                    delay = min(delay * backoff_factor, max_delay)
                else:
                    metrics.record_success(total_wait_ms)
                    return result

            raise RuntimeError("Unexpected state in retry decorator")

        return wrapper

    return decorator
