"""Database retry utilities for handling SQLite lock errors.

Hey future me - SQLite allows ONE writer at a time, even in WAL mode. With several
job tasks committing at once, one of them gets "database is locked". Those locks
are temporary, so job store writes wait and try again instead of failing the job.

USAGE:
    @with_db_retry(max_attempts=3)
    async def update(self, job: Job) -> None:
        ...
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from functools import wraps
from typing import Any, ParamSpec, TypeVar

from sqlalchemy.exc import OperationalError

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


class DatabaseLockMetrics:
    """Counters for database lock events (exposed in the worker health status)."""

    _instance: DatabaseLockMetrics | None = None

    def __init__(self) -> None:
        self.lock_retries: int = 0
        self.lock_failures: int = 0
        self.total_wait_time_ms: float = 0.0

    @classmethod
    def get_instance(cls) -> DatabaseLockMetrics:
        """Get singleton instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def get_stats(self) -> dict[str, Any]:
        return {
            "lock_retries": self.lock_retries,
            "lock_failures": self.lock_failures,
            "total_wait_time_ms": round(self.total_wait_time_ms, 2),
        }

    def reset(self) -> None:
        """Reset all metrics (for testing)."""
        self.lock_retries = 0
        self.lock_failures = 0
        self.total_wait_time_ms = 0.0


def is_lock_error(exception: BaseException) -> bool:
    """Check if an exception is a (retryable) database lock error."""
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

    Only "database is locked"/"busy" errors are retried; every other exception
    (including other OperationalErrors) propagates immediately. The decorated
    function must open its own session per call, otherwise a retry would reuse
    a rolled-back transaction.

    Args:
        max_attempts: Maximum attempts including the first one
        initial_delay: Delay before the first retry in seconds
        max_delay: Cap for the delay between retries
        backoff_factor: Multiply delay by this after each retry
    """

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            metrics = DatabaseLockMetrics.get_instance()
            delay = initial_delay
            attempt = 1
            while True:
                try:
                    return await func(*args, **kwargs)
                except OperationalError as e:
                    if not is_lock_error(e):
                        raise
                    if attempt >= max_attempts:
                        metrics.lock_failures += 1
                        logger.error(
                            "Database locked after %d attempts, giving up: %s",
                            max_attempts,
                            func.__qualname__,
                        )
                        raise
                    metrics.lock_retries += 1
                    logger.warning(
                        "Database locked (attempt %d/%d), retrying in %.1fs: %s",
                        attempt,
                        max_attempts,
                        delay,
                        func.__qualname__,
                    )
                    await asyncio.sleep(delay)
                    metrics.total_wait_time_ms += delay * 1000
                    delay = min(delay * backoff_factor, max_delay)
                    attempt += 1

        return wrapper

    return decorator
