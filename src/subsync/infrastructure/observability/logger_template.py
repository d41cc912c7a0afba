"""Shared logger helpers.

Hey future me - these keep the event-style log lines consistent across modules.

USAGE:
    from subsync.infrastructure.observability.logger_template import (
        log_operation,
        log_worker_health,
    )

    async with log_operation(logger, "reconciliation.diff", subscription_id="abc"):
        await diff(subscription)

    log_worker_health(logger, "download_queue", cycles_completed=10, errors_total=0,
                      uptime_seconds=3600)
"""

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any


# Yo, this logs {operation}.started / .completed / .failed with duration_ms. On exception
# it logs with exc_info and RE-RAISES - it never swallows. The **context kwargs end up as
# extra fields on every one of the three lines.
@asynccontextmanager
async def log_operation(
    logger: logging.Logger,
    operation: str,
    level: int = logging.INFO,
    **context: Any,
) -> AsyncIterator[dict[str, Any]]:
    """Context manager for logging operation start/end with automatic timing.

    The yielded dict can be filled inside the block; its keys are added to the
    completion line (e.g. result counts).

    Args:
        logger: Module logger
        operation: Operation name (e.g., "reconciliation.diff_all")
        level: Level for the started/completed lines (failures are always ERROR)
        **context: Additional fields to include in logs

    Example:
        >>> async with log_operation(logger, "library_sync.scan") as result:
        ...     result["folders"] = await scan()
    """
    start = time.monotonic()
    result: dict[str, Any] = {}
    logger.log(level, f"{operation}.started", extra=context)

    try:
        yield result
    except Exception as e:
        duration_ms = int((time.monotonic() - start) * 1000)
        logger.error(
            f"{operation}.failed",
            extra={
                **context,
                "duration_ms": duration_ms,
                "error": str(e),
                "error_type": type(e).__name__,
            },
            exc_info=True,
        )
        raise

    duration_ms = int((time.monotonic() - start) * 1000)
    logger.log(
        level,
        f"{operation}.completed",
        extra={**context, **result, "duration_ms": duration_ms},
    )


def log_worker_health(
    logger: logging.Logger,
    worker_name: str,
    cycles_completed: int,
    errors_total: int,
    uptime_seconds: float,
    extra_stats: dict[str, Any] | None = None,
) -> None:
    """Log worker health status in consistent format.

    Args:
        logger: Logger instance
        worker_name: Worker identifier (e.g., "download_queue")
        cycles_completed: Units of work finished since start
        errors_total: Errors encountered since start
        uptime_seconds: Seconds since the worker started
        extra_stats: Optional additional stats
    """
    log_data = {
        "worker": worker_name,
        "cycles_completed": cycles_completed,
        "errors_total": errors_total,
        "uptime_seconds": int(uptime_seconds),
    }
    if extra_stats:
        log_data.update(extra_stats)

    logger.info("worker.health", extra=log_data)
