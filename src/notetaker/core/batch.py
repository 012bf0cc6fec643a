"""Concurrent fan-out with per-item failure isolation.

Every recurring task processes its candidate set through fan_out(): items
run concurrently, an item's exception is logged and counted, and the batch
always runs to completion.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, TypeVar

import structlog
from pydantic import BaseModel

from src.notetaker.core.monitoring import batch_items_total

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class BatchResult(BaseModel):
    """Tally of one fan-out batch."""

    operation: str
    total: int = 0
    succeeded: int = 0
    failed: int = 0


async def fan_out(
    items: Iterable[T],
    worker: Callable[[T], Awaitable[Any]],
    *,
    operation: str,
    concurrency: int = 0,
) -> BatchResult:
    """Run ``worker`` over every item concurrently.

    Args:
        items: Candidate set for this tick.
        worker: Coroutine function applied to each item.
        operation: Name used in logs and metrics.
        concurrency: Maximum in-flight items; 0 means unbounded.

    Returns:
        BatchResult with success and failure counts.
    """
    batch = list(items)
    result = BatchResult(operation=operation, total=len(batch))
    if not batch:
        return result

    semaphore = asyncio.Semaphore(concurrency) if concurrency > 0 else None

    async def _run(item: T) -> Any:
        if semaphore is None:
            return await worker(item)
        async with semaphore:
            return await worker(item)

    outcomes = await asyncio.gather(
        *(_run(item) for item in batch), return_exceptions=True
    )

    for item, outcome in zip(batch, outcomes):
        if isinstance(outcome, BaseException):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            result.failed += 1
            batch_items_total.labels(operation=operation, outcome="failed").inc()
            logger.error(
                "batch.item_failed",
                operation=operation,
                item=repr(item),
                error=str(outcome),
                exc_info=outcome,
            )
        else:
            result.succeeded += 1
            batch_items_total.labels(operation=operation, outcome="succeeded").inc()

    logger.info(
        "batch.completed",
        operation=operation,
        total=result.total,
        succeeded=result.succeeded,
        failed=result.failed,
    )
    return result
