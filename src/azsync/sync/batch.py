"""
Bounded batch processing for syncs that must finish inside one invocation.

Items run in sequential batches of up to `batch_size`, concurrently within a
batch. Before each batch the elapsed time since `start_time` is checked
against the budget; once it is spent the run stops and reports timed_out
instead of overrunning the host's hard limit. An in-flight batch is always
allowed to finish.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

DEFAULT_BATCH_SIZE = 5
DEFAULT_BUDGET_SECONDS = 50.0


@dataclass
class BatchOutcome:
    results: List[Any] = field(default_factory=list)
    processed_count: int = 0
    timed_out: bool = False


async def _guarded(processor: Callable[[T], Awaitable[R]], item: T) -> Optional[R]:
    try:
        return await processor(item)
    except Exception as exc:
        logger.error("Error processing item %r: %s", item, exc)
        return None


async def process_batched(
    items: Sequence[T],
    processor: Callable[[T], Awaitable[R]],
    batch_size: int = DEFAULT_BATCH_SIZE,
    start_time: Optional[float] = None,
    budget_seconds: float = DEFAULT_BUDGET_SECONDS,
    clock: Callable[[], float] = time.monotonic,
) -> BatchOutcome:
    """
    Process items in time-budgeted parallel batches.

    Args:
        items: Items to process, in order.
        processor: Async callable applied to each item. Exceptions are logged
            and the item contributes no result; the batch carries on.
        batch_size: Max items in flight at once.
        start_time: `clock()` reading when the invocation began. Defaults to now.
        budget_seconds: Elapsed time after which no new batch is started.
        clock: Monotonic time source (injectable for tests).

    Returns:
        BatchOutcome with non-None results, the number of items attempted, and
        whether the run stopped early on the budget.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")
    if start_time is None:
        start_time = clock()

    outcome = BatchOutcome()
    for offset in range(0, len(items), batch_size):
        if clock() - start_time > budget_seconds:
            logger.info(
                "Time budget spent; processed %d/%d items",
                outcome.processed_count, len(items),
            )
            outcome.timed_out = True
            break

        batch = items[offset:offset + batch_size]
        batch_results = await asyncio.gather(*(_guarded(processor, item) for item in batch))
        outcome.results.extend(r for r in batch_results if r is not None)
        outcome.processed_count += len(batch)

    return outcome
