"""Fan-out/join-all batches that report a result per item."""

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from order_relay.core.errors import BatchPartialFailure

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class BatchItemResult(Generic[T]):
    """Outcome of one operation in a batch."""

    item: T
    ok: bool
    value: Any = None
    error: BaseException | None = None


async def run_batch(
    items: Iterable[T],
    operation: Callable[[T], Awaitable[Any]],
) -> list[BatchItemResult[T]]:
    """Launch ``operation`` for every item, then wait for all of them to settle.

    Failures never cancel sibling operations and nothing is rolled back; the
    caller decides what a partial failure means.
    """

    batch = list(items)
    tasks = [asyncio.ensure_future(operation(item)) for item in batch]
    outcomes = await asyncio.gather(*tasks, return_exceptions=True)

    results: list[BatchItemResult[T]] = []
    for item, outcome in zip(batch, outcomes):
        if isinstance(outcome, asyncio.CancelledError):
            raise outcome
        if isinstance(outcome, BaseException):
            results.append(BatchItemResult(item=item, ok=False, error=outcome))
        else:
            results.append(BatchItemResult(item=item, ok=True, value=outcome))
    return results


def raise_for_failures(step: str, results: list[BatchItemResult[T]]) -> list[T]:
    """Return the items that succeeded, or raise ``BatchPartialFailure``."""

    if any(not result.ok for result in results):
        raise BatchPartialFailure(step, results)
    return [result.item for result in results]
