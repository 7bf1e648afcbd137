"""Bounded-concurrency, settle-all execution of a batch of coroutines."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterator, Sequence, TypeVar

T = TypeVar("T")


@dataclass
class BatchResult:
    succeeded: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.succeeded + self.failed

    def __add__(self, other: "BatchResult") -> "BatchResult":
        return BatchResult(self.succeeded + other.succeeded, self.failed + other.failed)


def chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


async def settle_bounded(
    items: Sequence[T],
    handler: Callable[[T], Awaitable[Any]],
    concurrency: int,
) -> list[Any]:
    """Run ``handler`` over *items* with at most *concurrency* in flight.

    Every item is attempted; a raising handler never cancels its siblings.
    Returns one entry per item, in order: the handler's result or the
    exception it raised.
    """
    sem = asyncio.Semaphore(max(1, concurrency))

    async def _one(item: T) -> Any:
        async with sem:
            return await handler(item)

    return await asyncio.gather(*(_one(item) for item in items), return_exceptions=True)
