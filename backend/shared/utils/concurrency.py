"""
Bounded-concurrency helpers for asyncio fan-out.
"""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Iterable, Iterator, Sequence, TypeVar

T = TypeVar("T")
R = TypeVar("R")


class ConcurrencyLimiter:
    """
    Caps how many coroutines run at once.

    Pass one instance to several components to share a single budget, or give
    each its own width.
    """

    def __init__(self, width: int) -> None:
        if width < 1:
            raise ValueError("width must be >= 1")
        self._width = width
        self._sem = asyncio.Semaphore(width)

    @property
    def width(self) -> int:
        return self._width

    async def run(self, fn: Callable[[], Awaitable[R]]) -> R:
        async with self._sem:
            return await fn()

    async def map(
        self,
        fn: Callable[[T], Awaitable[R]],
        items: Iterable[T],
        return_exceptions: bool = False,
    ) -> list[R | BaseException]:
        """Apply fn to every item, at most `width` at a time. Results keep input order."""
        async def _one(item: T) -> R:
            async with self._sem:
                return await fn(item)

        return await asyncio.gather(*(_one(item) for item in items), return_exceptions=return_exceptions)


def chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    """Yield consecutive slices of at most `size` items."""
    if size < 1:
        raise ValueError("size must be >= 1")
    for start in range(0, len(items), size):
        yield items[start : start + size]
