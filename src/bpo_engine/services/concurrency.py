"""Order-preserving bounded fan-out over async work items."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Generic, TypeVar, assert_never

from bpo_engine.models.enums import ConcurrencyMode

T = TypeVar("T")
R = TypeVar("R")


@dataclass(frozen=True)
class Outcome(Generic[R]):
    """Per-item result: either a value or the exception the item raised."""

    value: R | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> R:
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


async def _settle(processor: Callable[[T], Awaitable[R]], item: T) -> Outcome[R]:
    try:
        return Outcome(value=await processor(item))
    except Exception as exc:
        return Outcome(error=exc)


def _check_limit(limit: int) -> None:
    if limit < 1:
        raise ValueError("limit must be >= 1")


async def run_windowed(
    items: Sequence[T],
    limit: int,
    processor: Callable[[T], Awaitable[R]],
) -> list[Outcome[R]]:
    """Run items in consecutive chunks of `limit`, waiting for each chunk to settle."""

    _check_limit(limit)
    results: list[Outcome[R]] = []
    for start in range(0, len(items), limit):
        chunk = items[start : start + limit]
        results.extend(await asyncio.gather(*(_settle(processor, item) for item in chunk)))
    return results


async def run_sliding(
    items: Sequence[T],
    limit: int,
    processor: Callable[[T], Awaitable[R]],
) -> list[Outcome[R]]:
    """Keep `limit` items in flight, starting the next one as soon as any finishes."""

    _check_limit(limit)
    results: list[Outcome[R] | None] = [None] * len(items)
    cursor = 0

    async def worker() -> None:
        nonlocal cursor
        while cursor < len(items):
            # Claim and advance in one step; no await between them.
            index = cursor
            cursor += 1
            results[index] = await _settle(processor, items[index])

    await asyncio.gather(*(worker() for _ in range(min(limit, len(items)))))
    return [outcome for outcome in results if outcome is not None]


async def run_bounded(
    items: Sequence[T],
    limit: int,
    processor: Callable[[T], Awaitable[R]],
    *,
    mode: ConcurrencyMode = ConcurrencyMode.WINDOWED,
) -> list[Outcome[R]]:
    """Dispatch to the configured fan-out strategy."""

    match mode:
        case ConcurrencyMode.WINDOWED:
            return await run_windowed(items, limit, processor)
        case ConcurrencyMode.SLIDING:
            return await run_sliding(items, limit, processor)
        case _:
            assert_never(mode)
