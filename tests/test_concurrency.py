"""Bounded fan-out: ordering, concurrency ceiling and collect-all errors."""

from __future__ import annotations

import asyncio

import pytest

from bpo_engine.models.enums import ConcurrencyMode
from bpo_engine.services.concurrency import run_bounded, run_sliding, run_windowed


async def double(x: int) -> int:
    await asyncio.sleep(0)
    return x * 2


class Gauge:
    """Processor that records the peak number of items in flight."""

    def __init__(self) -> None:
        self.active = 0
        self.peak = 0

    async def __call__(self, x: int) -> int:
        self.active += 1
        self.peak = max(self.peak, self.active)
        # Uneven durations so sliding workers interleave.
        await asyncio.sleep(0.001 * (x % 3))
        self.active -= 1
        return x


def test_windowed_doubles_in_order() -> None:
    outcomes = asyncio.run(run_windowed([1, 2, 3, 4, 5], 2, double))
    assert [o.unwrap() for o in outcomes] == [2, 4, 6, 8, 10]


@pytest.mark.parametrize("runner", [run_windowed, run_sliding])
@pytest.mark.parametrize("size,limit", [(0, 1), (1, 1), (5, 2), (7, 3), (3, 10), (12, 4)])
def test_order_preserved_and_limit_respected(runner, size: int, limit: int) -> None:
    gauge = Gauge()
    items = list(range(size))
    outcomes = asyncio.run(runner(items, limit, gauge))
    assert [o.unwrap() for o in outcomes] == items
    assert gauge.peak <= limit


def test_sliding_keeps_limit_in_flight() -> None:
    gauge = Gauge()
    asyncio.run(run_sliding(list(range(9)), 3, gauge))
    assert gauge.peak == 3


def test_failing_item_does_not_abort_siblings() -> None:
    async def maybe_fail(x: int) -> int:
        if x == 3:
            raise RuntimeError("three")
        return x

    for mode in ConcurrencyMode:
        outcomes = asyncio.run(run_bounded([1, 2, 3, 4], 2, maybe_fail, mode=mode))
        assert [o.ok for o in outcomes] == [True, True, False, True]
        assert isinstance(outcomes[2].error, RuntimeError)
        with pytest.raises(RuntimeError):
            outcomes[2].unwrap()


@pytest.mark.parametrize("runner", [run_windowed, run_sliding])
def test_limit_below_one_is_rejected(runner) -> None:
    with pytest.raises(ValueError):
        asyncio.run(runner([1], 0, double))


class Timeline:
    """Processor that logs start/end events; even items are slow, odd items fast."""

    def __init__(self) -> None:
        self.events: list[tuple[str, int]] = []

    async def __call__(self, x: int) -> int:
        self.events.append(("start", x))
        await asyncio.sleep(0.02 if x % 2 == 0 else 0.001)
        self.events.append(("end", x))
        return x

    def position(self, kind: str, x: int) -> int:
        return self.events.index((kind, x))


def test_windowed_waits_for_whole_chunk_before_next() -> None:
    timeline = Timeline()
    items = list(range(6))
    asyncio.run(run_windowed(items, 2, timeline))

    chunks = [items[i : i + 2] for i in range(0, len(items), 2)]
    for current, following in zip(chunks, chunks[1:]):
        last_end = max(timeline.position("end", x) for x in current)
        first_start = min(timeline.position("start", x) for x in following)
        assert first_start > last_end


def test_sliding_starts_next_item_while_slow_sibling_runs() -> None:
    timeline = Timeline()
    asyncio.run(run_sliding(list(range(6)), 2, timeline))

    # Item 1 finishes fast, so item 2 starts before slow item 0 is done.
    assert timeline.position("start", 2) < timeline.position("end", 0)
