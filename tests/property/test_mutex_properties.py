"""Property-based tests for SerialMutex ordering using Hypothesis."""

from __future__ import annotations

import asyncio

import pytest

hypothesis = pytest.importorskip("hypothesis")
from hypothesis import given, settings, strategies as st

from contention.db.mutex import SerialMutex

# Each operation either succeeds or fails, after yielding a few times
operation_strategy = st.lists(
    st.tuples(st.integers(min_value=0, max_value=3), st.booleans()),
    min_size=1,
    max_size=25,
)


async def _drive(plan: list[tuple[int, bool]]) -> tuple[list[int], list[object], int]:
    mutex = SerialMutex()
    started: list[int] = []
    active = 0
    peak = 0

    def make(index: int, yields: int, fails: bool):
        async def _op() -> int:
            nonlocal active, peak
            started.append(index)
            active += 1
            peak = max(peak, active)
            for _ in range(yields):
                await asyncio.sleep(0)
            active -= 1
            if fails:
                raise ValueError(index)
            return index

        return _op

    tasks = [mutex.run(make(i, yields, fails)) for i, (yields, fails) in enumerate(plan)]
    outcomes = await asyncio.gather(*tasks, return_exceptions=True)
    return started, outcomes, peak


class TestSerialMutexProperties:
    @given(plan=operation_strategy)
    @settings(max_examples=60, deadline=None)
    def test_start_order_matches_call_order(self, plan: list[tuple[int, bool]]) -> None:
        started, outcomes, peak = asyncio.run(_drive(plan))

        assert started == list(range(len(plan)))
        assert peak == 1
        for index, ((_, fails), outcome) in enumerate(zip(plan, outcomes, strict=True)):
            if fails:
                assert isinstance(outcome, ValueError)
                assert outcome.args == (index,)
            else:
                assert outcome == index
