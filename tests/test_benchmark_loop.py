"""Tests for the benchmark loop and its reconciliation."""

from __future__ import annotations

import json

import pytest
import pytest_asyncio

from contention.config import resolve_backend
from contention.db.backends import connection_factory
from contention.db.job_pool import ConnectionJobPool
from contention.db.models import read_snapshot
from contention.db.schema import INCREMENT_SQL, RESET_SQL
from contention.domain.exceptions import QueryError
from contention.peer.benchmark import BenchmarkLoop, BenchmarkResult


class StepClock:
    """Advances by ``step`` milliseconds on every reading."""

    def __init__(self, start: int = 1_000, step: int = 1) -> None:
        self.now = start
        self.step = step

    def __call__(self) -> int:
        value = self.now
        self.now += self.step
        return value


@pytest_asyncio.fixture
async def pool(temp_db_path: str):
    backend = resolve_backend("wal", db_path=temp_db_path)
    pool = await ConnectionJobPool.open(connection_factory(backend), size=2)
    await pool.query(RESET_SQL)
    yield pool
    await pool.close()


@pytest.mark.asyncio
class TestBenchmarkLoop:
    async def test_commits_until_deadline(self, pool, temp_db_path: str) -> None:
        clock = StepClock(start=1_000)
        loop = BenchmarkLoop(pool.query, "peer-a", clock=clock)

        result = await loop.run(1_010)

        assert result.committed == 10
        assert result.counts == {"peer-a": 10}
        assert result.total == 10
        snapshot = read_snapshot(temp_db_path)
        assert snapshot.counter == 10
        assert snapshot.latest_time == 1_009

    async def test_past_deadline_commits_nothing(self, pool) -> None:
        loop = BenchmarkLoop(pool.query, "peer-a", clock=StepClock(start=5_000))

        result = await loop.run(4_000)

        assert result.committed == 0
        assert result.counts == {}

    async def test_reconcile_trims_foreign_late_rows(self, pool) -> None:
        for stamp, peer in ((10, "a"), (11, "b"), (25, "b")):
            await pool.query(INCREMENT_SQL, {"time": stamp, "peer_id": peer})
        loop = BenchmarkLoop(pool.query, "a", clock=StepClock())

        first = await loop.reconcile(20)
        second = await loop.reconcile(20)

        assert first.counts == {"a": 1, "b": 1}
        assert second.counts == first.counts

    async def test_failure_aborts_run(self) -> None:
        calls = 0

        async def query(sql, params=None):
            nonlocal calls
            calls += 1
            if calls == 3:
                msg = "database is locked"
                raise QueryError(msg)
            return []

        loop = BenchmarkLoop(query, "peer-a", clock=StepClock())

        with pytest.raises(QueryError, match="locked"):
            await loop.run(10_000)
        assert calls == 3


def test_summary_format() -> None:
    result = BenchmarkResult(peer_id="a", end_time=1, committed=3, counts={"b": 2, "a": 3})

    text = result.summary()

    assert text.startswith("transactions by peer ")
    assert text.endswith(" => 5")
    assert json.loads(text.removeprefix("transactions by peer ").split(" => ")[0]) == {
        "a": 3,
        "b": 2,
    }
