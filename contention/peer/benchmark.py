"""The contended-write workload.

Until the deadline, each iteration commits one immediate-exclusive transaction
that bumps the shared counter and appends a log row for this peer. After the
deadline, rows stamped past the deadline are trimmed and the rest are counted
per peer.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from contention.core.time_utils import now_ms
from contention.db.schema import INCREMENT_SQL, RECONCILE_SQL

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping

    from contention.db.channel import QueryResult

    QueryFn = Callable[[str, Mapping[str, Any] | None], Awaitable[list[QueryResult]]]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BenchmarkResult:
    """Outcome of one peer's run."""

    peer_id: str
    end_time: int
    committed: int
    counts: dict[str, int] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    def summary(self) -> str:
        return f"transactions by peer {json.dumps(self.counts, sort_keys=True)} => {self.total}"


class BenchmarkLoop:
    """Drive increment transactions through ``query`` until a deadline."""

    def __init__(
        self,
        query: QueryFn,
        peer_id: str,
        *,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._query = query
        self.peer_id = peer_id
        self._clock = clock

    async def run(self, end_time: int) -> BenchmarkResult:
        """Commit increments until ``end_time`` (epoch ms), then reconcile.

        There is no retry: the first failed transaction aborts the run.
        """
        started = time.perf_counter()
        committed = 0
        while (now := self._clock()) < end_time:
            # The row is stamped with the reading that passed the deadline check
            await self._query(INCREMENT_SQL, {"time": now, "peer_id": self.peer_id})
            committed += 1

        result = await self.reconcile(end_time, committed=committed)
        logger.info(
            "benchmark_finished",
            extra={
                "peer_id": self.peer_id,
                "end_time": end_time,
                "committed": committed,
                "total": result.total,
                "duration_ms": round((time.perf_counter() - started) * 1000, 1),
            },
        )
        return result

    async def reconcile(self, end_time: int, *, committed: int = 0) -> BenchmarkResult:
        """Trim rows stamped after ``end_time`` and count the rest per peer.

        Running this again without new commits yields the same counts.
        """
        results = await self._query(RECONCILE_SQL, {"end_time": end_time})
        counts: dict[str, int] = {}
        if results:
            for peer_id, transactions in results[0].rows:
                counts[str(peer_id)] = int(transactions)
        return BenchmarkResult(
            peer_id=self.peer_id,
            end_time=end_time,
            committed=committed,
            counts=counts,
        )
