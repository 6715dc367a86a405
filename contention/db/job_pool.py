"""Round-robin query dispatch over a pool of warm connections.

Every ``query`` call is routed to the next job in cyclic order. Queries routed
to different jobs run concurrently; queries routed to the same job wait their
turn in that job's ``JobQueue``. With ``use_mutex`` all jobs additionally share
one ``SerialMutex``, which collapses the pool to fully serial execution.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from contention.db.job_queue import JobQueue
from contention.db.mutex import SerialMutex
from contention.domain.exceptions import (
    BackendConnectionError,
    ContentionError,
    PoolJobError,
    QueryError,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping

    from contention.db.channel import Connection, QueryResult

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Job:
    """One pooled connection plus its serialized call queue."""

    index: int
    connection: Connection
    queue: JobQueue


class ConnectionJobPool:
    """Load-balance queries across ``size`` independently opened connections.

    Example:
        pool = await ConnectionJobPool.open(connection_factory(config), size=4)
        results = await pool.query("SELECT value FROM kv WHERE key = 'counter'")
        await pool.close()
    """

    def __init__(self, jobs: list[Job], *, mutex: SerialMutex | None = None) -> None:
        if not jobs:
            msg = "ConnectionJobPool needs at least one job"
            raise ValueError(msg)
        self._jobs = jobs
        self._mutex = mutex
        self._cursor = 0
        self._closed = False

    @classmethod
    async def open(
        cls,
        factory: Callable[[int], Awaitable[Connection]],
        size: int = 1,
        *,
        use_mutex: bool = False,
        serialize_open: bool = False,
    ) -> ConnectionJobPool:
        """Open ``size`` connections concurrently and start one queue per job.

        Raises:
            BackendConnectionError: If any connection fails to open. Connections
                that did open are closed again before raising.
        """
        if size < 1:
            msg = f"Pool size must be positive, got {size}"
            raise ValueError(msg)

        mutex = SerialMutex() if use_mutex or serialize_open else None

        def _open(index: int) -> Awaitable[Connection]:
            if mutex is not None:
                return mutex.run(lambda: factory(index))
            return factory(index)

        outcomes = await asyncio.gather(*(_open(i) for i in range(size)), return_exceptions=True)
        opened = [o for o in outcomes if not isinstance(o, BaseException)]
        failures = [o for o in outcomes if isinstance(o, BaseException)]

        if failures:
            for connection in opened:
                await connection.close()
            first = failures[0]
            logger.error(
                "pool_open_failed",
                extra={"size": size, "failed": len(failures), "error": str(first)},
            )
            if isinstance(first, ContentionError):
                raise first
            msg = f"Failed to open connection pool: {first}"
            raise BackendConnectionError(msg, details={"size": size}) from first

        jobs: list[Job] = []
        for index, connection in enumerate(opened):
            queue = JobQueue(name=f"job-{index}")
            queue.start()
            jobs.append(Job(index=index, connection=connection, queue=queue))

        logger.info(
            "pool_opened",
            extra={"size": size, "use_mutex": use_mutex, "serialize_open": serialize_open},
        )
        return cls(jobs, mutex=mutex if use_mutex else None)

    @property
    def size(self) -> int:
        return len(self._jobs)

    @property
    def cursor(self) -> int:
        """Index of the job the next ``query`` call will be routed to."""
        return self._cursor

    @property
    def jobs(self) -> tuple[Job, ...]:
        return tuple(self._jobs)

    @property
    def closed(self) -> bool:
        return self._closed

    async def query(
        self, sql: str, params: Mapping[str, Any] | None = None
    ) -> list[QueryResult]:
        """Route one statement batch to the next job and return its results.

        Raises:
            PoolJobError: If the routed query fails. The job keeps serving
                subsequent queries.
        """
        if self._closed:
            msg = "Connection pool is closed"
            raise QueryError(msg)

        job = self._jobs[self._cursor]
        self._cursor = (self._cursor + 1) % len(self._jobs)

        def _run() -> Awaitable[list[QueryResult]]:
            if self._mutex is not None:
                return self._mutex.run(lambda: job.connection.query(sql, params))
            return job.connection.query(sql, params)

        future = job.queue.submit(_run, operation_name="query")
        try:
            return await future
        except Exception as exc:
            details = exc.details if isinstance(exc, QueryError) else {}
            logger.warning(
                "pool_job_failed",
                extra={"job": job.index, "error": str(exc), "details": details},
            )
            msg = f"Failed to run job {job.index}: {exc}"
            raise PoolJobError(msg, job_index=job.index, details=details) from exc

    async def close(self) -> None:
        """Stop every job queue, then close every connection."""
        if self._closed:
            return
        self._closed = True
        for job in self._jobs:
            await job.queue.stop()
        for job in self._jobs:
            await job.connection.close()
        logger.info("pool_closed", extra={"size": len(self._jobs)})
