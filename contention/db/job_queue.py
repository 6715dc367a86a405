"""Per-job FIFO queue with a single in-flight slot.

Operations submitted here run sequentially on a dedicated asyncio worker task.
Each submission gets its own future, so one failing operation is reported to
its caller and the worker simply moves on to the next item.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from contention.domain.exceptions import QueryError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

# Sentinel used to signal the worker to shut down.
_SENTINEL = None

_Item = tuple["Callable[[], Awaitable[Any]]", "asyncio.Future[Any]", str]


class JobQueue:
    """Sequentially executes the operations routed to one pool job.

    Usage::

        queue = JobQueue(name="job-0")
        queue.start()

        future = queue.submit(lambda: conn.query("SELECT 1"), operation_name="select")
        rows = await future

        await queue.stop()
    """

    def __init__(self, name: str = "job") -> None:
        self.name = name
        self._queue: asyncio.Queue[_Item | None] = asyncio.Queue()
        self._worker_task: asyncio.Task[None] | None = None
        self._in_flight: str | None = None
        self._processed = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Spawn the background worker coroutine.

        Must be called once after the event loop is running.
        """
        if self._worker_task is not None:
            logger.warning("job_queue_already_started", extra={"queue": self.name})
            return
        self._worker_task = asyncio.create_task(self._worker(), name=f"{self.name}-worker")
        logger.debug("job_queue_started", extra={"queue": self.name})

    async def stop(self) -> None:
        """Stop the worker after the in-flight operation; fail what is still queued."""
        if self._worker_task is None:
            return

        failed = 0
        while not self._queue.empty():
            item = self._queue.get_nowait()
            self._queue.task_done()
            if item is not _SENTINEL:
                if not item[1].done():
                    item[1].set_exception(
                        QueryError(
                            "Connection pool is closed",
                            details={"queue": self.name, "operation": item[2]},
                        )
                    )
                failed += 1

        await self._queue.put(_SENTINEL)
        try:
            await self._worker_task
        finally:
            self._worker_task = None
            logger.debug(
                "job_queue_stopped",
                extra={"queue": self.name, "failed": failed, "processed": self._processed},
            )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._worker_task is not None

    @property
    def pending(self) -> int:
        """Number of operations waiting behind the in-flight one."""
        return self._queue.qsize()

    @property
    def in_flight(self) -> str | None:
        """Name of the operation currently executing, if any."""
        return self._in_flight

    def submit(
        self,
        operation: Callable[[], Awaitable[Any]],
        *,
        operation_name: str = "job_operation",
    ) -> asyncio.Future[Any]:
        """Append ``operation`` to the queue and return a future for its outcome.

        The item is enqueued synchronously, so submission order is execution order.

        Raises:
            RuntimeError: If the worker has not been started.
        """
        if self._worker_task is None:
            msg = f"JobQueue {self.name} is not running"
            raise RuntimeError(msg)
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._queue.put_nowait((operation, future, operation_name))
        return future

    # ------------------------------------------------------------------
    # Internal worker
    # ------------------------------------------------------------------

    async def _worker(self) -> None:
        """Process queued items sequentially until the sentinel is received."""
        while True:
            item = await self._queue.get()
            if item is _SENTINEL:
                self._queue.task_done()
                break
            await self._process_item(item)
            self._queue.task_done()

    async def _process_item(self, item: _Item) -> None:
        """Run one operation and hand its outcome to the submitter's future."""
        operation, future, operation_name = item
        if future.cancelled():
            return
        self._in_flight = operation_name
        try:
            result = await self._execute(operation)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            if not future.done():
                future.set_exception(exc)
        else:
            if not future.done():
                future.set_result(result)
        finally:
            self._in_flight = None
            self._processed += 1

    async def _execute(self, operation: Callable[[], Awaitable[Any]]) -> Any:
        """Run the operation callable.

        Extracted as a separate method so tests can override or mock it.
        """
        return await operation()
