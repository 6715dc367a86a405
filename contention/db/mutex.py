"""Minimal FIFO mutex for async operations.

``SerialMutex.run`` links each operation onto a tail future at call time, so
operations start in the order ``run`` was called, one at a time. A failing
operation settles the tail like any other, so the next one still runs.

There is no timeout: an operation that never finishes wedges the mutex.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

T = TypeVar("T")


def _settle(future: asyncio.Future[None]) -> None:
    if not future.done():
        future.set_result(None)


class SerialMutex:
    """Run async operations strictly one after another.

    Example:
        mutex = SerialMutex()
        first = mutex.run(lambda: conn.query("SELECT 1"))
        second = mutex.run(lambda: conn.query("SELECT 2"))
        await asyncio.gather(first, second)  # second starts after first settles
    """

    def __init__(self) -> None:
        # Resolves (never fails) once every operation queued so far has settled
        self._tail: asyncio.Future[None] | None = None

    def run(self, operation: Callable[[], Awaitable[T]]) -> asyncio.Future[T]:
        """Queue ``operation`` behind everything queued before it.

        Must be called from a running event loop. The returned task resolves
        to the outcome of ``operation`` alone.
        """
        loop = asyncio.get_running_loop()
        previous = self._tail
        settled: asyncio.Future[None] = loop.create_future()
        self._tail = settled

        task = loop.create_task(self._after(previous, operation))

        def _rearm(_task: asyncio.Future[T]) -> None:
            # A task cancelled while waiting must not let later work overtake `previous`
            if previous is None or previous.done():
                _settle(settled)
            else:
                previous.add_done_callback(lambda _prev: _settle(settled))

        task.add_done_callback(_rearm)
        return task

    @property
    def idle(self) -> bool:
        """True when no queued operation is still pending."""
        return self._tail is None or self._tail.done()

    @staticmethod
    async def _after(
        previous: asyncio.Future[None] | None,
        operation: Callable[[], Awaitable[T]],
    ) -> T:
        if previous is not None and not previous.done():
            await asyncio.wait((previous,))
        return await operation()
