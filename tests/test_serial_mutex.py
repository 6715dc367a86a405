"""Tests for SerialMutex ordering and failure isolation."""

from __future__ import annotations

import asyncio
import unittest

from contention.db.mutex import SerialMutex


class TestSerialMutex(unittest.IsolatedAsyncioTestCase):
    async def test_operations_run_in_call_order(self) -> None:
        mutex = SerialMutex()
        order: list[int] = []

        def make(value: int, delay: float):
            async def _op() -> int:
                await asyncio.sleep(delay)
                order.append(value)
                return value

            return _op

        # Earlier operations sleep longer; completion order must still follow call order
        tasks = [mutex.run(make(i, 0.01 * (5 - i))) for i in range(5)]
        results = await asyncio.gather(*tasks)

        self.assertEqual(results, [0, 1, 2, 3, 4])
        self.assertEqual(order, [0, 1, 2, 3, 4])

    async def test_never_overlaps(self) -> None:
        mutex = SerialMutex()
        active = 0
        peak = 0

        async def _op() -> None:
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0)
            await asyncio.sleep(0)
            active -= 1

        await asyncio.gather(*(mutex.run(_op) for _ in range(20)))
        self.assertEqual(peak, 1)

    async def test_failure_is_isolated_to_its_caller(self) -> None:
        mutex = SerialMutex()

        async def _ok() -> str:
            return "ok"

        async def _boom() -> str:
            msg = "boom"
            raise RuntimeError(msg)

        first = mutex.run(_ok)
        second = mutex.run(_boom)
        third = mutex.run(_ok)

        self.assertEqual(await first, "ok")
        with self.assertRaisesRegex(RuntimeError, "boom"):
            await second
        self.assertEqual(await third, "ok")

    async def test_second_waits_for_first(self) -> None:
        mutex = SerialMutex()
        release = asyncio.Event()
        started: list[str] = []

        async def _first() -> None:
            started.append("first")
            await release.wait()

        async def _second() -> None:
            started.append("second")

        first = mutex.run(_first)
        second = mutex.run(_second)
        await asyncio.sleep(0.01)
        self.assertEqual(started, ["first"])
        self.assertFalse(mutex.idle)

        release.set()
        await asyncio.gather(first, second)
        self.assertEqual(started, ["first", "second"])
        self.assertTrue(mutex.idle)

    async def test_cancelled_waiter_does_not_let_later_work_overtake(self) -> None:
        mutex = SerialMutex()
        release = asyncio.Event()
        started: list[str] = []

        async def _first() -> None:
            started.append("first")
            await release.wait()

        async def _never() -> None:
            started.append("cancelled")

        async def _third() -> None:
            started.append("third")

        first = mutex.run(_first)
        middle = mutex.run(_never)
        third = mutex.run(_third)
        await asyncio.sleep(0)

        middle.cancel()
        await asyncio.sleep(0.01)
        self.assertEqual(started, ["first"])

        release.set()
        await first
        await third
        self.assertEqual(started, ["first", "third"])
        self.assertTrue(middle.cancelled())

    async def test_idle_when_fresh(self) -> None:
        self.assertTrue(SerialMutex().idle)


if __name__ == "__main__":
    unittest.main()
