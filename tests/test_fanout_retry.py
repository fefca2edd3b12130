import asyncio
import unittest

from rotator.fanout import Failed, fan_out
from rotator.retry import Exhausted, Ok, retry


class Flaky:
    def __init__(self, failures: int, value="done"):
        self.failures = failures
        self.value = value
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError(f"failure {self.calls}")
        return self.value


class TestRetry(unittest.IsolatedAsyncioTestCase):
    async def test_first_success_is_returned(self):
        op = Flaky(failures=2)
        result = await retry(op, attempts=5, delay=0)
        self.assertIsInstance(result, Ok)
        self.assertTrue(result.ok)
        self.assertEqual(result.value, "done")
        self.assertEqual(result.attempts, 3)
        self.assertEqual(op.calls, 3)

    async def test_exhausted_keeps_last_error(self):
        op = Flaky(failures=10)
        result = await retry(op, attempts=4, delay=0)
        self.assertIsInstance(result, Exhausted)
        self.assertFalse(result.ok)
        self.assertEqual(result.attempts, 4)
        self.assertEqual(str(result.last_error), "failure 4")
        self.assertEqual(op.calls, 4)

    async def test_attempts_must_be_positive(self):
        with self.assertRaises(ValueError):
            await retry(Flaky(0), attempts=0, delay=0)

    async def test_cancellation_is_not_retried(self):
        calls = 0

        async def op():
            nonlocal calls
            calls += 1
            raise asyncio.CancelledError()

        with self.assertRaises(asyncio.CancelledError):
            await retry(op, attempts=5, delay=0)
        self.assertEqual(calls, 1)


class TestFanOut(unittest.IsolatedAsyncioTestCase):
    async def test_empty(self):
        self.assertEqual(await fan_out([]), [])

    async def test_outcomes_in_input_order_and_failures_isolated(self):
        async def ok(v):
            await asyncio.sleep(0.01 * (3 - v))
            return v

        async def boom():
            raise RuntimeError("boom")

        outcomes = await fan_out([lambda: ok(0), boom, lambda: ok(2)])
        self.assertEqual([o.ok for o in outcomes], [True, False, True])
        self.assertEqual(outcomes[0].value, 0)
        self.assertEqual(outcomes[2].value, 2)
        self.assertIsInstance(outcomes[1], Failed)
        self.assertEqual(str(outcomes[1].error), "boom")

    async def test_starts_are_staggered(self):
        loop = asyncio.get_running_loop()
        t0 = loop.time()
        started = {}

        def task(i):
            async def _run():
                started[i] = loop.time() - t0
            return _run

        stagger = 0.05
        await fan_out([task(i) for i in range(4)], stagger=stagger)
        for i in range(4):
            self.assertGreaterEqual(started[i], i * stagger - 0.01)
        self.assertLess(started[0], stagger)


if __name__ == "__main__":
    unittest.main()
