"""Unit tests for the retry policy and its backoff shapes."""
from __future__ import annotations

import unittest

from grablink.core.config import Settings
from grablink.core.errors import ErrorKind, GrabError
from grablink.services.retry import Backoff, RetryPolicy

from _fakes import RecordingSleep


def always(kind: ErrorKind):
    calls: list[int] = []

    async def operation() -> None:
        calls.append(1)
        raise GrabError(kind, "transient")

    return operation, calls


class TestBackoff(unittest.IsolatedAsyncioTestCase):
    """Delay shapes observed through the injected sleep."""

    async def _delays(self, backoff: Backoff) -> list[float]:
        sleep = RecordingSleep()
        operation, _ = always(ErrorKind.NETWORK_ERROR)
        with self.assertRaises(GrabError):
            await RetryPolicy(fragile=backoff, robust=backoff, sleep=sleep).run(operation)
        return sleep.delays

    async def test_linear(self) -> None:
        self.assertEqual(await self._delays(Backoff(4, 1.5)), [1.5, 3.0, 4.5])

    async def test_exponential_with_cap_and_jitter_bounds(self) -> None:
        delays: list[float] = await self._delays(Backoff(5, 2.0, exponential=True, max_delay=5.0, jitter=0.25))
        self.assertEqual(len(delays), 4)
        for delay, raw in zip(delays, (2.0, 4.0, 5.0, 5.0)):
            self.assertGreaterEqual(delay, raw)
            self.assertLessEqual(delay, min(raw + 0.5, 5.0))

    async def test_single_attempt_never_sleeps(self) -> None:
        self.assertEqual(await self._delays(Backoff(1, 2.0, exponential=True)), [])


class TestRetryPolicy(unittest.IsolatedAsyncioTestCase):
    """Only transient failures are retried, within the budget."""

    def _policy(self, sleep: RecordingSleep) -> RetryPolicy:
        return RetryPolicy.from_settings(
            Settings(fragile_max_attempts=3, robust_max_attempts=2, retry_jitter=0.0),
            sleep=sleep,
        )

    async def test_retries_transient_until_success(self) -> None:
        sleep = RecordingSleep()
        calls: list[int] = []

        async def operation() -> str:
            calls.append(1)
            if len(calls) < 3:
                raise GrabError(ErrorKind.NETWORK_ERROR, "flaky")
            return "done"

        result: str = await self._policy(sleep).run(operation, fragile=True)
        self.assertEqual(result, "done")
        self.assertEqual(len(calls), 3)
        self.assertEqual(sleep.delays, [2.0, 4.0])

    async def test_robust_budget_is_smaller(self) -> None:
        sleep = RecordingSleep()
        calls: list[int] = []

        async def operation() -> None:
            calls.append(1)
            raise GrabError(ErrorKind.TIMEOUT, "slow")

        with self.assertRaises(GrabError) as ctx:
            await self._policy(sleep).run(operation, fragile=False)
        self.assertEqual(ctx.exception.kind, ErrorKind.TIMEOUT)
        self.assertEqual(len(calls), 2)
        self.assertEqual(sleep.delays, [1.0])

    async def test_permanent_errors_are_not_retried(self) -> None:
        sleep = RecordingSleep()
        calls: list[int] = []

        async def operation() -> None:
            calls.append(1)
            raise GrabError(ErrorKind.VIDEO_NOT_FOUND, "gone")

        with self.assertRaises(GrabError):
            await self._policy(sleep).run(operation, fragile=True)
        self.assertEqual(len(calls), 1)
        self.assertEqual(sleep.delays, [])


if __name__ == "__main__":
    unittest.main()
