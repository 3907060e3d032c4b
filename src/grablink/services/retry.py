"""Bounded retries with platform-dependent backoff, built on tenacity."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
    wait_incrementing,
)
from tenacity.wait import wait_base

from grablink.core.config import Settings
from grablink.core.errors import GrabError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Backoff:
    """Retry budget and delay shape for one class of platforms.

    Notes
    -----
    - ``exponential`` delays: ``base * 2 ** (n - 1)`` before retry ``n`` plus up
      to ``jitter * base`` seconds of random spread, capped at ``max_delay``.
    - linear delays: ``base * n`` before retry ``n``, capped at ``max_delay``.
    """

    max_attempts: int
    base_delay: float
    exponential: bool = False
    max_delay: float = 30.0
    jitter: float = 0.0

    def wait(self) -> wait_base:
        if self.exponential:
            return wait_exponential_jitter(
                initial=self.base_delay,
                max=self.max_delay,
                exp_base=2,
                jitter=self.base_delay * self.jitter,
            )
        return wait_incrementing(start=self.base_delay, increment=self.base_delay, max=self.max_delay)


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, GrabError) and exc.retryable


class RetryPolicy:
    """Run an async operation with bounded attempts.

    Notes
    -----
    - Only ``GrabError`` instances whose kind is retryable (network, timeout,
      upstream rate limit) trigger another attempt; every other failure is
      re-raised immediately.
    - Fragile platforms use the exponential/jittered ``Backoff``; everything else
      the light linear one.
    - The last failure itself is re-raised, never a ``tenacity.RetryError``.
    """

    def __init__(
        self,
        fragile: Backoff,
        robust: Backoff,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.fragile: Backoff = fragile
        self.robust: Backoff = robust
        self._sleep: Callable[[float], Awaitable[None]] = sleep

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "RetryPolicy":
        fragile: Backoff = Backoff(
            max_attempts=settings.fragile_max_attempts,
            base_delay=settings.fragile_base_delay,
            exponential=True,
            max_delay=settings.fragile_max_delay,
            jitter=settings.retry_jitter,
        )
        robust: Backoff = Backoff(
            max_attempts=settings.robust_max_attempts,
            base_delay=settings.robust_base_delay,
        )
        return cls(fragile, robust, **kwargs)

    def retrying(self, backoff: Backoff, label: str = "") -> AsyncRetrying:
        """Build the tenacity controller for one ``run``."""

        def log_retry(state: RetryCallState) -> None:
            err = state.outcome.exception() if state.outcome else None
            delay: float = state.next_action.sleep if state.next_action else 0.0
            logger.warning(
                "Retrying after transient failure",
                extra={
                    "operation": label,
                    "kind": err.kind.value if isinstance(err, GrabError) else None,
                    "attempt": state.attempt_number + 1,
                    "delay": round(delay, 3),
                },
            )

        return AsyncRetrying(
            retry=retry_if_exception(_is_transient),
            stop=stop_after_attempt(max(1, backoff.max_attempts)),
            wait=backoff.wait(),
            sleep=self._sleep,
            before_sleep=log_retry,
            reraise=True,
        )

    async def run(self, operation: Callable[[], Awaitable[T]], *, fragile: bool = False, label: str = "") -> T:
        """Run ``operation`` until it succeeds or the budget is spent.

        Parameters
        ----------
        operation: Callable[[], Awaitable[T]]
            Zero-argument coroutine factory; called once per attempt.
        fragile: bool
            Select the fragile-platform backoff.
        label: str
            Short name used in log lines.

        Raises
        ------
        GrabError
            The last failure once attempts are exhausted, or the first non-retryable one.
        """

        backoff: Backoff = self.fragile if fragile else self.robust
        return await self.retrying(backoff, label)(operation)
