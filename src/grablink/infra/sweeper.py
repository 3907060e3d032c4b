"""Fixed-interval background sweeps."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicSweeper:
    """Run an async callable every ``interval`` seconds until stopped.

    Notes
    -----
    - A failing sweep is logged and the loop keeps going; one bad pass must not
      stop expiry for the rest of the process lifetime.
    - ``stop`` cancels and awaits the task so no timer outlives the app (or a test).
    """

    def __init__(self, name: str, interval: float, sweep: Callable[[], Awaitable[Any]]) -> None:
        self.name: str = name
        self.interval: float = interval
        self._sweep: Callable[[], Awaitable[Any]] = sweep
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name=f"sweeper:{self.name}")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                removed = await self._sweep()
                if removed:
                    logger.info("Sweep removed expired entries", extra={"sweeper": self.name, "removed": removed})
            except Exception:  # noqa: BLE001 - keep sweeping on the next tick
                logger.exception("Sweep failed", extra={"sweeper": self.name})
