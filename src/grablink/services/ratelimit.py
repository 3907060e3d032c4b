"""Fixed-window per-client request quotas."""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Optional

from grablink.infra.store import InMemoryStore, KeyValueStore


@dataclass(frozen=True)
class RateWindow:
    count: int
    reset_at: float


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(self.reset_at)),
        }

    def retry_after(self, now: float) -> int:
        return max(0, int(self.reset_at - now + 0.999))


class RateLimiter:
    """Count requests per client identity in fixed windows.

    Notes
    -----
    - A fresh or elapsed window restarts at count 1. Otherwise every call
      increments the count, rejected calls included, and the call is allowed
      while the count stays within ``limit``.
    - The read-modify-write runs through ``KeyValueStore.update`` so concurrent
      requests cannot lose increments.
    - Separate limiters (or key namespaces) keep quotas of different endpoints apart.
    """

    def __init__(
        self,
        store: Optional[KeyValueStore[RateWindow]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store: KeyValueStore[RateWindow] = store if store is not None else InMemoryStore()
        self._clock: Callable[[], float] = clock

    async def check(self, client_id: str, limit: int, window: float) -> RateLimitDecision:
        now: float = self._clock()

        def bump(current: Optional[RateWindow]) -> RateWindow:
            if current is None or now >= current.reset_at:
                return RateWindow(count=1, reset_at=now + window)
            return RateWindow(count=current.count + 1, reset_at=current.reset_at)

        updated: Optional[RateWindow] = await self._store.update(client_id, bump)
        if updated is None:
            raise RuntimeError(f"Rate-limit store dropped the window for {client_id!r}")
        return RateLimitDecision(
            allowed=updated.count <= limit,
            limit=limit,
            remaining=max(0, limit - updated.count),
            reset_at=updated.reset_at,
        )

    async def sweep(self) -> int:
        now: float = self._clock()
        removed: int = 0

        def drop_elapsed(current: Optional[RateWindow]) -> Optional[RateWindow]:
            if current is None or now >= current.reset_at:
                return None
            return current

        for client_id, entry in await self._store.items():
            if now >= entry.reset_at and await self._store.update(client_id, drop_elapsed) is None:
                removed += 1
        return removed
