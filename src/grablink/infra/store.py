"""Key-value storage used by the probe cache, download registry and rate limiter.

The services only depend on the ``KeyValueStore`` protocol, so the in-memory,
lock-guarded implementation below can be swapped for a shared external store
without touching orchestration logic.
"""
from __future__ import annotations

import asyncio
from typing import Callable, Dict, Generic, Optional, Protocol, TypeVar

V = TypeVar("V")


class KeyValueStore(Protocol[V]):
    """Minimal async storage interface."""

    async def get(self, key: str) -> Optional[V]: ...

    async def put(self, key: str, value: V) -> None: ...

    async def delete(self, key: str) -> Optional[V]: ...

    async def update(self, key: str, fn: Callable[[Optional[V]], Optional[V]]) -> Optional[V]: ...

    async def items(self) -> list[tuple[str, V]]: ...

    async def size(self) -> int: ...


class InMemoryStore(Generic[V]):
    """Process-local store guarded by an ``asyncio.Lock``.

    Notes
    -----
    - Process-local only: no persistence, no cross-process coordination.
    - ``update`` runs a read-modify-write under the lock, which is what makes
      counters (e.g., rate-limit windows) safe under concurrent requests.
    - ``items`` returns a snapshot; callers may mutate the store while iterating it.
    """

    def __init__(self) -> None:
        self._data: Dict[str, V] = {}
        self._lock: asyncio.Lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[V]:
        async with self._lock:
            return self._data.get(key)

    async def put(self, key: str, value: V) -> None:
        async with self._lock:
            self._data[key] = value

    async def delete(self, key: str) -> Optional[V]:
        async with self._lock:
            return self._data.pop(key, None)

    async def update(self, key: str, fn: Callable[[Optional[V]], Optional[V]]) -> Optional[V]:
        """Atomically replace the value for ``key`` with ``fn(current)``.

        Returning ``None`` from ``fn`` removes the key.
        """

        async with self._lock:
            value: Optional[V] = fn(self._data.get(key))
            if value is None:
                self._data.pop(key, None)
            else:
                self._data[key] = value
            return value

    async def items(self) -> list[tuple[str, V]]:
        async with self._lock:
            return list(self._data.items())

    async def size(self) -> int:
        async with self._lock:
            return len(self._data)
