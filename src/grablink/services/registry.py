"""Ephemeral registry of published downloads."""
from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Callable, Optional

from grablink.domain.downloads import MediaKind, RegistryEntry
from grablink.infra.fs import safe_unlink
from grablink.infra.store import InMemoryStore, KeyValueStore

logger = logging.getLogger(__name__)


class DownloadRegistry:
    """Map download ids to files awaiting retrieval.

    Notes
    -----
    - An expired entry is indistinguishable from a missing one; looking it up
      deletes the entry and its file.
    - ``sweep`` does the same proactively for every expired entry.
    - ``take`` removes the entry on success, giving exactly-once retrieval; the
      caller becomes responsible for the file.
    """

    def __init__(
        self,
        ttl: float,
        store: Optional[KeyValueStore[RegistryEntry]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ttl: float = ttl
        self._store: KeyValueStore[RegistryEntry] = store if store is not None else InMemoryStore()
        self._clock: Callable[[], float] = clock

    async def put(
        self,
        download_id: str,
        file_path: Path,
        filename: str,
        metadata: Any,
        media: MediaKind,
        ttl: Optional[float] = None,
    ) -> RegistryEntry:
        entry: RegistryEntry = RegistryEntry(
            file_path=file_path.resolve(),
            filename=filename,
            metadata=metadata,
            format=media,
            expires_at=self._clock() + (self.ttl if ttl is None else ttl),
        )
        previous: Optional[RegistryEntry] = await self._store.delete(download_id)
        if previous is not None and previous.file_path != entry.file_path:
            safe_unlink(previous.file_path)
        await self._store.put(download_id, entry)
        logger.info("Download registered", extra={"download_id": download_id, "path": str(entry.file_path)})
        return entry

    async def get(self, download_id: str) -> Optional[RegistryEntry]:
        entry: Optional[RegistryEntry] = await self._store.get(download_id)
        if entry is None:
            return None
        if entry.expired(self._clock()):
            await self._expire(download_id)
            return None
        return entry

    async def take(self, download_id: str) -> Optional[RegistryEntry]:
        entry: Optional[RegistryEntry] = await self._store.delete(download_id)
        if entry is None:
            return None
        if entry.expired(self._clock()):
            safe_unlink(entry.file_path)
            return None
        return entry

    async def sweep(self) -> int:
        now: float = self._clock()
        removed: int = 0
        for download_id, entry in await self._store.items():
            if entry.expired(now) and await self._expire(download_id):
                removed += 1
        return removed

    async def size(self) -> int:
        return await self._store.size()

    async def _expire(self, download_id: str) -> bool:
        entry: Optional[RegistryEntry] = await self._store.delete(download_id)
        if entry is None:
            return False
        safe_unlink(entry.file_path)
        logger.debug("Download expired", extra={"download_id": download_id})
        return True
