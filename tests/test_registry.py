"""Unit tests for the ephemeral download registry."""
from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from grablink.domain.downloads import MediaKind
from grablink.services.registry import DownloadRegistry


class Clock:
    def __init__(self, now: float = 0.0) -> None:
        self.now: float = now

    def __call__(self) -> float:
        return self.now


class TestDownloadRegistry(unittest.IsolatedAsyncioTestCase):
    """Expiry, exactly-once retrieval and file cleanup."""

    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.dir: Path = Path(self._tmp.name)
        self.clock = Clock(100.0)
        self.registry = DownloadRegistry(ttl=60, clock=self.clock)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def make_file(self, name: str) -> Path:
        path: Path = self.dir / name
        path.write_bytes(b"data")
        return path

    async def test_get_before_expiry(self) -> None:
        path = self.make_file("dl_1.mp4")
        entry = await self.registry.put("dl_1", path, "nice.mp4", {"title": "t"}, MediaKind.VIDEO)
        self.assertEqual(entry.expires_at, 160.0)
        self.assertTrue(entry.file_path.is_absolute())

        self.clock.now = 159.9
        found = await self.registry.get("dl_1")
        self.assertIsNotNone(found)
        self.assertEqual(found.filename, "nice.mp4")
        self.assertTrue(path.exists())

    async def test_get_after_expiry_deletes_entry_and_file(self) -> None:
        path = self.make_file("dl_2.mp4")
        await self.registry.put("dl_2", path, "f.mp4", None, MediaKind.VIDEO)
        self.clock.now = 160.0
        self.assertIsNone(await self.registry.get("dl_2"))
        self.assertFalse(path.exists())
        self.assertEqual(await self.registry.size(), 0)

    async def test_take_is_exactly_once(self) -> None:
        path = self.make_file("dl_3.mp3")
        await self.registry.put("dl_3", path, "f.mp3", None, MediaKind.AUDIO)
        first = await self.registry.take("dl_3")
        self.assertIsNotNone(first)
        self.assertIsNone(await self.registry.take("dl_3"))
        self.assertIsNone(await self.registry.get("dl_3"))
        # The caller owns the file after take.
        self.assertTrue(path.exists())

    async def test_take_expired_deletes_file(self) -> None:
        path = self.make_file("dl_4.mp4")
        await self.registry.put("dl_4", path, "f.mp4", None, MediaKind.VIDEO, ttl=1)
        self.clock.now = 200.0
        self.assertIsNone(await self.registry.take("dl_4"))
        self.assertFalse(path.exists())

    async def test_sweep_removes_only_expired(self) -> None:
        old = self.make_file("old.mp4")
        new = self.make_file("new.mp4")
        await self.registry.put("old", old, "o.mp4", None, MediaKind.VIDEO, ttl=10)
        await self.registry.put("new", new, "n.mp4", None, MediaKind.VIDEO, ttl=100)
        self.clock.now = 150.0
        self.assertEqual(await self.registry.sweep(), 1)
        self.assertFalse(old.exists())
        self.assertTrue(new.exists())
        self.assertIsNotNone(await self.registry.get("new"))

    async def test_missing_file_does_not_break_expiry(self) -> None:
        path = self.make_file("gone.mp4")
        await self.registry.put("gone", path, "g.mp4", None, MediaKind.VIDEO)
        path.unlink()
        self.clock.now = 1000.0
        self.assertEqual(await self.registry.sweep(), 1)

    async def test_unknown_id(self) -> None:
        self.assertIsNone(await self.registry.get("nope"))
        self.assertIsNone(await self.registry.take("nope"))


if __name__ == "__main__":
    unittest.main()
