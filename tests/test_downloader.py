"""Unit tests for download materialization, file discovery and publishing."""
from __future__ import annotations

import json
import os
import random
import tempfile
import time
import unittest
from pathlib import Path
from typing import Sequence

from grablink.core.config import Settings
from grablink.core.errors import ErrorKind, GrabError
from grablink.domain.downloads import AudioFormat, MediaKind
from grablink.domain.probe import Author, VideoMetadata
from grablink.infra.process import CommandResult
from grablink.services.command import CommandBuilder
from grablink.services.downloader import DownloadOrchestrator, DownloadPipeline, build_display_filename
from grablink.services.locate import (
    DirectoryScanStrategy,
    ExpectedPathStrategy,
    LocateContext,
    OutputMarkerStrategy,
)
from grablink.services.probe import ExtractionService
from grablink.services.registry import DownloadRegistry
from grablink.services.retry import RetryPolicy
from grablink.services.transcode import TranscodingAdapter

from _fakes import FakeExecutor, RecordingSleep, engine_factory, failed, ok, output_target

INFO: dict = {"title": "Nice clip!", "uploader_id": "someone", "upload_date": "20230405", "duration": 42}


def writes_file(ext: str = "mp4", announce: bool = True, payload: bytes = b"\x00video"):
    """Build an executor outcome that writes the download and reports it like yt-dlp."""

    def run(argv: Sequence[str]) -> CommandResult:
        target: Path = Path(str(output_target(argv)).replace("%(ext)s", ext))
        target.write_bytes(payload)
        stdout: str = f'[Merger] Merging formats into "{target}"\n' if announce else ""
        return CommandResult(tuple(argv), 0, stdout, "")

    return run


class OrchestratorCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.dir: Path = Path(self._tmp.name)
        self.settings = Settings(
            temp_dir=self.dir,
            download_poll_attempts=3,
            transcode_poll_attempts=3,
            robust_max_attempts=2,
        )
        self.sleep = RecordingSleep()
        self.probe_executor = FakeExecutor(ok(json.dumps(INFO)))

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def orchestrator(self, executor: FakeExecutor) -> DownloadOrchestrator:
        builder = CommandBuilder(self.settings, program=("yt-dlp",), rng=random.Random(0))
        retry = RetryPolicy.from_settings(self.settings, sleep=self.sleep)
        extraction = ExtractionService(self.settings, self.probe_executor, builder=builder, retry=retry)
        return DownloadOrchestrator(self.settings, executor, extraction, builder=builder, retry=retry, sleep=self.sleep)


class TestMaterialize(OrchestratorCase):
    """Retry, format fallback, discovery and readiness of downloaded files."""

    async def test_materialize_reports_file_and_metadata(self) -> None:
        executor = FakeExecutor(writes_file())
        result = await self.orchestrator(executor).materialize("https://vimeo.com/1", download_id="dl_1_abc")
        self.assertEqual(result.download_id, "dl_1_abc")
        self.assertEqual(result.file_path, (self.dir / "dl_1_abc.mp4").resolve())
        self.assertTrue(result.file_path.is_absolute())
        self.assertEqual(result.platform, "vimeo")
        self.assertEqual(result.metadata.title, "Nice clip!")
        self.assertEqual(output_target(executor.calls[0]), self.dir / "dl_1_abc.%(ext)s")
        self.assertEqual(executor.timeouts[0], self.settings.download_timeout)

    async def test_generates_id_when_missing(self) -> None:
        result = await self.orchestrator(FakeExecutor(writes_file())).materialize("https://vimeo.com/1")
        self.assertTrue(result.download_id.startswith("dl_"))
        self.assertTrue(result.file_path.name.startswith(result.download_id))

    async def test_format_fallback_uses_relaxed_selector(self) -> None:
        executor = FakeExecutor(failed("ERROR: Requested format is not available"), writes_file())
        result = await self.orchestrator(executor).materialize("https://vimeo.com/1", download_id="dl_2_abc")
        self.assertTrue(result.file_path.exists())
        self.assertEqual(len(executor.calls), 2)
        first, second = executor.calls
        self.assertNotEqual(first[first.index("-f") + 1], "best")
        self.assertEqual(second[second.index("-f") + 1], "best")

    async def test_failed_fallback_raises_first_error(self) -> None:
        executor = FakeExecutor(failed("ERROR: Requested format is not available"), failed("ERROR: Video unavailable"))
        with self.assertRaises(GrabError) as ctx:
            await self.orchestrator(executor).materialize("https://vimeo.com/1")
        self.assertEqual(ctx.exception.kind, ErrorKind.UNSUPPORTED_QUALITY)
        self.assertEqual(len(executor.calls), 2)

    async def test_format_lines_on_stdout_do_not_trigger_fallback(self) -> None:
        executor = FakeExecutor(
            failed(
                "ERROR: unable to write data: [Errno 28] No space left on device",
                stdout="[info] 1: Downloading 1 format(s): 22\n[download] Destination: /tmp/x.mp4\n",
            )
        )
        with self.assertRaises(GrabError) as ctx:
            await self.orchestrator(executor).materialize("https://vimeo.com/1")
        self.assertEqual(ctx.exception.kind, ErrorKind.EXTRACTION_FAILED)
        self.assertEqual(len(executor.calls), 1)
        self.assertNotEqual(executor.calls[0][executor.calls[0].index("-f") + 1], "best")

    async def test_transient_failure_is_retried_before_success(self) -> None:
        executor = FakeExecutor(failed("ERROR: Connection reset by peer"), writes_file())
        result = await self.orchestrator(executor).materialize("https://vimeo.com/1")
        self.assertTrue(result.file_path.exists())
        self.assertEqual(len(executor.calls), 2)
        self.assertEqual(self.sleep.delays, [1.0])

    async def test_permanent_failure_is_classified(self) -> None:
        executor = FakeExecutor(failed("ERROR: Sign in to confirm your age"))
        with self.assertRaises(GrabError) as ctx:
            await self.orchestrator(executor).materialize("https://vimeo.com/1")
        self.assertEqual(ctx.exception.kind, ErrorKind.AGE_RESTRICTED)
        self.assertEqual(len(executor.calls), 1)

    async def test_unsupported_platform_never_spawns(self) -> None:
        executor = FakeExecutor(writes_file())
        with self.assertRaises(GrabError) as ctx:
            await self.orchestrator(executor).materialize("https://www.tiktok.com/@a/video/1")
        self.assertEqual(ctx.exception.kind, ErrorKind.UNSUPPORTED_PLATFORM)
        self.assertEqual(executor.calls, [])

    async def test_expected_path_without_markers(self) -> None:
        executor = FakeExecutor(writes_file(ext="webm", announce=False))
        result = await self.orchestrator(executor).materialize("https://vimeo.com/1", download_id="dl_3_abc")
        self.assertEqual(result.file_path.name, "dl_3_abc.webm")

    async def test_no_file_is_path_error(self) -> None:
        executor = FakeExecutor(ok("[download] 100% done"))
        with self.assertRaises(GrabError) as ctx:
            await self.orchestrator(executor).materialize("https://vimeo.com/1")
        self.assertEqual(ctx.exception.kind, ErrorKind.FILE_PATH_ERROR)

    async def test_file_appearing_late_is_picked_up(self) -> None:
        target: Path = self.dir / "dl_4_abc.mp4"
        self.sleep.hooks[2] = lambda: target.write_bytes(b"late")
        executor = FakeExecutor(ok(f"[download] Destination: {target}\n"))
        result = await self.orchestrator(executor).materialize("https://vimeo.com/1", download_id="dl_4_abc")
        self.assertEqual(result.file_path, target.resolve())
        self.assertEqual(len(self.sleep.delays), 2)

    async def test_file_never_appearing_is_not_found(self) -> None:
        target: Path = self.dir / "dl_5_abc.mp4"
        executor = FakeExecutor(ok(f"[download] Destination: {target}\n"))
        with self.assertRaises(GrabError) as ctx:
            await self.orchestrator(executor).materialize("https://vimeo.com/1", download_id="dl_5_abc")
        self.assertEqual(ctx.exception.kind, ErrorKind.FILE_NOT_FOUND)
        self.assertEqual(len(self.sleep.delays), 2)

    async def test_metadata_falls_back_when_probe_fails(self) -> None:
        self.probe_executor = FakeExecutor(failed("ERROR: something odd"))
        result = await self.orchestrator(FakeExecutor(writes_file())).materialize("https://vimeo.com/1")
        self.assertEqual(result.metadata.title, "Unknown")
        self.assertEqual(result.metadata.author.username, "Unknown")


class TestLocateStrategies(unittest.TestCase):
    """Each strategy of the file discovery chain in isolation."""

    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.dir: Path = Path(self._tmp.name)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def ctx(self, output: str = "", started_at: float = 0.0) -> LocateContext:
        return LocateContext(directory=self.dir, prefix="dl_9_xyz", output=output, started_at=started_at)

    def test_merge_marker_beats_destination(self) -> None:
        output = (
            f"[download] Destination: {self.dir}/dl_9_xyz.f137.mp4\n"
            f"[download] Destination: {self.dir}/dl_9_xyz.f140.m4a\n"
            f'[Merger] Merging formats into "{self.dir}/dl_9_xyz.mp4"\n'
        )
        self.assertEqual(OutputMarkerStrategy().locate(self.ctx(output)), self.dir / "dl_9_xyz.mp4")

    def test_already_downloaded_marker(self) -> None:
        output = f"[download] {self.dir}/dl_9_xyz.mp4 has already been downloaded\n"
        self.assertEqual(OutputMarkerStrategy().locate(self.ctx(output)), self.dir / "dl_9_xyz.mp4")

    def test_relative_marker_resolved_against_directory(self) -> None:
        self.assertEqual(
            OutputMarkerStrategy().locate(self.ctx("[download] Destination: dl_9_xyz.webm\n")),
            self.dir / "dl_9_xyz.webm",
        )
        self.assertIsNone(OutputMarkerStrategy().locate(self.ctx("[download] Destination: ../escape.mp4\n")))

    def test_expected_path_skips_empty_files(self) -> None:
        (self.dir / "dl_9_xyz.mp4").write_bytes(b"")
        (self.dir / "dl_9_xyz.mkv").write_bytes(b"data")
        self.assertEqual(ExpectedPathStrategy().locate(self.ctx()), self.dir / "dl_9_xyz.mkv")

    def test_scan_prefers_prefixed_file(self) -> None:
        (self.dir / "other.mp4").write_bytes(b"data")
        (self.dir / "dl_9_xyz.f137.mp4").write_bytes(b"data")
        self.assertEqual(DirectoryScanStrategy().locate(self.ctx()), self.dir / "dl_9_xyz.f137.mp4")

    def test_scan_ignores_files_older_than_the_download(self) -> None:
        old: Path = self.dir / "other.mp4"
        old.write_bytes(b"data")
        past: float = time.time() - 3600
        os.utime(old, (past, past))
        self.assertIsNone(DirectoryScanStrategy().locate(self.ctx(started_at=time.time() - 60)))

        fresh: Path = self.dir / "fresh.webm"
        fresh.write_bytes(b"data")
        self.assertEqual(DirectoryScanStrategy().locate(self.ctx(started_at=time.time() - 60)), fresh)


class TestDisplayFilename(unittest.TestCase):
    def test_sanitized_and_truncated(self) -> None:
        meta = VideoMetadata(title="A" * 60 + " é!", author=Author(username="user.name/" + "x" * 40), date="2024-02-03")
        name: str = build_display_filename(meta, "youtube", "mp4")
        platform, rest = name.split("_", 1)
        self.assertEqual(platform, "youtube")
        self.assertTrue(name.endswith("_2024-02-03.mp4"))
        self.assertIn("user_name_", name)
        self.assertNotIn("/", name)
        self.assertNotIn("é", name)
        self.assertIn("A" * 50 + "_", name)
        self.assertNotIn("A" * 51, name)

    def test_today_when_date_unknown(self) -> None:
        meta = VideoMetadata(title="t", author=Author(username="u"))
        self.assertEqual(build_display_filename(meta, "vimeo", "mp3", today="2025-01-01"), "vimeo_u_t_2025-01-01.mp3")


class TestDownloadPipeline(OrchestratorCase):
    """Materialize, optional transcode and registry publication."""

    def pipeline(self, executor: FakeExecutor, **engine_options) -> tuple[DownloadPipeline, DownloadRegistry]:
        registry = DownloadRegistry(ttl=3600)
        transcoder = TranscodingAdapter(self.settings, engine_factory(**engine_options), sleep=self.sleep)
        return DownloadPipeline(self.settings, self.orchestrator(executor), transcoder, registry), registry

    async def test_video_download_is_published(self) -> None:
        pipeline, registry = self.pipeline(FakeExecutor(writes_file()))
        response = await pipeline.run("https://vimeo.com/1", MediaKind.VIDEO)

        self.assertTrue(response.success)
        self.assertEqual(response.platform, "vimeo")
        self.assertEqual(response.video.format, "mp4")
        self.assertEqual(response.video.size, len(b"\x00video"))
        self.assertEqual(response.video.filename, "vimeo_someone_Nice_clip__2023-04-05.mp4")
        self.assertEqual(response.download.url, f"/api/video/stream?downloadId={response.downloadId}")
        self.assertEqual(response.metadata.author, "someone")

        entry = await registry.get(response.downloadId)
        self.assertIsNotNone(entry)
        self.assertTrue(entry.file_path.exists())
        self.assertEqual(entry.format, MediaKind.VIDEO)

    async def test_audio_download_transcodes_and_removes_source(self) -> None:
        pipeline, registry = self.pipeline(FakeExecutor(writes_file(ext="webm")))
        response = await pipeline.run("https://vimeo.com/1", MediaKind.AUDIO, AudioFormat.M4A)

        self.assertEqual(response.video.format, "m4a")
        self.assertTrue(response.video.filename.endswith(".m4a"))
        entry = await registry.get(response.downloadId)
        self.assertEqual(entry.file_path.suffix, ".m4a")
        self.assertEqual(list(self.dir.glob("*.webm")), [])

    async def test_audio_failure_removes_source_and_propagates(self) -> None:
        pipeline, registry = self.pipeline(
            FakeExecutor(writes_file(ext="webm")), mode="error", message="Invalid data found when processing input"
        )
        with self.assertRaises(GrabError) as ctx:
            await pipeline.run("https://vimeo.com/1", MediaKind.AUDIO)
        self.assertEqual(ctx.exception.kind, ErrorKind.AUDIO_EXTRACTION_FAILED)
        self.assertEqual(list(self.dir.iterdir()), [])
        self.assertEqual(await registry.size(), 0)


if __name__ == "__main__":
    unittest.main()
