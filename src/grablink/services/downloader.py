"""Download orchestration: materialize a file with yt-dlp and publish it for retrieval."""
from __future__ import annotations

import asyncio
import logging
import re
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Sequence

from grablink.core.config import Settings
from grablink.core.errors import ErrorKind, GrabError
from grablink.domain.downloads import (
    AudioFormat,
    DownloadLink,
    DownloadResponse,
    DownloadSummaryMeta,
    MaterializedFile,
    MediaKind,
    VideoSummary,
    generate_download_id,
)
from grablink.domain.platform import SourcePlatform, require_supported
from grablink.domain.probe import Author, VideoMetadata
from grablink.infra.fs import PollPolicy, Sleep, file_size, safe_unlink, sanitize_file_prefix, wait_for_file
from grablink.infra.process import CommandExecutor, CommandResult, render_command, run_checked
from grablink.infra.urls import normalize_url
from grablink.services.command import CommandBuilder
from grablink.services.locate import DEFAULT_STRATEGIES, LocateContext, LocateStrategy, locate_file
from grablink.services.probe import ExtractionService
from grablink.services.registry import DownloadRegistry
from grablink.services.retry import RetryPolicy
from grablink.services.transcode import TranscodingAdapter

logger = logging.getLogger(__name__)

_NON_ALNUM: re.Pattern[str] = re.compile(r"[^a-z0-9]", re.IGNORECASE)


def basic_metadata() -> VideoMetadata:
    """Placeholder metadata used when the probe for a downloaded file fails."""

    return VideoMetadata(title="Unknown", author=Author(username="Unknown", displayName="Unknown"))


def build_display_filename(metadata: VideoMetadata, platform: str, ext: str, today: Optional[str] = None) -> str:
    """Suggest a download file name: ``<platform>_<author>_<title>_<date>.<ext>``.

    Notes
    -----
    - Non-alphanumeric characters become ``_``; the title is cut to 50
      characters and the author to 30.
    - ``date`` falls back to today's UTC date when the upload date is unknown.
    """

    title: str = _NON_ALNUM.sub("_", metadata.title or "video")[:50]
    author: str = _NON_ALNUM.sub("_", metadata.author.username or "unknown")[:30]
    date: str = metadata.date or today or datetime.now(timezone.utc).date().isoformat()
    return f"{platform}_{author}_{title}_{date}.{ext}"


class DownloadOrchestrator:
    """Run the download invocation and find the file it wrote.

    Notes
    -----
    - The whole invocation runs under the ``RetryPolicy``; when it still fails
      with ``UNSUPPORTED_QUALITY`` one more attempt is made with the relaxed
      ``best`` selector. If that fails too, the first error is raised.
    - The output template is ``<temp_dir>/<download_id>.%(ext)s``; the tool
      picks the extension, so the path is recovered by the locate chain and
      then confirmed by the readiness poll.
    """

    def __init__(
        self,
        settings: Settings,
        executor: CommandExecutor,
        extraction: ExtractionService,
        builder: Optional[CommandBuilder] = None,
        retry: Optional[RetryPolicy] = None,
        strategies: Sequence[LocateStrategy] = DEFAULT_STRATEGIES,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._settings: Settings = settings
        self._executor: CommandExecutor = executor
        self._extraction: ExtractionService = extraction
        self._builder: CommandBuilder = builder or CommandBuilder(settings)
        self._retry: RetryPolicy = retry or RetryPolicy.from_settings(settings)
        self._strategies: Sequence[LocateStrategy] = strategies
        self._sleep: Sleep = sleep

    async def materialize(
        self,
        url: str,
        media: MediaKind = MediaKind.VIDEO,
        download_id: Optional[str] = None,
    ) -> MaterializedFile:
        """Download ``url`` into the scratch directory.

        Parameters
        ----------
        url: str
            Validated video URL.
        media: MediaKind
            ``audio`` selects the best audio stream; the transcode happens later.
        download_id: Optional[str]
            Identifier to use as the file prefix; generated when omitted.

        Returns
        -------
        MaterializedFile
            The absolute path of a non-empty file plus metadata for naming.

        Raises
        ------
        GrabError
            Classified tool failure, ``FILE_PATH_ERROR`` or ``FILE_NOT_FOUND``.
        """

        platform: SourcePlatform = require_supported(url, self._settings.blocked_platforms)
        download_id = download_id or generate_download_id()
        prefix: str = sanitize_file_prefix(download_id)
        directory: Path = self._settings.temp_dir
        directory.mkdir(parents=True, exist_ok=True)
        template: Path = directory / f"{prefix}.%(ext)s"
        target: str = normalize_url(url)
        started_at: float = time.time()
        fragile: bool = platform.value in self._settings.fragile_platforms

        async def attempt(relaxed: bool) -> CommandResult:
            argv: list[str] = self._builder.download(target, platform, template, media=media, relaxed=relaxed)
            logger.info(
                "Downloading",
                extra={"download_id": download_id, "platform": platform.value, "command": render_command(argv)},
            )
            return await run_checked(self._executor, argv, self._settings.download_timeout)

        try:
            result: CommandResult = await self._retry.run(lambda: attempt(False), fragile=fragile, label="download")
        except GrabError as err:
            if err.kind is not ErrorKind.UNSUPPORTED_QUALITY:
                raise
            logger.info("Format rejected, retrying with relaxed selector", extra={"download_id": download_id})
            try:
                result = await attempt(True)
            except GrabError:
                raise err

        ctx: LocateContext = LocateContext(
            directory=directory,
            prefix=prefix,
            output=result.combined,
            started_at=started_at,
        )
        located: Optional[Path] = locate_file(ctx, self._strategies)
        if located is None:
            raise GrabError(
                ErrorKind.FILE_PATH_ERROR,
                "Could not determine downloaded file path",
                {"downloadId": download_id, "stdout": result.stdout[:500]},
            )

        file_path: Path = await wait_for_file(located, PollPolicy.for_downloads(self._settings), self._sleep)
        logger.info(
            "Download materialized",
            extra={"download_id": download_id, "path": str(file_path), "size": file_size(file_path)},
        )

        metadata: Optional[VideoMetadata] = await self._extraction.fetch_metadata(url)
        return MaterializedFile(
            download_id=download_id,
            file_path=file_path,
            metadata=metadata or basic_metadata(),
            platform=platform.value,
        )


class DownloadPipeline:
    """Materialize, optionally transcode, verify and publish one download.

    Notes
    -----
    - For audio requests the source file is deleted after the transcode
      whether it succeeded or not.
    - The file is checked one last time (present and non-empty) before it is
      registered; the registry then owns its deletion.
    """

    def __init__(
        self,
        settings: Settings,
        orchestrator: DownloadOrchestrator,
        transcoder: TranscodingAdapter,
        registry: DownloadRegistry,
        stream_path: str = "/api/video/stream",
    ) -> None:
        self._settings: Settings = settings
        self._orchestrator: DownloadOrchestrator = orchestrator
        self._transcoder: TranscodingAdapter = transcoder
        self._registry: DownloadRegistry = registry
        self._stream_path: str = stream_path

    async def run(self, url: str, media: MediaKind, audio_format: AudioFormat = AudioFormat.MP3) -> DownloadResponse:
        download_id: str = generate_download_id()
        materialized: MaterializedFile = await self._orchestrator.materialize(url, media, download_id)
        final_path: Path = materialized.file_path

        if media is MediaKind.AUDIO:
            try:
                final_path = await self._transcoder.to_audio(
                    materialized.file_path,
                    target_format=audio_format.value,
                    output_stem=sanitize_file_prefix(download_id),
                )
            finally:
                safe_unlink(materialized.file_path)

        size: int = file_size(final_path)
        if size == 0:
            safe_unlink(final_path)
            raise GrabError(
                ErrorKind.FILE_NOT_FOUND,
                "File does not exist or is empty before publishing",
                {"filePath": str(final_path)},
            )

        metadata: VideoMetadata = materialized.metadata
        ext: str = audio_format.value if media is MediaKind.AUDIO else (final_path.suffix.lstrip(".") or "mp4")
        filename: str = build_display_filename(metadata, materialized.platform, ext)
        entry = await self._registry.put(download_id, final_path, filename, metadata, media)

        return DownloadResponse(
            success=True,
            platform=materialized.platform,
            downloadId=download_id,
            video=VideoSummary(
                format=ext,
                size=size,
                duration=metadata.duration,
                filename=filename,
            ),
            download=DownloadLink(
                url=f"{self._stream_path}?downloadId={download_id}",
                expiresAt=datetime.fromtimestamp(entry.expires_at, tz=timezone.utc).isoformat(),
            ),
            metadata=DownloadSummaryMeta(title=metadata.title, author=metadata.author.username),
        )
