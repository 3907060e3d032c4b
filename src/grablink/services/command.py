"""Argument-vector construction for the extraction tool (yt-dlp).

Nothing here executes a process. Every user-controlled value (URL, output
path) is emitted as its own argv element and the URL is placed after ``--``,
so no value can be interpreted by a shell or parsed as an option.
"""
from __future__ import annotations

import random
import shlex
import shutil
import sys
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional

from grablink.core.config import Settings
from grablink.domain.downloads import MediaKind
from grablink.domain.platform import SourcePlatform

DESKTOP_USER_AGENT: str = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
)

BROWSER_HEADERS: tuple[str, ...] = (
    "Accept: text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8",
    "Accept-Language: en-US,en;q=0.9",
    "Sec-Fetch-Dest: document",
    "Sec-Fetch-Mode: navigate",
    "Sec-Fetch-Site: none",
    "Sec-Fetch-User: ?1",
)

REFERERS: dict[SourcePlatform, str] = {
    SourcePlatform.TIKTOK: "https://www.tiktok.com/",
    SourcePlatform.INSTAGRAM: "https://www.instagram.com/",
    SourcePlatform.VIMEO: "https://vimeo.com/",
    SourcePlatform.TWITCH: "https://www.twitch.tv/",
}

EXTRACTOR_ARGS: dict[SourcePlatform, str] = {
    SourcePlatform.YOUTUBE: "youtube:player_client=web",
    SourcePlatform.INSTAGRAM: "instagram:webpage_download_timeout=60",
    SourcePlatform.REDDIT: "reddit:webpage_download_timeout=60",
}

AUDIO_SELECTOR: str = "bestaudio/best"
RELAXED_SELECTOR: str = "best"


def video_selector(max_height: int) -> str:
    """Single selector preferring a capped resolution and falling back to the best available."""

    return f"bestvideo[height<={max_height}]+bestaudio/best[height<={max_height}]/best"


@lru_cache(maxsize=4)
def resolve_ytdlp_program(configured: Optional[str] = None) -> tuple[str, ...]:
    """Resolve how to invoke the extraction tool.

    Notes
    -----
    - An explicit ``GRABLINK_YTDLP_COMMAND`` wins and is split with ``shlex``.
    - Otherwise ``yt-dlp`` on ``PATH`` is used, falling back to running the
      installed ``yt_dlp`` package with the current interpreter.
    - Cached: the lookup happens once per process.
    """

    if configured:
        return tuple(shlex.split(configured))
    found: Optional[str] = shutil.which("yt-dlp")
    if found:
        return (found,)
    return (sys.executable, "-m", "yt_dlp")


@dataclass(frozen=True)
class CommandOptions:
    """What a single invocation should do."""

    dump_json: bool = False
    output: Optional[Path] = None
    format_selector: Optional[str] = None


class CommandBuilder:
    """Build yt-dlp argument vectors for probe and download invocations.

    Notes
    -----
    - Tool-side safety limits (socket timeout, retry counts) are always present
      and independent of the service-level ``RetryPolicy`` layered on top.
    - Fragile platforms get a spoofed browser identity and request pacing.
    """

    def __init__(
        self,
        settings: Settings,
        program: Optional[tuple[str, ...]] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._settings: Settings = settings
        self._program: Optional[tuple[str, ...]] = program
        self._rng: random.Random = rng or random.Random()

    @property
    def program(self) -> tuple[str, ...]:
        if self._program is None:
            self._program = resolve_ytdlp_program(self._settings.ytdlp_command)
        return self._program

    def probe(self, url: str, platform: SourcePlatform) -> list[str]:
        return self.build(url, platform, CommandOptions(dump_json=True))

    def download(
        self,
        url: str,
        platform: SourcePlatform,
        output_template: Path,
        media: MediaKind = MediaKind.VIDEO,
        relaxed: bool = False,
    ) -> list[str]:
        """Build a download invocation writing to ``output_template``.

        ``relaxed`` replaces the capped selector with ``best``; it is used only
        after the tool rejected the first selector.
        """

        if relaxed:
            selector: str = RELAXED_SELECTOR
        elif media is MediaKind.AUDIO:
            selector = AUDIO_SELECTOR
        else:
            selector = video_selector(self._settings.max_height)
        return self.build(url, platform, CommandOptions(output=output_template, format_selector=selector))

    def build(self, url: str, platform: SourcePlatform, options: CommandOptions) -> list[str]:
        s: Settings = self._settings
        argv: list[str] = list(self.program)
        argv += [
            "--socket-timeout", str(s.socket_timeout),
            "--retries", str(s.tool_retries),
            "--fragment-retries", str(s.tool_retries),
            "--extractor-retries", str(s.tool_retries),
            "--no-check-certificate",
            "--no-playlist",
            "--no-warnings",
        ]
        argv += self._platform_args(platform)

        if options.output is not None:
            argv += [
                f"--concurrent-fragments={s.concurrent_fragments}",
                "--no-part",
                "--no-mtime",
                "--hls-prefer-native",
                "--no-write-info-json",
                "--no-write-thumbnail",
                "--no-write-description",
                "--no-write-subs",
                "--merge-output-format", "mp4",
            ]
        if options.format_selector:
            argv += ["-f", options.format_selector]
        if options.output is not None:
            argv += ["-o", str(options.output)]
        if options.dump_json:
            argv += ["--dump-json", "--skip-download"]

        argv += ["--", url]
        return argv

    def _platform_args(self, platform: SourcePlatform) -> list[str]:
        args: list[str] = []
        fragile: bool = platform.value in self._settings.fragile_platforms

        if fragile:
            args += ["--user-agent", DESKTOP_USER_AGENT]
            for header in BROWSER_HEADERS:
                args += ["--add-header", header]
            args += [
                "--sleep-requests", "1",
                "--sleep-interval", "2",
                "--max-sleep-interval", "5",
            ]

        referer: Optional[str] = REFERERS.get(platform)
        if referer:
            args += ["--referer", referer]

        if platform is SourcePlatform.TIKTOK:
            device_id: str = str(self._rng.randrange(10**14, 10**15))
            install_id: str = str(self._rng.randrange(10**18, 10**19))
            args += [
                "--extractor-args",
                f"tiktok:webpage_download_timeout=90;device_id={device_id};app_info={install_id}",
            ]
        elif platform in EXTRACTOR_ARGS:
            args += ["--extractor-args", EXTRACTOR_ARGS[platform]]
        return args
