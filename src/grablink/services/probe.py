"""Probe service: extract video metadata and quality options with yt-dlp.

The service never spawns a process for unsupported URLs or cache hits, and it
always answers with a ``ProbeResponse``; classified failures become
``success=False`` responses carrying an ``ErrorInfo``.
"""
from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from pydantic import ValidationError

from grablink.core.config import Settings
from grablink.core.errors import ErrorKind, GrabError
from grablink.domain.platform import SourcePlatform, detect_platform, require_supported
from grablink.domain.probe import AudioOption, Author, ProbeResponse, QualityOption, VideoMetadata
from grablink.infra.process import CommandExecutor, CommandResult, render_command, run_checked
from grablink.infra.store import InMemoryStore, KeyValueStore
from grablink.infra.urls import cache_key, normalize_url
from grablink.services.command import CommandBuilder
from grablink.services.retry import RetryPolicy

logger = logging.getLogger(__name__)

_DECODER: json.JSONDecoder = json.JSONDecoder()
_LEADING_NUMBER: re.Pattern[str] = re.compile(r"^\s*(\d+)")


def extract_json_block(text: str) -> dict[str, Any]:
    """Return the largest JSON object embedded in ``text``.

    Notes
    -----
    - The tool may print log lines before or after the document, so decoding is
      attempted at each ``{``. Scanning resumes after every decoded object, so
      nested objects are never returned in place of their parent.
    - Small objects in log noise (``{}``) lose to the metadata document, which
      is always the longest one.

    Raises
    ------
    GrabError
        ``PARSE_ERROR`` when no JSON object can be decoded.
    """

    best: Optional[dict[str, Any]] = None
    best_span: int = 0
    index: int = text.find("{")
    while index != -1:
        try:
            value, end = _DECODER.raw_decode(text, index)
        except json.JSONDecodeError:
            index = text.find("{", index + 1)
            continue
        if isinstance(value, dict) and end - index > best_span:
            best, best_span = value, end - index
        index = text.find("{", end)
    if best is None:
        raise GrabError(
            ErrorKind.PARSE_ERROR,
            "Failed to parse video information from the extraction tool output",
            {"sample": text[:500]},
        )
    return best


def _int_or_none(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return None


def _format_date(upload_date: Any) -> Optional[str]:
    """Turn ``YYYYMMDD`` into ``YYYY-MM-DD``."""

    if not isinstance(upload_date, str) or len(upload_date) != 8 or not upload_date.isdigit():
        return None
    return f"{upload_date[:4]}-{upload_date[4:6]}-{upload_date[6:]}"


def _size_of(fmt: dict[str, Any]) -> int:
    return _int_or_none(fmt.get("filesize")) or _int_or_none(fmt.get("filesize_approx")) or 0


def _estimate_from_bitrate(duration: Any, tbr: Any) -> int:
    if isinstance(duration, (int, float)) and isinstance(tbr, (int, float)) and duration > 0 and tbr > 0:
        return round(duration * tbr * 1000 / 8)
    return 0


def _quality_rank(option: QualityOption) -> int:
    match = _LEADING_NUMBER.match(option.quality)
    return int(match.group(1)) if match else 0


def build_metadata(info: dict[str, Any], platform: SourcePlatform) -> VideoMetadata:
    """Normalize the tool's info document into ``VideoMetadata``.

    Raises
    ------
    GrabError
        ``PARSE_ERROR`` if the document does not have the expected shape.
    """

    thumbnails: Any = info.get("thumbnails")
    first_thumb: Optional[str] = None
    if isinstance(thumbnails, list) and thumbnails and isinstance(thumbnails[0], dict):
        first_thumb = thumbnails[0].get("url")

    uploader: Optional[str] = info.get("uploader")
    uploader_id: Optional[str] = info.get("uploader_id")
    try:
        return VideoMetadata(
            title=info.get("title") or "Untitled",
            author=Author(
                username=uploader_id or uploader or "Unknown",
                displayName=uploader or uploader_id or "Unknown",
                avatar=info.get("thumbnail") or None,
            ),
            description=info.get("description") or None,
            thumbnail=info.get("thumbnail") or first_thumb,
            duration=info.get("duration") if isinstance(info.get("duration"), (int, float)) else None,
            views=_int_or_none(info.get("view_count")),
            likes=_int_or_none(info.get("like_count")),
            date=_format_date(info.get("upload_date")),
            hasWatermark=platform is SourcePlatform.INSTAGRAM,
        )
    except ValidationError as ex:
        raise GrabError(
            ErrorKind.PARSE_ERROR,
            "Video information from the extraction tool is malformed",
            {"errors": ex.errors(include_url=False)},
        ) from ex


def build_qualities(info: dict[str, Any]) -> list[QualityOption]:
    """Collect one option per resolution label, keeping the largest, highest first.

    Notes
    -----
    - Audio-only entries (``vcodec`` missing or ``"none"``) are skipped.
    - Size falls back to the document-level size, then to duration x bitrate.
    - With no usable formats but a known document size, a single 720p estimate
      is returned.
    """

    formats: list[Any] = info.get("formats") or []
    base_size: int = _size_of(info)
    duration: Any = info.get("duration")
    by_label: dict[str, QualityOption] = {}

    for fmt in formats:
        if not isinstance(fmt, dict):
            continue
        vcodec: Optional[str] = fmt.get("vcodec")
        if not vcodec or vcodec == "none":
            continue
        height: Optional[int] = _int_or_none(fmt.get("height"))
        label: str = f"{height}p" if height else str(fmt.get("format_note") or "unknown")
        size: int = _size_of(fmt) or base_size or _estimate_from_bitrate(duration, fmt.get("tbr"))

        current: Optional[QualityOption] = by_label.get(label)
        if current is None or current.size < size:
            by_label[label] = QualityOption(
                quality=label,
                format=str(fmt.get("ext") or "mp4"),
                size=size,
                url=str(fmt.get("url") or ""),
            )

    qualities: list[QualityOption] = list(by_label.values())
    if not qualities and base_size > 0:
        qualities.append(
            QualityOption(quality="720p", format=str(info.get("ext") or "mp4"), size=base_size, url=str(info.get("url") or ""))
        )
    qualities.sort(key=_quality_rank, reverse=True)
    return qualities


def build_audio_option(info: dict[str, Any], size_fraction: float = 0.1) -> Optional[AudioOption]:
    """Pick the largest audio-only format; estimate its size when unreported.

    The fraction-of-video estimate is advisory only.
    """

    formats: list[Any] = [f for f in (info.get("formats") or []) if isinstance(f, dict)]
    audio: list[dict[str, Any]] = [f for f in formats if f.get("vcodec") == "none" and f.get("acodec") not in (None, "none")]
    base_size: int = _size_of(info)

    if not audio:
        if base_size > 0:
            return AudioOption(format="mp3", size=round(base_size * size_fraction))
        return None

    best: dict[str, Any] = max(audio, key=_size_of)
    size: int = _size_of(best)
    if size == 0:
        size = _estimate_from_bitrate(info.get("duration"), best.get("tbr"))
    if size == 0 and base_size > 0:
        size = round(base_size * size_fraction)
    return AudioOption(format=str(best.get("ext") or "mp3"), size=size, url=str(best.get("url") or ""))


@dataclass(frozen=True)
class CachedProbe:
    response: ProbeResponse
    stored_at: float


class ProbeCache:
    """Read-through TTL cache of successful probe responses.

    Notes
    -----
    - Entries at or past ``ttl`` seconds old are never returned; a stale hit is
      deleted on the spot.
    - Size is bounded by ``max_entries``; the oldest entry is evicted first.
    """

    def __init__(
        self,
        ttl: float,
        max_entries: int,
        store: Optional[KeyValueStore[CachedProbe]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ttl: float = ttl
        self.max_entries: int = max(1, max_entries)
        self._store: KeyValueStore[CachedProbe] = store if store is not None else InMemoryStore()
        self._clock: Callable[[], float] = clock

    def _fresh(self, entry: CachedProbe, now: float) -> bool:
        return now - entry.stored_at < self.ttl

    async def get(self, key: str) -> Optional[ProbeResponse]:
        entry: Optional[CachedProbe] = await self._store.get(key)
        if entry is None:
            return None
        if not self._fresh(entry, self._clock()):
            await self._store.delete(key)
            return None
        return entry.response.model_copy(deep=True)

    async def put(self, key: str, response: ProbeResponse) -> None:
        await self._store.put(key, CachedProbe(response.model_copy(deep=True), self._clock()))
        items: list[tuple[str, CachedProbe]] = await self._store.items()
        overflow: int = len(items) - self.max_entries
        if overflow > 0:
            items.sort(key=lambda item: item[1].stored_at)
            for old_key, _ in items[:overflow]:
                await self._store.delete(old_key)

    async def sweep(self) -> int:
        now: float = self._clock()
        removed: int = 0
        for key, entry in await self._store.items():
            if not self._fresh(entry, now):
                await self._store.delete(key)
                removed += 1
        return removed


class ExtractionService:
    """Orchestrate platform check, cache, tool execution and normalization for probes."""

    def __init__(
        self,
        settings: Settings,
        executor: CommandExecutor,
        builder: Optional[CommandBuilder] = None,
        retry: Optional[RetryPolicy] = None,
        cache: Optional[ProbeCache] = None,
    ) -> None:
        self._settings: Settings = settings
        self._executor: CommandExecutor = executor
        self._builder: CommandBuilder = builder or CommandBuilder(settings)
        self._retry: RetryPolicy = retry or RetryPolicy.from_settings(settings)
        self.cache: ProbeCache = cache or ProbeCache(settings.probe_cache_ttl, settings.probe_cache_max_entries)

    async def probe(self, url: str) -> ProbeResponse:
        """Probe ``url`` and return normalized metadata and quality options.

        Parameters
        ----------
        url: str
            The video URL to probe (already validated by the caller).

        Returns
        -------
        ProbeResponse
            ``success=True`` with metadata, or ``success=False`` with a classified error.
        """

        try:
            return await self._probe(url)
        except GrabError as err:
            logger.info("Probe failed", extra={"url": url, "kind": err.kind.value})
            return ProbeResponse(
                success=False,
                platform=detect_platform(url),
                url=url,
                error=err.to_info(),
            )

    async def fetch_metadata(self, url: str) -> Optional[VideoMetadata]:
        """Return metadata for ``url`` from the cache or a fresh probe, or ``None`` on failure."""

        response: ProbeResponse = await self.probe(url)
        return response.metadata if response.success else None

    async def _probe(self, url: str) -> ProbeResponse:
        platform: SourcePlatform = require_supported(url, self._settings.blocked_platforms)

        key: str = cache_key(url)
        cached: Optional[ProbeResponse] = await self.cache.get(key)
        if cached is not None:
            logger.debug("Probe cache hit", extra={"key": key})
            return cached

        target: str = normalize_url(url)
        argv: list[str] = self._builder.probe(target, platform)
        timeout: float = (
            self._settings.slow_probe_timeout
            if platform.value in self._settings.slow_platforms
            else self._settings.probe_timeout
        )
        logger.info("Probing", extra={"platform": platform.value, "command": render_command(argv)})

        async def attempt() -> CommandResult:
            return await run_checked(self._executor, argv, timeout)

        result: CommandResult = await self._retry.run(
            attempt,
            fragile=platform.value in self._settings.fragile_platforms,
            label="probe",
        )

        info: dict[str, Any] = extract_json_block(result.stdout)
        response: ProbeResponse = ProbeResponse(
            success=True,
            platform=platform,
            url=url,
            metadata=build_metadata(info, platform),
            qualities=build_qualities(info),
            audioOnly=build_audio_option(info, self._settings.audio_size_fraction),
        )
        await self.cache.put(key, response)
        return response
