"""Filesystem helpers for the scratch directory and file-readiness polling."""
from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Iterator, Optional

from grablink.core.config import Settings
from grablink.core.errors import ErrorKind, GrabError

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]

CONTENT_TYPES: dict[str, str] = {
    ".mp4": "video/mp4",
    ".webm": "video/webm",
    ".mkv": "video/x-matroska",
    ".mov": "video/quicktime",
    ".flv": "video/x-flv",
    ".avi": "video/x-msvideo",
    ".mp3": "audio/mpeg",
    ".m4a": "audio/mp4",
    ".aac": "audio/aac",
    ".opus": "audio/ogg",
}


@dataclass(frozen=True)
class PollPolicy:
    """Bounded exponential poll schedule.

    Notes
    -----
    - ``attempts`` checks are made in total; the delay before check ``n + 1`` is
      ``initial_delay * multiplier ** (n - 1)``, capped at ``max_delay``.
    - A ``multiplier`` of 1.0 yields a constant interval.
    """

    attempts: int = 10
    initial_delay: float = 0.5
    multiplier: float = 1.4
    max_delay: float = 3.0

    def delays(self) -> Iterator[float]:
        """Yield the waits between consecutive checks (``attempts - 1`` values)."""

        delay: float = self.initial_delay
        for _ in range(max(0, self.attempts - 1)):
            yield min(delay, self.max_delay)
            delay *= self.multiplier

    @classmethod
    def for_downloads(cls, settings: Settings) -> "PollPolicy":
        return cls(
            attempts=settings.download_poll_attempts,
            initial_delay=settings.download_poll_delay,
            multiplier=settings.download_poll_multiplier,
            max_delay=settings.poll_max_delay,
        )

    @classmethod
    def for_transcodes(cls, settings: Settings) -> "PollPolicy":
        return cls(
            attempts=settings.transcode_poll_attempts,
            initial_delay=settings.transcode_poll_delay,
            multiplier=settings.transcode_poll_multiplier,
            max_delay=settings.poll_max_delay,
        )


def file_size(path: Path) -> int:
    """Return the size of ``path`` or 0 when it is missing or unreadable."""

    try:
        return path.stat().st_size
    except OSError:
        return 0


def is_ready(path: Path) -> bool:
    return path.is_file() and file_size(path) > 0


async def wait_for_file(path: Path, policy: PollPolicy, sleep: Sleep = asyncio.sleep) -> Path:
    """Wait until ``path`` exists and is non-empty.

    Parameters
    ----------
    path: Path
        File expected to appear (the writer may still be flushing it).
    policy: PollPolicy
        Number of checks and delays between them.
    sleep: Sleep
        Awaitable sleep; injectable for tests.

    Returns
    -------
    Path
        The absolute, resolved path once ready.

    Raises
    ------
    GrabError
        ``FILE_NOT_FOUND`` once every check has failed.
    """

    if is_ready(path):
        return path.resolve()
    for attempt, delay in enumerate(policy.delays(), start=2):
        logger.debug("File not ready, waiting", extra={"path": str(path), "delay": delay, "attempt": attempt})
        await sleep(delay)
        if is_ready(path):
            return path.resolve()
    raise GrabError(
        ErrorKind.FILE_NOT_FOUND,
        "Output file not found or empty after waiting for it to be written",
        {"filePath": str(path), "attempts": policy.attempts},
    )


def safe_unlink(path: Optional[Path]) -> bool:
    """Best-effort delete; returns ``True`` when a file was removed.

    Notes
    -----
    - Failures are logged and swallowed: callers use this on cleanup paths where
      the file may already be gone.
    """

    if path is None:
        return False
    try:
        path.unlink()
        return True
    except FileNotFoundError:
        return False
    except OSError as ex:
        logger.warning("Could not delete file", extra={"path": str(path), "error": str(ex)})
        return False


def sanitize_file_prefix(download_id: str) -> str:
    """Reduce an identifier to characters that are safe in a file name."""

    return re.sub(r"[^a-z0-9_]", "_", download_id, flags=re.IGNORECASE)


def content_type_for(path: Path | str) -> str:
    return CONTENT_TYPES.get(Path(path).suffix.lower(), "application/octet-stream")


def resolve_within(path: Path, base: Path) -> Path:
    """Resolve ``path`` and ensure it lives under ``base``.

    Raises
    ------
    ValueError
        If the resolved path escapes ``base``.
    """

    resolved: Path = path.expanduser().resolve()
    try:
        resolved.relative_to(base.expanduser().resolve())
    except ValueError as ex:
        raise ValueError("Path is outside the scratch directory") from ex
    return resolved
