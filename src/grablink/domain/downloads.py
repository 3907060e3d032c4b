"""Domain models for materialized downloads and their published records."""
from __future__ import annotations

import secrets
import string
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field

from grablink.core.errors import ErrorInfo


class MediaKind(str, Enum):
    """What the caller wants to end up with."""

    VIDEO = "video"
    AUDIO = "audio"


class AudioFormat(str, Enum):
    MP3 = "mp3"
    M4A = "m4a"


_ID_ALPHABET: str = string.ascii_lowercase + string.digits


def generate_download_id() -> str:
    """Return an opaque id such as ``dl_1718000000000_k3j9x2a``.

    Notes
    -----
    - The id doubles as the output file name prefix, so it only contains
      ``[a-z0-9_]``.
    """

    suffix: str = "".join(secrets.choice(_ID_ALPHABET) for _ in range(7))
    return f"dl_{int(time.time() * 1000)}_{suffix}"


class DownloadRequest(BaseModel):
    """Request payload to materialize a file."""

    url: str = Field(description="Video URL to download")
    format: MediaKind = Field(default=MediaKind.VIDEO, description="Video file or audio-only file")
    audioFormat: AudioFormat = Field(default=AudioFormat.MP3, description="Target container for audio")


class VideoSummary(BaseModel):
    quality: str = Field(default="original")
    format: str = Field(description="Extension of the published file")
    size: int = Field(description="File size in bytes")
    duration: Optional[float] = Field(default=None)
    filename: str = Field(description="Suggested download file name")


class DownloadLink(BaseModel):
    method: str = Field(default="proxy")
    url: str = Field(description="Retrieval URL for the published file")
    expiresAt: str = Field(description="ISO-8601 expiry of the retrieval URL")


class DownloadSummaryMeta(BaseModel):
    title: str
    author: str


class DownloadResponse(BaseModel):
    """Response payload of the download API."""

    success: bool
    platform: str
    downloadId: Optional[str] = None
    video: Optional[VideoSummary] = None
    download: Optional[DownloadLink] = None
    metadata: Optional[DownloadSummaryMeta] = None
    error: Optional[ErrorInfo] = None


@dataclass(frozen=True)
class MaterializedFile:
    """A file produced by the download orchestrator."""

    download_id: str
    file_path: Path
    metadata: Any
    platform: str


@dataclass(frozen=True)
class RegistryEntry:
    """A published artifact awaiting retrieval.

    Notes
    -----
    - ``file_path`` is absolute; the registry deletes it when the entry expires
      or is taken.
    """

    file_path: Path
    filename: str
    metadata: Any
    format: MediaKind
    expires_at: float

    def expired(self, now: float) -> bool:
        return self.expires_at <= now
