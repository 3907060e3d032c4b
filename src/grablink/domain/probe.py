"""Domain models for probing video metadata and quality options.

These models define the request and response payloads for the info API.
"""
from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from grablink.core.errors import ErrorInfo
from grablink.domain.platform import SourcePlatform


class Author(BaseModel):
    """Uploader identity as reported by the source."""

    model_config = ConfigDict(frozen=True)

    username: str = Field(description="Account handle or id")
    displayName: Optional[str] = Field(default=None, description="Human-readable name")
    avatar: Optional[str] = Field(default=None, description="Avatar image URL if known")


class VideoMetadata(BaseModel):
    """Normalized metadata for a single video."""

    model_config = ConfigDict(frozen=True)

    title: str = Field(default="Untitled", description="Video title")
    author: Author = Field(description="Uploader identity")
    description: Optional[str] = Field(default=None, description="Video description")
    thumbnail: Optional[str] = Field(default=None, description="Primary thumbnail URL")
    duration: Optional[float] = Field(default=None, description="Duration in seconds")
    views: Optional[int] = Field(default=None, description="View count")
    likes: Optional[int] = Field(default=None, description="Like count")
    date: Optional[str] = Field(default=None, description="Upload date as YYYY-MM-DD")
    hasWatermark: bool = Field(default=False, description="Whether downloads carry a platform watermark")


class QualityOption(BaseModel):
    """A downloadable video quality."""

    quality: str = Field(description="Resolution label, e.g. 720p")
    format: str = Field(description="Container/extension")
    size: int = Field(description="Size in bytes; exact or estimated")
    url: str = Field(default="", description="Source stream URL if exposed by the tool")
    method: Literal["direct", "proxy"] = Field(default="proxy", description="Delivery method")
    requiresProxy: bool = Field(default=True, description="Whether the file must be served by this service")


class AudioOption(BaseModel):
    """Best audio-only option; ``size`` may be an advisory estimate."""

    format: str = Field(description="Container/extension")
    size: int = Field(description="Size in bytes; exact or estimated")
    url: str = Field(default="", description="Source stream URL if exposed by the tool")
    method: Literal["direct", "proxy"] = Field(default="proxy", description="Delivery method")


class DownloadOptions(BaseModel):
    recommendedMethod: Literal["direct", "proxy"] = "proxy"
    supportsDirect: bool = False
    supportsStreaming: bool = True


class ProbeRequest(BaseModel):
    """Request payload to probe a video URL."""

    url: str = Field(description="Video URL to probe")


class ProbeResponse(BaseModel):
    """Response payload with normalized metadata and quality options.

    Notes
    -----
    - ``success`` is ``False`` exactly when ``error`` is set; metadata and
      qualities are then empty. A failed metadata parse is never reported as a
      partial success.
    """

    success: bool = Field(description="Whether the probe succeeded")
    platform: SourcePlatform = Field(description="Detected source platform")
    url: str = Field(description="URL as submitted")
    metadata: Optional[VideoMetadata] = Field(default=None, description="Video metadata")
    qualities: list[QualityOption] = Field(default_factory=list, description="Available video qualities")
    audioOnly: Optional[AudioOption] = Field(default=None, description="Best audio-only option")
    downloadOptions: DownloadOptions = Field(default_factory=DownloadOptions)
    error: Optional[ErrorInfo] = Field(default=None, description="Failure details")
