"""Application configuration utilities.

This module defines application settings loaded from environment variables and
ensures the scratch directory exists at startup.
"""
from __future__ import annotations

import tempfile
from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Typed application settings loaded from the environment.

    Notes
    -----
    - Environment variables are read with the ``GRABLINK_`` prefix (e.g., ``GRABLINK_DOWNLOAD_TTL``).
    - List values are given as JSON arrays (e.g., ``GRABLINK_BLOCKED_PLATFORMS='["tiktok"]'``).
    - Durations are in seconds. Retry, poll and quota numbers are defaults, not
      load-bearing constants; deployments are expected to tune them.
    """

    model_config = SettingsConfigDict(env_prefix="GRABLINK_", env_file=".env", extra="ignore")

    app_name: str = Field(default="GrabLink", description="Application display name")
    debug: bool = Field(default=False, description="Enable debug mode")
    temp_dir: Path = Field(
        default=Path(tempfile.gettempdir()) / "grablink-downloads",
        description="Scratch directory holding materialized and transcoded files",
    )

    # External tools
    ytdlp_command: str | None = Field(
        default=None,
        description="Explicit extraction command (e.g. 'yt-dlp' or 'python3 -m yt_dlp'); auto-detected when unset",
    )
    ffmpeg_binary: str = Field(default="ffmpeg", description="Transcoding engine executable")
    max_concurrent_processes: int = Field(
        default=4,
        description="Upper bound on concurrently running external processes",
    )

    # Platform policy
    blocked_platforms: list[str] = Field(
        default_factory=lambda: ["tiktok"],
        description="Recognised platforms that are refused by policy",
    )
    fragile_platforms: list[str] = Field(
        default_factory=lambda: ["tiktok", "instagram", "facebook", "twitter"],
        description="Platforms that throttle aggressively; get pacing and exponential backoff",
    )
    slow_platforms: list[str] = Field(
        default_factory=lambda: ["youtube", "twitter", "pinterest"],
        description="Platforms whose probes get the longer timeout",
    )

    # Limits passed to the extraction tool itself
    max_height: int = Field(default=720, description="Resolution ceiling for the default video selector")
    concurrent_fragments: int = Field(default=8, description="Fragments downloaded concurrently by the tool")
    tool_retries: int = Field(default=3, description="Tool-side retry count for requests and fragments")
    socket_timeout: int = Field(default=30, description="Tool-side socket timeout in seconds")

    # Timeouts for external invocations
    probe_timeout: float = Field(default=120.0, description="Probe timeout in seconds")
    slow_probe_timeout: float = Field(default=180.0, description="Probe timeout for slow platforms")
    download_timeout: float = Field(default=900.0, description="Materialize timeout in seconds")
    transcode_timeout: float = Field(default=300.0, description="Transcode timeout in seconds")

    # Retry policy
    fragile_max_attempts: int = Field(default=3, description="Attempts for fragile platforms")
    fragile_base_delay: float = Field(default=2.0, description="Base delay of the exponential backoff")
    fragile_max_delay: float = Field(default=30.0, description="Cap on a single exponential backoff delay")
    retry_jitter: float = Field(default=0.25, description="Jitter fraction applied to exponential delays")
    robust_max_attempts: int = Field(default=2, description="Attempts for robust platforms")
    robust_base_delay: float = Field(default=1.0, description="Step of the linear backoff")

    # File readiness polling
    download_poll_attempts: int = Field(default=10, description="Readiness checks after a download")
    download_poll_delay: float = Field(default=0.5, description="First delay between download readiness checks")
    download_poll_multiplier: float = Field(default=1.4, description="Growth factor of download poll delays")
    transcode_poll_attempts: int = Field(default=5, description="Readiness checks after a transcode")
    transcode_poll_delay: float = Field(default=0.5, description="First delay between transcode readiness checks")
    transcode_poll_multiplier: float = Field(default=1.0, description="Growth factor of transcode poll delays")
    poll_max_delay: float = Field(default=3.0, description="Cap on a single poll delay")

    # Caches and registry
    probe_cache_ttl: float = Field(default=600.0, description="Lifetime of a cached probe result")
    probe_cache_max_entries: int = Field(default=256, description="Maximum number of cached probe results")
    download_ttl: float = Field(default=3600.0, description="Lifetime of a published download")
    sweep_interval: float = Field(default=300.0, description="Interval of the background sweepers")
    audio_size_fraction: float = Field(
        default=0.1,
        description="Advisory audio size estimate as a fraction of the video size",
    )

    # Client-facing quotas
    info_rate_limit: int = Field(default=30, description="Probe requests per window per client")
    download_rate_limit: int = Field(default=20, description="Download requests per window per client")
    rate_limit_window: float = Field(default=3600.0, description="Rate-limit window in seconds")


def ensure_directories(settings: Settings) -> None:
    """Create required directories if they do not exist.

    Notes
    -----
    - Idempotent: safe to call multiple times.
    - Only the scratch directory is managed here; every artifact lives inside it.

    Parameters
    ----------
    settings: Settings
        The resolved application settings instance.
    """

    directory: Path = settings.temp_dir
    directory.mkdir(parents=True, exist_ok=True)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load and cache application settings.

    Notes
    -----
    - Cached with ``functools.lru_cache(maxsize=1)`` to provide a single settings instance
      across the process. Subsequent calls return the same object.
    - Applies ``ensure_directories`` once to guarantee a sane startup state.

    Returns
    -------
    Settings
        The application settings instance.
    """

    settings: Settings = Settings()
    settings.temp_dir = settings.temp_dir.expanduser().resolve()
    ensure_directories(settings)
    return settings
