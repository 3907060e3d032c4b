"""Source platform detection.

Classifies a URL into a known platform purely by looking at its text; no I/O.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional
from urllib.parse import urlsplit

from grablink.core.errors import ErrorKind, GrabError


class SourcePlatform(str, Enum):
    """Known source platforms."""

    TIKTOK = "tiktok"
    INSTAGRAM = "instagram"
    YOUTUBE = "youtube"
    TWITTER = "twitter"
    FACEBOOK = "facebook"
    PINTEREST = "pinterest"
    VIMEO = "vimeo"
    TWITCH = "twitch"
    REDDIT = "reddit"
    UNKNOWN = "unknown"

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]


class PlatformSupport(str, Enum):
    """Outcome of matching a URL against the platform table."""

    SUPPORTED = "supported"
    NOT_SUPPORTED = "not_supported"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class PlatformMatch:
    """Resolved platform plus whether policy allows it."""

    platform: SourcePlatform
    support: PlatformSupport

    @property
    def supported(self) -> bool:
        return self.support is PlatformSupport.SUPPORTED


_DISPLAY_NAMES: dict[SourcePlatform, str] = {
    SourcePlatform.TIKTOK: "TikTok",
    SourcePlatform.INSTAGRAM: "Instagram",
    SourcePlatform.YOUTUBE: "YouTube",
    SourcePlatform.TWITTER: "Twitter/X",
    SourcePlatform.FACEBOOK: "Facebook",
    SourcePlatform.PINTEREST: "Pinterest",
    SourcePlatform.VIMEO: "Vimeo",
    SourcePlatform.TWITCH: "Twitch",
    SourcePlatform.REDDIT: "Reddit",
    SourcePlatform.UNKNOWN: "Unknown",
}

# Ordered: the first platform whose domain suffix matches the host wins.
PLATFORM_DOMAINS: tuple[tuple[SourcePlatform, tuple[str, ...]], ...] = (
    (SourcePlatform.TIKTOK, ("tiktok.com",)),
    (SourcePlatform.INSTAGRAM, ("instagram.com", "instagr.am")),
    (SourcePlatform.YOUTUBE, ("youtube.com", "youtu.be", "youtube-nocookie.com")),
    (SourcePlatform.TWITTER, ("twitter.com", "x.com")),
    (SourcePlatform.FACEBOOK, ("facebook.com", "fb.com", "fb.watch")),
    (SourcePlatform.PINTEREST, ("pinterest.com", "pin.it")),
    (SourcePlatform.VIMEO, ("vimeo.com",)),
    (SourcePlatform.TWITCH, ("twitch.tv",)),
    (SourcePlatform.REDDIT, ("reddit.com", "redd.it")),
)

DEFAULT_BLOCKED: frozenset[str] = frozenset({SourcePlatform.TIKTOK.value})


def _host_of(url: str) -> str:
    text: str = url.strip().lower()
    if "://" not in text:
        text = "https://" + text
    try:
        host: Optional[str] = urlsplit(text).hostname
    except ValueError:
        return ""
    return host or ""


def _host_matches(host: str, domain: str) -> bool:
    return host == domain or host.endswith("." + domain)


def detect_platform(url: str) -> SourcePlatform:
    """Return the platform tag for ``url`` or ``SourcePlatform.UNKNOWN``.

    Notes
    -----
    - Matches on the host name suffix, so ``m.youtube.com`` is YouTube while
      ``notyoutube.com.evil.io`` is not.
    - URLs without a scheme are treated as ``https``.
    """

    if url.strip().lower().startswith("tiktok://"):
        return SourcePlatform.TIKTOK
    host: str = _host_of(url)
    if not host:
        return SourcePlatform.UNKNOWN
    for platform, domains in PLATFORM_DOMAINS:
        if any(_host_matches(host, domain) for domain in domains):
            return platform
    return SourcePlatform.UNKNOWN


def resolve_platform(url: str, blocked: Iterable[str] = DEFAULT_BLOCKED) -> PlatformMatch:
    """Resolve ``url`` to a platform and its policy status.

    Parameters
    ----------
    url: str
        Raw URL as received from the caller.
    blocked: Iterable[str]
        Platform values refused by policy even though they are recognised.

    Returns
    -------
    PlatformMatch
        ``NOT_SUPPORTED`` for blocked platforms, ``UNKNOWN`` when nothing matched.
    """

    platform: SourcePlatform = detect_platform(url)
    if platform is SourcePlatform.UNKNOWN:
        return PlatformMatch(platform, PlatformSupport.UNKNOWN)
    if platform.value in set(blocked):
        return PlatformMatch(platform, PlatformSupport.NOT_SUPPORTED)
    return PlatformMatch(platform, PlatformSupport.SUPPORTED)


def supported_platforms(blocked: Iterable[str] = DEFAULT_BLOCKED) -> list[SourcePlatform]:
    refused: set[str] = set(blocked)
    return [platform for platform, _ in PLATFORM_DOMAINS if platform.value not in refused]


def require_supported(url: str, blocked: Iterable[str] = DEFAULT_BLOCKED) -> SourcePlatform:
    """Return the platform for ``url`` or raise ``UNSUPPORTED_PLATFORM``.

    The message differs between a platform refused by policy and a URL that
    matched nothing, so callers can show a specific explanation.
    """

    blocked = list(blocked)
    match: PlatformMatch = resolve_platform(url, blocked)
    if match.supported:
        return match.platform

    names: str = ", ".join(p.display_name for p in supported_platforms(blocked))
    if match.support is PlatformSupport.NOT_SUPPORTED:
        message: str = (
            f"{match.platform.display_name} is currently not supported. "
            f"Please try one of the supported platforms: {names}."
        )
    else:
        message = f"This URL does not belong to a supported platform. Supported platforms: {names}."
    raise GrabError(
        ErrorKind.UNSUPPORTED_PLATFORM,
        message,
        {"platform": match.platform.value, "support": match.support.value},
    )
