"""Error taxonomy and output classification for the external tools.

Every failure that crosses the service boundary is a ``GrabError`` carrying one
``ErrorKind``. Raw tool output is mapped to a kind by evaluating an ordered list
of ``ClassifierRule`` objects top-to-bottom; the first match wins.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Sequence

from pydantic import BaseModel, Field


class ErrorKind(str, Enum):
    """Closed set of failure kinds reported to callers."""

    UNSUPPORTED_PLATFORM = "UNSUPPORTED_PLATFORM"
    COMMAND_NOT_FOUND = "COMMAND_NOT_FOUND"
    VIDEO_NOT_FOUND = "VIDEO_NOT_FOUND"
    AGE_RESTRICTED = "AGE_RESTRICTED"
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT = "TIMEOUT"
    UNSUPPORTED_QUALITY = "UNSUPPORTED_QUALITY"
    RATE_LIMITED = "RATE_LIMITED"
    PARSE_ERROR = "PARSE_ERROR"
    FILE_NOT_FOUND = "FILE_NOT_FOUND"
    FILE_PATH_ERROR = "FILE_PATH_ERROR"
    AUDIO_EXTRACTION_FAILED = "AUDIO_EXTRACTION_FAILED"
    EXTRACTION_FAILED = "EXTRACTION_FAILED"


RETRYABLE_KINDS: frozenset[ErrorKind] = frozenset(
    {ErrorKind.NETWORK_ERROR, ErrorKind.TIMEOUT, ErrorKind.RATE_LIMITED}
)


class ErrorInfo(BaseModel):
    """Serializable error payload returned to API clients."""

    code: ErrorKind = Field(description="Error kind")
    message: str = Field(description="Human-readable, actionable message")
    details: Optional[dict[str, Any]] = Field(default=None, description="Diagnostic context")


class GrabError(Exception):
    """Classified failure raised by the extraction, download and transcoding services.

    Notes
    -----
    - ``retryable`` is derived from the kind; only transient upstream conditions
      (network, timeout, upstream rate limit) are retried.
    """

    def __init__(self, kind: ErrorKind, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.kind: ErrorKind = kind
        self.message: str = message
        self.details: dict[str, Any] = dict(details or {})

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    def to_info(self) -> ErrorInfo:
        return ErrorInfo(code=self.kind, message=self.message, details=self.details or None)

    def __repr__(self) -> str:
        return f"GrabError({self.kind.value}, {self.message!r})"


@dataclass(frozen=True)
class ToolOutput:
    """Exit status and combined text of a finished (or failed) tool run."""

    text: str
    returncode: Optional[int] = None

    @property
    def lowered(self) -> str:
        return self.text.lower()


@dataclass(frozen=True)
class ClassifierRule:
    """One ``(predicate, kind)`` pair of the ordered classification table."""

    kind: ErrorKind
    message: str
    predicate: Callable[[ToolOutput], bool]

    def matches(self, output: ToolOutput) -> bool:
        return self.predicate(output)


def _contains(*needles: str) -> Callable[[ToolOutput], bool]:
    def predicate(output: ToolOutput) -> bool:
        text: str = output.lowered
        return any(needle in text for needle in needles)

    return predicate


def _exit_code_or_contains(code: int, *needles: str) -> Callable[[ToolOutput], bool]:
    text_match = _contains(*needles)

    def predicate(output: ToolOutput) -> bool:
        return output.returncode == code or text_match(output)

    return predicate


_TOOL_MISSING_MARKERS: tuple[str, ...] = (
    "command not found",
    "not recognized as an internal or external command",
    "no module named yt_dlp",
    "no module named 'yt_dlp'",
    "no such file or directory: 'yt-dlp'",
    "python3: not found",
    "python: not found",
    "yt-dlp: not found",
)

YTDLP_RULES: tuple[ClassifierRule, ...] = (
    ClassifierRule(
        ErrorKind.COMMAND_NOT_FOUND,
        "The extraction tool is not installed on the server",
        _exit_code_or_contains(127, *_TOOL_MISSING_MARKERS),
    ),
    ClassifierRule(
        ErrorKind.VIDEO_NOT_FOUND,
        "Video is unavailable, private, or has been deleted",
        _contains("video unavailable", "private video", "this video has been removed"),
    ),
    ClassifierRule(
        ErrorKind.AGE_RESTRICTED,
        "Video is age-restricted or requires sign-in",
        _contains("age-restricted", "confirm your age", "sign in", "login required"),
    ),
    ClassifierRule(
        ErrorKind.RATE_LIMITED,
        "The source is rate limiting requests; please try again in a minute",
        _contains("rate limit", "too many requests", "http error 429"),
    ),
    ClassifierRule(
        ErrorKind.UNSUPPORTED_QUALITY,
        "Requested quality or format is not available",
        _contains("requested format", "no video formats found"),
    ),
    ClassifierRule(
        ErrorKind.VIDEO_NOT_FOUND,
        "Video not found or unavailable",
        _contains("unavailable", "not found", "http error 404"),
    ),
    ClassifierRule(
        ErrorKind.TIMEOUT,
        "Request timed out - the source took too long to respond",
        _contains("timed out", "timeout"),
    ),
    ClassifierRule(
        ErrorKind.NETWORK_ERROR,
        "Network error - could not connect to video source",
        _contains(
            "network",
            "connection",
            "getaddrinfo",
            "name or service not known",
            "temporary failure in name resolution",
            "unable to download webpage",
        ),
    ),
    ClassifierRule(
        ErrorKind.UNSUPPORTED_QUALITY,
        "Requested quality or format is not available",
        _contains("format", "quality"),
    ),
)

FFMPEG_RULES: tuple[ClassifierRule, ...] = (
    ClassifierRule(
        ErrorKind.COMMAND_NOT_FOUND,
        "The transcoding engine is not installed on the server",
        _exit_code_or_contains(127, "ffmpeg: not found", "cannot find ffmpeg", "no such file or directory: 'ffmpeg'"),
    ),
    ClassifierRule(
        ErrorKind.FILE_NOT_FOUND,
        "Video file not found for audio extraction",
        _contains("no such file", "cannot find"),
    ),
    ClassifierRule(
        ErrorKind.AUDIO_EXTRACTION_FAILED,
        "Video file is corrupted or invalid",
        _contains("invalid data", "corrupt"),
    ),
    ClassifierRule(
        ErrorKind.AUDIO_EXTRACTION_FAILED,
        "Video format is not supported for audio extraction",
        _contains("codec", "format"),
    ),
)


def classify(
    text: str,
    returncode: Optional[int] = None,
    rules: Sequence[ClassifierRule] = YTDLP_RULES,
    fallback: ErrorKind = ErrorKind.EXTRACTION_FAILED,
) -> GrabError:
    """Map raw tool output to a ``GrabError``.

    Parameters
    ----------
    text: str
        Combined stderr/stdout (or engine error message).
    returncode: Optional[int]
        Exit status when known.
    rules: Sequence[ClassifierRule]
        Ordered rule table; ``YTDLP_RULES`` or ``FFMPEG_RULES``.
    fallback: ErrorKind
        Kind used when no rule matches.

    Returns
    -------
    GrabError
        The classified error. The raw text is kept in ``details["raw"]``.
    """

    output: ToolOutput = ToolOutput(text=text or "", returncode=returncode)
    details: dict[str, Any] = {"raw": output.text[-2000:]}
    if returncode is not None:
        details["returncode"] = returncode
    for rule in rules:
        if rule.matches(output):
            return GrabError(rule.kind, rule.message, details)
    message: str = _last_error_line(output.text) or "Failed to extract video"
    return GrabError(fallback, message, details)


def classify_ffmpeg(text: str, returncode: Optional[int] = None) -> GrabError:
    """Classify a transcoding engine failure."""

    return classify(text, returncode, rules=FFMPEG_RULES, fallback=ErrorKind.AUDIO_EXTRACTION_FAILED)


def _last_error_line(text: str) -> str:
    lines: list[str] = [line.strip() for line in text.splitlines() if line.strip()]
    for line in reversed(lines):
        if line.startswith("ERROR:"):
            return line
    return lines[-1] if lines else ""
