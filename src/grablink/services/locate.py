"""Locate the file a download invocation produced.

The extraction tool decides the final extension (and may merge streams into a
different container), so the path is discovered after the fact by an ordered
chain of strategies. The first strategy that returns a path wins.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol, Sequence

from grablink.infra.fs import file_size

logger = logging.getLogger(__name__)

MEDIA_EXTENSIONS: tuple[str, ...] = ("mp4", "webm", "mkv", "m4a", "flv", "avi", "mp3", "opus")


@dataclass(frozen=True)
class LocateContext:
    """Everything a strategy may inspect."""

    directory: Path
    prefix: str
    output: str
    started_at: float


class LocateStrategy(Protocol):
    name: str

    def locate(self, ctx: LocateContext) -> Optional[Path]: ...


def _clean_candidate(raw: str, directory: Path) -> Optional[Path]:
    candidate: str = raw.strip().strip("\"'")
    if not candidate:
        return None
    path: Path = Path(candidate)
    if path.is_absolute():
        return path
    if ".." in path.parts:
        return None
    return directory / path


class OutputMarkerStrategy:
    """Read the destination from the tool's own progress lines.

    A merge line outranks ``Destination`` lines, which name intermediate
    streams. The path is returned even if it is not visible yet; the caller
    polls for it.
    """

    name: str = "output-marker"

    PATTERNS: tuple[re.Pattern[str], ...] = (
        re.compile(r'\[Merger\] Merging formats into "(.+)"'),
        re.compile(r"\[ExtractAudio\] Destination: (.+)"),
        re.compile(r"\[download\] (.+?) has already been downloaded(?: and merged)?"),
        re.compile(r"\[download\] Destination: (.+)"),
    )

    def locate(self, ctx: LocateContext) -> Optional[Path]:
        for pattern in self.PATTERNS:
            matches: list[str] = pattern.findall(ctx.output)
            for raw in reversed(matches):
                path: Optional[Path] = _clean_candidate(raw, ctx.directory)
                if path is not None:
                    return path
        return None


class ExpectedPathStrategy:
    """Try ``<directory>/<prefix>.<ext>`` for the usual media extensions."""

    name: str = "expected-path"

    def __init__(self, extensions: Sequence[str] = MEDIA_EXTENSIONS) -> None:
        self.extensions: tuple[str, ...] = tuple(extensions)

    def locate(self, ctx: LocateContext) -> Optional[Path]:
        for ext in self.extensions:
            path: Path = ctx.directory / f"{ctx.prefix}.{ext}"
            if file_size(path) > 0:
                return path
        return None


class DirectoryScanStrategy:
    """Scan the scratch directory for the newest matching media file.

    Notes
    -----
    - Files carrying the download prefix are preferred.
    - Without a prefixed match, only files modified since the download started
      are considered, so an unrelated older artifact is never picked up.
    """

    name: str = "directory-scan"

    def __init__(self, extensions: Sequence[str] = MEDIA_EXTENSIONS) -> None:
        self.suffixes: frozenset[str] = frozenset(f".{ext}" for ext in extensions)

    def locate(self, ctx: LocateContext) -> Optional[Path]:
        try:
            entries: list[Path] = [p for p in ctx.directory.iterdir() if p.suffix.lower() in self.suffixes]
        except OSError as ex:
            logger.warning("Cannot scan scratch directory", extra={"directory": str(ctx.directory), "error": str(ex)})
            return None

        candidates: list[tuple[Path, float]] = []
        for path in entries:
            try:
                stat = path.stat()
            except OSError:
                continue
            if stat.st_size > 0:
                candidates.append((path, stat.st_mtime))

        prefixed: list[tuple[Path, float]] = [c for c in candidates if c[0].name.startswith(ctx.prefix)]
        pool: list[tuple[Path, float]] = prefixed or [c for c in candidates if c[1] >= ctx.started_at]
        if not pool:
            return None
        return max(pool, key=lambda c: c[1])[0]


DEFAULT_STRATEGIES: tuple[LocateStrategy, ...] = (
    OutputMarkerStrategy(),
    ExpectedPathStrategy(),
    DirectoryScanStrategy(),
)


def locate_file(ctx: LocateContext, strategies: Sequence[LocateStrategy] = DEFAULT_STRATEGIES) -> Optional[Path]:
    """Run ``strategies`` in order and return the first path found."""

    for strategy in strategies:
        path: Optional[Path] = strategy.locate(ctx)
        if path is not None:
            logger.debug("Located output file", extra={"strategy": strategy.name, "path": str(path)})
            return path
    return None
