"""Event-emitting wrapper around an ffmpeg process.

``FfmpegJob`` reports its lifecycle through callbacks registered with ``on``:

- ``start(command_line)`` once the process is spawned;
- ``progress(fields)`` for every ``-progress`` block ffmpeg writes to stdout;
- ``end()`` when ffmpeg exits with status 0;
- ``error(message, returncode)`` otherwise, including a missing executable.

Exactly one of ``end`` / ``error`` fires per job, unless the job is killed.
"""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, Optional, Sequence

from grablink.infra.process import render_command

logger = logging.getLogger(__name__)

EVENTS: frozenset[str] = frozenset({"start", "progress", "end", "error"})

AUDIO_CODECS: dict[str, str] = {"mp3": "libmp3lame", "m4a": "aac"}
LOUDNESS_FILTER: str = "volume=6dB"


def audio_extract_args(
    binary: str,
    source: Path,
    target: Path,
    codec: str,
    bitrate: str,
    audio_filter: str = LOUDNESS_FILTER,
) -> list[str]:
    """Build the argument vector that strips video and re-encodes audio."""

    return [
        binary,
        "-y",
        "-hide_banner",
        "-nostats",
        "-progress", "pipe:1",
        "-i", str(source),
        "-vn",
        "-c:a", codec,
        "-b:a", bitrate,
        "-af", audio_filter,
        str(target),
    ]


class FfmpegJob:
    """One ffmpeg invocation with ``start``/``progress``/``end``/``error`` events."""

    def __init__(self, argv: Sequence[str]) -> None:
        self.argv: tuple[str, ...] = tuple(argv)
        self._handlers: dict[str, list[Callable[..., Any]]] = {name: [] for name in EVENTS}
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._task: Optional[asyncio.Task[None]] = None
        self._killed: bool = False

    def on(self, event: str, handler: Callable[..., Any]) -> "FfmpegJob":
        if event not in EVENTS:
            raise ValueError(f"Unknown event: {event}")
        self._handlers[event].append(handler)
        return self

    def _emit(self, event: str, *args: Any) -> None:
        for handler in self._handlers[event]:
            try:
                handler(*args)
            except Exception:  # noqa: BLE001 - a broken listener must not kill the job
                logger.exception("ffmpeg event handler failed", extra={"event": event})

    def start(self) -> None:
        """Spawn the process in the background; events report the outcome."""

        if self._task is not None:
            raise RuntimeError("Job already started")
        self._task = asyncio.create_task(self._run(), name="ffmpeg")

    def kill(self) -> None:
        self._killed = True
        if self._proc is not None and self._proc.returncode is None:
            try:
                self._proc.kill()
            except ProcessLookupError:
                pass

    async def wait(self) -> None:
        if self._task is not None:
            await self._task

    async def _run(self) -> None:
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *self.argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            self._emit("error", f"{self.argv[0]}: not found", 127)
            return
        except OSError as ex:
            self._emit("error", f"{self.argv[0]}: cannot be executed ({ex.strerror or ex})", 127)
            return

        proc: asyncio.subprocess.Process = self._proc
        self._emit("start", render_command(self.argv))
        stderr_task: asyncio.Task[bytes] = asyncio.create_task(proc.stderr.read())
        await self._read_progress(proc.stdout)
        stderr: bytes = await stderr_task
        returncode: int = await proc.wait()

        if self._killed:
            return
        if returncode == 0:
            self._emit("end")
        else:
            self._emit("error", stderr.decode("utf-8", errors="replace")[-2000:], returncode)

    async def _read_progress(self, stream: asyncio.StreamReader) -> None:
        fields: dict[str, str] = {}
        async for raw in stream:
            line: str = raw.decode("utf-8", errors="replace").strip()
            key, sep, value = line.partition("=")
            if not sep:
                continue
            fields[key] = value
            if key == "progress":
                self._emit("progress", dict(fields))
                fields.clear()
