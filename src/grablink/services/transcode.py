"""Audio transcoding on top of the event-emitting ffmpeg job."""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, Optional, Protocol, Sequence

from grablink.core.config import Settings
from grablink.core.errors import ErrorKind, GrabError, classify_ffmpeg
from grablink.infra.ffmpeg import AUDIO_CODECS, FfmpegJob, audio_extract_args
from grablink.infra.fs import PollPolicy, Sleep, safe_unlink, wait_for_file

logger = logging.getLogger(__name__)


class TranscodeEngine(Protocol):
    def on(self, event: str, handler: Callable[..., Any]) -> Any: ...

    def start(self) -> None: ...

    def kill(self) -> None: ...


EngineFactory = Callable[[Sequence[str]], TranscodeEngine]


class TranscodingAdapter:
    """Turn a downloaded media file into an mp3/m4a file.

    Notes
    -----
    - The engine's ``end`` event only means the process exited; the output may
      not be visible yet, so the transcode poll policy runs before returning.
    - A hard timeout kills the engine and raises ``TIMEOUT``.
    - Engine errors are classified with the ffmpeg rule table.
    """

    def __init__(
        self,
        settings: Settings,
        engine_factory: EngineFactory = FfmpegJob,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._settings: Settings = settings
        self._engine_factory: EngineFactory = engine_factory
        self._sleep: Sleep = sleep

    def output_path(self, source: Path, target_format: str, output_stem: Optional[str] = None) -> Path:
        stem: str = output_stem or f"audio_{source.stem}"
        target: Path = self._settings.temp_dir / f"{stem}.{target_format}"
        if target.resolve() == source.resolve():
            target = self._settings.temp_dir / f"{stem}_audio.{target_format}"
        return target

    async def to_audio(
        self,
        video_path: Path,
        target_format: str = "mp3",
        bitrate: str = "256k",
        output_stem: Optional[str] = None,
    ) -> Path:
        """Extract the audio track of ``video_path``.

        Parameters
        ----------
        video_path: Path
            Source media file.
        target_format: str
            ``mp3`` or ``m4a``.
        bitrate: str
            Audio bitrate passed to the encoder, e.g. ``256k``.
        output_stem: Optional[str]
            File name (without extension) of the output, usually the download id.

        Returns
        -------
        Path
            Absolute path of a non-empty audio file.

        Raises
        ------
        GrabError
            ``FILE_NOT_FOUND`` for a missing input or an output that never
            appears, ``TIMEOUT``, or a classified engine failure.
        """

        if not video_path.is_file():
            raise GrabError(
                ErrorKind.FILE_NOT_FOUND,
                f"Video file not found: {video_path}",
                {"videoPath": str(video_path)},
            )
        codec: Optional[str] = AUDIO_CODECS.get(target_format)
        if codec is None:
            raise GrabError(
                ErrorKind.AUDIO_EXTRACTION_FAILED,
                f"Unsupported audio format: {target_format}. Supported formats: {', '.join(AUDIO_CODECS)}",
                {"outputFormat": target_format},
            )

        self._settings.temp_dir.mkdir(parents=True, exist_ok=True)
        target: Path = self.output_path(video_path, target_format, output_stem)
        argv: list[str] = audio_extract_args(self._settings.ffmpeg_binary, video_path, target, codec, bitrate)

        loop = asyncio.get_running_loop()
        done: asyncio.Future[None] = loop.create_future()

        def on_end() -> None:
            if not done.done():
                done.set_result(None)

        def on_error(message: str, returncode: Optional[int] = None) -> None:
            if not done.done():
                done.set_exception(classify_ffmpeg(message, returncode))

        engine: TranscodeEngine = self._engine_factory(argv)
        engine.on("start", lambda command: logger.info("Transcoding", extra={"command": command}))
        engine.on("end", on_end)
        engine.on("error", on_error)
        engine.start()

        try:
            await asyncio.wait_for(done, timeout=self._settings.transcode_timeout)
        except asyncio.TimeoutError as ex:
            engine.kill()
            safe_unlink(target)
            raise GrabError(
                ErrorKind.TIMEOUT,
                "Audio extraction timed out - process took too long",
                {"videoPath": str(video_path), "outputFormat": target_format},
            ) from ex
        except GrabError:
            safe_unlink(target)
            raise

        output: Path = await wait_for_file(target, PollPolicy.for_transcodes(self._settings), self._sleep)
        logger.info("Transcode finished", extra={"path": str(output)})
        return output
