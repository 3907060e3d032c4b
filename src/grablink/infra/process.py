"""Bounded execution of external command-line tools."""
from __future__ import annotations

import asyncio
import logging
import shlex
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Sequence

from grablink.core.errors import ErrorKind, GrabError, classify

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandResult:
    """Outcome of a finished process."""

    argv: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def combined(self) -> str:
        return f"{self.stdout}\n{self.stderr}".strip()


# Signature shared by ``ProcessRunner.run`` and the fakes used in tests.
CommandExecutor = Callable[[Sequence[str], float], Awaitable[CommandResult]]


def render_command(argv: Sequence[str]) -> str:
    """Render an argument vector as a single shell-quoted string for logs."""

    return shlex.join(list(argv))


class ProcessRunner:
    """Run external processes with a timeout and a concurrency cap.

    Notes
    -----
    - Arguments are passed as a vector to ``asyncio.create_subprocess_exec``; no
      shell is involved, so user-provided values are never interpreted.
    - On timeout the process is killed and reaped before ``TIMEOUT`` is raised.
    - The run is shielded from caller cancellation: if a client disconnects the
      process still finishes (bounded by its own timeout) in the background.
    - A missing executable surfaces as ``COMMAND_NOT_FOUND``.
    """

    def __init__(self, max_concurrent: int = 4) -> None:
        self._semaphore: asyncio.Semaphore = asyncio.Semaphore(max(1, max_concurrent))
        self._background: set[asyncio.Task[CommandResult]] = set()

    async def run(self, argv: Sequence[str], timeout: float) -> CommandResult:
        """Execute ``argv`` and capture its output.

        Parameters
        ----------
        argv: Sequence[str]
            Program and arguments.
        timeout: float
            Seconds before the process is killed.

        Returns
        -------
        CommandResult
            Exit status and decoded output; non-zero exit codes are returned, not raised.

        Raises
        ------
        GrabError
            ``COMMAND_NOT_FOUND`` or ``TIMEOUT``.
        """

        task: asyncio.Task[CommandResult] = asyncio.create_task(self._run(tuple(argv), timeout))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return await asyncio.shield(task)

    async def _run(self, argv: tuple[str, ...], timeout: float) -> CommandResult:
        async with self._semaphore:
            logger.debug("Spawning process", extra={"command": render_command(argv)})
            try:
                proc = await asyncio.create_subprocess_exec(
                    *argv,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except FileNotFoundError as ex:
                raise GrabError(
                    ErrorKind.COMMAND_NOT_FOUND,
                    f"Executable not found: {argv[0]}",
                    {"program": argv[0]},
                ) from ex
            except OSError as ex:
                raise GrabError(
                    ErrorKind.COMMAND_NOT_FOUND,
                    f"Executable could not be started: {argv[0]}",
                    {"program": argv[0], "errno": ex.errno, "reason": ex.strerror or str(ex)},
                ) from ex

            try:
                stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
            except asyncio.TimeoutError as ex:
                await _kill(proc)
                logger.warning("Process timed out", extra={"program": argv[0], "timeout": timeout})
                raise GrabError(
                    ErrorKind.TIMEOUT,
                    "Request timed out - the server took too long to respond",
                    {"timeout": timeout},
                ) from ex

        return CommandResult(
            argv=argv,
            returncode=proc.returncode if proc.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )


def _error_lines(stderr: str) -> list[str]:
    return [line.strip() for line in stderr.splitlines() if line.lstrip().startswith("ERROR:")]


def failure_text(result: CommandResult) -> str:
    """Pick the text a failed run is classified from.

    ``ERROR:`` lines on stderr win; otherwise all of stderr, and stdout only when
    stderr is empty. Progress and ``[info]`` lines on stdout mention formats and
    would otherwise look like a quality problem.
    """

    errors: list[str] = _error_lines(result.stderr)
    if errors:
        return "\n".join(errors)
    return result.stderr.strip() or result.stdout.strip()


async def run_checked(
    executor: CommandExecutor,
    argv: Sequence[str],
    timeout: float,
    classify_output: Callable[[str, Optional[int]], GrabError] = classify,
) -> CommandResult:
    """Run ``argv`` and convert any failure into a classified ``GrabError``.

    Notes
    -----
    - A non-zero exit status is classified from ``failure_text``.
    - A zero exit status whose stderr still carries ``ERROR:`` lines is treated as
      a failure too; warnings and progress lines are ignored.
    """

    result: CommandResult = await executor(argv, timeout)
    if not result.ok or _error_lines(result.stderr):
        raise classify_output(failure_text(result), result.returncode)
    return result


async def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    try:
        proc.kill()
    except ProcessLookupError:
        return
    await proc.wait()


async def which_version(argv: Sequence[str], timeout: float = 5.0) -> Optional[str]:
    """Return the first output line of a version command, or ``None`` if it fails."""

    try:
        result: CommandResult = await ProcessRunner(1).run(argv, timeout)
    except GrabError:
        return None
    if not result.ok:
        return None
    lines: list[str] = result.stdout.strip().splitlines()
    return lines[0] if lines else None
