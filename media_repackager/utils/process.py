import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional, Sequence

from media_repackager.utils.pipes import SinkPipe, SourcePipe

logger = logging.getLogger(__name__)
packager_logger = logging.getLogger("media_repackager.packager")


class ProcessStartError(Exception):
    """Raised when the packaging process cannot be started at all."""

    def __init__(self, command: str, error: Exception):
        self.command = command
        self.error = error
        super().__init__(f"Failed to start process {command}: {error}")


@dataclass
class ProcessResult:
    command: str
    returncode: int
    stdout: list[str] = field(default_factory=list)
    stderr: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.returncode == 0


def escape_argument(argument: str) -> str:
    """Quote an argument containing spaces, for logging the command line."""
    return f'"{argument}"' if " " in argument else argument


async def _read_lines(stream: asyncio.StreamReader, lines: list[str], level: int) -> None:
    while line := await stream.readline():
        text = line.decode(errors="replace").rstrip("\r\n")
        lines.append(text)
        packager_logger.log(level, text)


async def run_process(
    command: str,
    arguments: Sequence[str],
    *,
    cwd: Optional[str] = None,
    stdin_pipe: Optional[SourcePipe] = None,
    stdout_pipe: Optional[SinkPipe] = None,
) -> ProcessResult:
    """
    Run an external process to completion.

    Each stdout line is logged at DEBUG and each stderr line at INFO on the
    ``media_repackager.packager`` logger as it arrives. A non-zero exit is
    logged and reported through the result, never raised. When ``stdin_pipe``
    is given the process's stdin is fed from it; when ``stdout_pipe`` is given
    stdout is uploaded instead of logged. On cancellation the process is killed
    and reaped before the cancellation propagates.

    Raises:
        ProcessStartError: If the executable is missing or not executable.
    """
    logger.debug(f"Starting process {command}...")
    logger.debug(f"Process arguments: {' '.join(escape_argument(a) for a in arguments)}")
    try:
        process = await asyncio.create_subprocess_exec(
            command,
            *arguments,
            cwd=cwd,
            stdin=asyncio.subprocess.PIPE if stdin_pipe else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except (FileNotFoundError, PermissionError) as e:
        logger.error(f"Failed to start process {command} with error: {e}")
        raise ProcessStartError(command, e) from e

    result = ProcessResult(command=command, returncode=-1)

    async def feed_stdin() -> None:
        try:
            await stdin_pipe.run_to_writer(process.stdin)
        except (BrokenPipeError, ConnectionResetError):
            # The process exited before reading all of its input; its exit code reports the failure.
            logger.warning(f"Process {command} closed its input early")

    tasks = [_read_lines(process.stderr, result.stderr, logging.INFO)]
    if stdout_pipe is not None:
        tasks.append(stdout_pipe.run_from_reader(process.stdout))
    else:
        tasks.append(_read_lines(process.stdout, result.stdout, logging.DEBUG))
    if stdin_pipe is not None:
        tasks.append(feed_stdin())

    try:
        await asyncio.gather(*tasks)
        result.returncode = await process.wait()
    except BaseException:
        if process.returncode is None:
            process.kill()
        await process.wait()
        raise

    if not result.success:
        logger.error(f"Process {command} finished with exit code {result.returncode}")
    else:
        logger.debug(f"Process {command} finished successfully")
    return result
