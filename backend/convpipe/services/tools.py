"""External tool adapters: the convolution engine and the ffmpeg transcoder.

Both tools are opaque executables. The adapters only build the argument
vector, run it with captured output under a deadline, and map the outcome:

- exit 0 -> ToolResult
- non-zero exit or spawn failure -> SubprocessError (stderr attached)
- deadline expired -> ToolTimeoutError (child killed by subprocess.run)

Blocking ``subprocess.run`` calls are pushed to a thread with
``asyncio.to_thread`` so the event loop keeps serving other requests.
"""

import asyncio
import logging
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from convpipe.config import settings
from convpipe.errors import SubprocessError, ToolTimeoutError
from convpipe.schemas.job import MixSettings
from convpipe.services.artifact_store import ArtifactStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolResult:
    argv: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str


def _decode(data: Optional[bytes]) -> str:
    if not data:
        return ""
    return data.decode("utf-8", errors="replace")


def run_tool(argv: Sequence[str], *, timeout: Optional[float], label: str) -> ToolResult:
    """Run an external tool synchronously and map its outcome.

    Args:
        argv: Full argument vector, executable first
        timeout: Deadline in seconds, or None to wait indefinitely
        label: Human name of the tool for messages

    Returns:
        ToolResult for a zero exit status

    Raises:
        ToolTimeoutError: Deadline expired; the child has been killed
        SubprocessError: Spawn failure or non-zero exit
    """
    argv = [str(a) for a in argv]
    try:
        completed = subprocess.run(
            argv,
            capture_output=True,
            check=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        logger.error(f"{label} timed out after {timeout}s: {argv[0]}")
        raise ToolTimeoutError(
            f"{label} timed out after {timeout}s",
            stdout=_decode(e.stdout),
            stderr=_decode(e.stderr),
        ) from e
    except subprocess.CalledProcessError as e:
        stderr = _decode(e.stderr)
        logger.error(f"{label} exited with code {e.returncode}: {stderr.strip() or 'No error output'}")
        raise SubprocessError(
            f"{label} exited with code {e.returncode}",
            returncode=e.returncode,
            stdout=_decode(e.stdout),
            stderr=stderr,
        ) from e
    except OSError as e:
        # FileNotFoundError / PermissionError when the executable cannot be spawned
        logger.error(f"{label} could not be started: {e}")
        raise SubprocessError(f"Failed to start {label}: {e}") from e

    return ToolResult(
        argv=tuple(argv),
        returncode=completed.returncode,
        stdout=_decode(completed.stdout),
        stderr=_decode(completed.stderr),
    )


class ConvolutionEngine:
    """Adapter for the convolution engine executable.

    Contract: ``<engine> <input> <impulse_response> <output> <settings_json>``,
    exit 0 on success with the output file written.
    """

    label = "Convolution engine"

    def __init__(self, command: Sequence[str] | None = None, timeout: float | None = None):
        self.command = list(command or settings.tools.engine_command)
        self.timeout = settings.tools.engine_timeout if timeout is None else timeout

    def build_argv(
        self, input_path: Path, impulse_path: Path, output_path: Path, mix: MixSettings
    ) -> list[str]:
        return [
            *self.command,
            str(input_path),
            str(impulse_path),
            str(output_path),
            mix.to_engine_json(),
        ]

    async def process(
        self, input_path: Path, impulse_path: Path, output_path: Path, mix: MixSettings
    ) -> ToolResult:
        argv = self.build_argv(input_path, impulse_path, output_path, mix)
        logger.info(f"Executing engine: {argv}")
        result = await asyncio.to_thread(run_tool, argv, timeout=self.timeout, label=self.label)

        if result.stderr.strip():
            logger.warning(f"Engine stderr: {result.stderr.strip()}")
        if result.stdout.strip():
            logger.info(f"Engine stdout: {result.stdout.strip()}")
        return result

    def is_available(self) -> bool:
        executable = self.command[0]
        return Path(executable).exists() or shutil.which(executable) is not None


class Transcoder:
    """Adapter for ffmpeg converting any input to 16-bit PCM WAV.

    Output is written to a hidden staging file next to the destination and
    renamed into place only after ffmpeg succeeds, so readers never see a
    partial artifact at the cache path.
    """

    label = "Transcoder"

    def __init__(
        self,
        store: ArtifactStore,
        command: Sequence[str] | None = None,
        timeout: float | None = None,
    ):
        self.store = store
        self.command = list(command or settings.tools.transcoder_command)
        self.timeout = settings.tools.transcode_timeout if timeout is None else timeout

    def build_argv(self, source: Path, destination: Path) -> list[str]:
        return [
            *self.command,
            "-y",  # Overwrite output file
            "-i",
            str(source),
            "-acodec",
            "pcm_s16le",
            str(destination),
        ]

    async def transcode(self, source: Path, destination: Path) -> Path:
        destination.parent.mkdir(parents=True, exist_ok=True)
        staged = self.store.staging_path(destination)
        argv = self.build_argv(source, staged)
        logger.info(f"Transcoding {source.name} -> {destination.name}")

        try:
            await asyncio.to_thread(run_tool, argv, timeout=self.timeout, label=self.label)
            if not staged.exists():
                raise SubprocessError(f"{self.label} produced no output for {source.name}")
            self.store.commit(staged, destination)
        finally:
            # Clean up staging file if it was not published
            self.store.discard(staged)

        return destination

    def is_available(self) -> bool:
        return shutil.which(self.command[0]) is not None
