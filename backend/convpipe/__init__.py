"""Convolution Pipeline - impulse-response processing service and worker shell.

This module provides startup validation for the external tools the pipeline
shells out to. Call validate_dependencies() during application startup.
"""

import logging
import subprocess

__version__ = "0.1.0"

logger = logging.getLogger(__name__)


def validate_dependencies(transcoder: str = "ffmpeg", *, strict: bool = False) -> bool:
    """Validate the transcoder executable is available.

    The worker still starts without it (listings and static serving keep
    working), so by default a missing transcoder is only logged.

    Args:
        transcoder: Executable name or path of ffmpeg
        strict: Raise instead of logging when the tool is missing

    Returns:
        True if the transcoder answered ``-version``

    Raises:
        RuntimeError: If strict and ffmpeg is not found or not functional.
    """
    try:
        result = subprocess.run(
            [transcoder, '-version'],
            capture_output=True,
            check=True,
            text=True
        )
        version_line = result.stdout.split('\n')[0]
        logger.info(f"ffmpeg validated: {version_line}")
        return True
    except (subprocess.CalledProcessError, FileNotFoundError) as e:
        message = (
            "ffmpeg not found on PATH. Install ffmpeg to transcode pipeline output.\n"
            "Ubuntu/Debian: sudo apt-get install ffmpeg\n"
            "macOS: brew install ffmpeg\n"
            "Windows: https://ffmpeg.org/download.html"
        )
        if strict:
            raise RuntimeError(message) from e
        logger.warning(message)
        return False
