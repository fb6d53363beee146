"""Error kinds raised by the pipeline and the shell supervisor.

Every ``PipelineError`` carries the HTTP status it maps to, a human readable
``message`` and optional ``details`` (usually external tool diagnostics). The
API layer renders them as ``{"error": message, "details": details}``.
"""

from typing import Any, Optional


class PipelineError(Exception):
    """Base class for failures that abort a request or a Job."""

    status_code: int = 500

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        *,
        extra: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details
        self.extra = extra or {}

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.message}
        if self.details is not None:
            body["details"] = self.details
        body.update(self.extra)
        return body


class ValidationError(PipelineError):
    """Required input missing or malformed at submission time."""

    status_code = 400


class NotFoundError(PipelineError):
    """Requested source file or artifact does not exist."""

    status_code = 404


class StorageError(PipelineError):
    """Filesystem read or write failure."""

    status_code = 500


class SubprocessError(PipelineError):
    """External tool could not be spawned or exited non-zero."""

    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        returncode: Optional[int] = None,
        stdout: str = "",
        stderr: str = "",
    ):
        super().__init__(message, details=stderr.strip() or message)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class ToolTimeoutError(SubprocessError):
    """External tool exceeded its deadline and was killed."""

    status_code = 504


class SupervisorError(Exception):
    """Worker process could not be started or stopped.

    Never rendered over HTTP: the supervisor runs outside any request.
    """
