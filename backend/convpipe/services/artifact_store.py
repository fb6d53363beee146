"""
Artifact storage service for convpipe.

Handles filesystem-backed media storage under fixed roots with path traversal
protection. Three independently rooted namespaces are kept apart:

- {uploads_dir}/<stamp>-<originalName>      - persisted job inputs
- {library_dir}/<category>/<name>.wav       - impulse response library (read-only)
- {outputs_dir}/output_<stamp>.wav          - raw engine output
- {outputs_dir}/converted_<source>          - transcoded, playback-safe artifacts

Generated names always carry an ``output_`` / ``converted_`` prefix and live
under the outputs root, so they never collide with library or upload names.
"""
import logging
import os
import threading
import time
import uuid
from pathlib import Path

from convpipe.config import settings
from convpipe.errors import NotFoundError, StorageError, ValidationError
from convpipe.schemas.job import ArtifactRecord, AudioFileEntry, ImpulseResponseEntry

logger = logging.getLogger(__name__)

AUDIO_MEDIA_TYPES = {
    ".wav": "audio/wav",
    ".mp3": "audio/mpeg",
    ".flac": "audio/flac",
    ".aif": "audio/aiff",
    ".aiff": "audio/aiff",
    ".ogg": "audio/ogg",
}

# Library entries are restricted to WAV
IMPULSE_RESPONSE_SUFFIX = ".wav"

STAGING_PREFIX = ".staging-"


def media_type_for(path: str | Path) -> str | None:
    """Infer an audio content type from the file extension, or None if unrecognized."""
    return AUDIO_MEDIA_TYPES.get(Path(path).suffix.lower())


def safe_name(filename: str) -> str:
    """Reduce a client-supplied filename to its final component."""
    name = Path(filename.replace("\\", "/")).name
    if name in ("", ".", ".."):
        raise ValidationError(f"Invalid filename: {filename!r}")
    return name


class ArtifactStore:
    """
    Manage media files for the convolution pipeline.

    The store only maps names to paths and moves bytes; it owns no Job state.
    Files are shared-readable by any component holding a valid path.
    """

    def __init__(
        self,
        uploads_dir: str | Path | None = None,
        outputs_dir: str | Path | None = None,
        library_dir: str | Path | None = None,
        audio_dir: str | Path | None = None,
    ):
        """
        Initialize ArtifactStore with its roots.

        Args:
            uploads_dir: Root for persisted uploads (default: settings.storage.uploads_dir)
            outputs_dir: Root for generated artifacts (default: settings.storage.outputs_dir)
            library_dir: Impulse response library root (default: settings.storage.library_dir)
            audio_dir: Sample input audio root (default: settings.storage.audio_dir)
        """
        self.uploads_dir = Path(uploads_dir or settings.storage.uploads_dir).resolve()
        self.outputs_dir = Path(outputs_dir or settings.storage.outputs_dir).resolve()
        self.library_dir = Path(library_dir or settings.storage.library_dir).resolve()
        self.audio_dir = Path(audio_dir or settings.storage.audio_dir).resolve()

        self._stamp_lock = threading.Lock()
        self._last_stamp = 0

    def ensure_roots(self) -> None:
        """Create the writable roots (uploads and outputs)."""
        for root in (self.uploads_dir, self.outputs_dir):
            root.mkdir(parents=True, exist_ok=True)

    def next_stamp(self) -> int:
        """Millisecond timestamp, strictly increasing within this store."""
        with self._stamp_lock:
            stamp = max(int(time.time() * 1000), self._last_stamp + 1)
            self._last_stamp = stamp
            return stamp

    # ------------------------------------------------------------------
    # Path resolution
    # ------------------------------------------------------------------

    @staticmethod
    def _within(root: Path, relative: str) -> Path:
        """
        Resolve ``relative`` under ``root``.

        Raises:
            ValidationError: If the path escapes root (traversal attack)
        """
        candidate = (root / relative.lstrip("/")).resolve()
        # Path traversal protection
        if candidate != root and not candidate.is_relative_to(root):
            raise ValidationError("Invalid path", extra={"path": relative})
        return candidate

    def audio_source(self, filename: str) -> Path:
        return self._within(self.audio_dir, filename)

    def library_source(self, relative_path: str) -> Path:
        return self._within(self.library_dir, relative_path)

    def output_file(self, filename: str) -> Path:
        return self._within(self.outputs_dir, filename)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def save_upload(self, original_name: str, data: bytes) -> Path:
        """
        Persist an uploaded blob as ``uploads/<stamp>-<originalName>``.

        Args:
            original_name: Client-supplied filename (directory parts dropped)
            data: File content

        Returns:
            Path to the persisted upload

        Raises:
            StorageError: If the file cannot be written
        """
        name = safe_name(original_name)
        try:
            self.uploads_dir.mkdir(parents=True, exist_ok=True)
            filepath = self.uploads_dir / f"{self.next_stamp()}-{name}"
            filepath.write_bytes(data)
        except OSError as e:
            raise StorageError("Failed to store upload", details=str(e)) from e

        logger.info(f"Stored upload {original_name!r} -> {filepath}")
        return filepath

    def new_output_path(self) -> Path:
        """Fresh raw-output location: ``Outputs/output_<stamp>.wav``."""
        self.outputs_dir.mkdir(parents=True, exist_ok=True)
        return self.outputs_dir / f"output_{self.next_stamp()}.wav"

    def converted_path(self, source_name: str, tag: str = "converted") -> Path:
        """
        Deterministic cache location for the transcoded form of ``source_name``.

        The same (source, tag) pair always yields the same path, which is what
        makes cache-by-existence work.
        """
        return self.outputs_dir / f"{tag}_{safe_name(source_name)}"

    def staging_path(self, destination: Path) -> Path:
        """Hidden temporary sibling of ``destination`` for write-then-rename."""
        return destination.with_name(f"{STAGING_PREFIX}{uuid.uuid4().hex}-{destination.name}")

    def commit(self, staged: Path, destination: Path) -> Path:
        """Atomically move a fully written staging file into place."""
        try:
            os.replace(staged, destination)
        except OSError as e:
            raise StorageError("Failed to publish artifact", details=str(e)) from e
        return destination

    def discard(self, staged: Path) -> None:
        staged.unlink(missing_ok=True)

    # ------------------------------------------------------------------
    # Listings
    # ------------------------------------------------------------------

    def list_impulse_responses(self) -> list[ImpulseResponseEntry]:
        """
        Enumerate ``<library>/<category>/<name>.wav``.

        Walks exactly one level of category directories. Returns an empty
        list when the library root is absent. Rebuilt on every call.
        """
        if not self.library_dir.is_dir():
            return []

        entries: list[ImpulseResponseEntry] = []
        categories = sorted(p for p in self.library_dir.iterdir() if p.is_dir())
        for category_dir in categories:
            for file in sorted(category_dir.iterdir()):
                if not file.is_file() or file.suffix.lower() != IMPULSE_RESPONSE_SUFFIX:
                    continue
                entries.append(
                    ImpulseResponseEntry(
                        name=file.stem,
                        path=f"/impulse-responses/{category_dir.name}/{file.name}",
                        category=category_dir.name,
                    )
                )

        logger.info(f"Found {len(entries)} impulse responses in {len(categories)} categories")
        return entries

    def list_audio_files(self) -> list[AudioFileEntry]:
        """Enumerate sample input files in the audio root."""
        if not self.audio_dir.is_dir():
            return []
        return [
            AudioFileEntry(name=file.name, path=f"/assets/audio/{file.name}")
            for file in sorted(self.audio_dir.iterdir())
            if file.is_file() and media_type_for(file) is not None
        ]

    def list_outputs(self) -> list[ArtifactRecord]:
        """List ``.wav`` artifacts in the outputs root with their sizes.

        Staging files from in-flight transcodes are hidden.
        """
        if not self.outputs_dir.is_dir():
            return []
        records = []
        for file in sorted(self.outputs_dir.iterdir()):
            if not file.is_file() or file.name.startswith(STAGING_PREFIX):
                continue
            if file.suffix.lower() != ".wav":
                continue
            records.append(
                ArtifactRecord(name=file.name, path=f"/Outputs/{file.name}", size=file.stat().st_size)
            )
        return records

    def require(self, path: Path, message: str, **extra) -> Path:
        """Return ``path`` if it is an existing file, else raise NotFoundError."""
        if not path.is_file():
            raise NotFoundError(message, extra=extra or None)
        return path
