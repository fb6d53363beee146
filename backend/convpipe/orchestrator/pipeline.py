"""Pipeline coordinator: stages a Job through ingest, engine and transcode.

Coordinates one Job per request with:
- Validation before any side effect
- Strictly sequential stages (ingest -> invoke -> transcode)
- Failure state on the Job without attempting later stages, no retries
- Cache-by-existence for transcoded artifacts, guarded per destination
- A bounded number of concurrent external tool invocations
"""

import asyncio
import logging
from pathlib import Path, PurePosixPath
from typing import Optional
from urllib.parse import unquote

from convpipe.config import Settings
from convpipe.errors import PipelineError, StorageError, ValidationError
from convpipe.orchestrator.state import JobState, can_transition, next_state
from convpipe.schemas.job import (
    ArtifactRecord,
    AudioFileEntry,
    FileProbe,
    HealthResponse,
    ImpulseResponseEntry,
    Job,
    MixSettings,
    UploadedBlob,
)
from convpipe.services.artifact_store import ArtifactStore, safe_name
from convpipe.services.tools import ConvolutionEngine, Transcoder

logger = logging.getLogger(__name__)

# Source kinds accepted by get_or_convert, with their cache tag and 404 message
SOURCE_KINDS = {
    "audio": ("converted", "Audio file not found"),
    "ir": ("converted_ir", "Impulse response file not found"),
}


def _cache_name(identifier: str) -> str:
    """Flatten a relative source path into a single cache filename component."""
    parts = [p for p in PurePosixPath(identifier.replace("\\", "/")).parts if p not in ("/", ".", "..")]
    if not parts:
        raise ValidationError(f"Invalid source identifier: {identifier!r}")
    return "_".join(parts)


class PipelineCoordinator:
    """Orchestrates the artifact store and tool adapters into the Job flow.

    The coordinator owns each Job for the duration of one call; nothing is
    persisted beyond the files on disk.
    """

    def __init__(
        self,
        store: ArtifactStore,
        engine: ConvolutionEngine,
        transcoder: Transcoder,
        max_concurrent_jobs: int = 2,
    ):
        self.store = store
        self.engine = engine
        self.transcoder = transcoder
        self._slots = asyncio.Semaphore(max_concurrent_jobs)
        # Per-destination lock plus the number of callers holding or awaiting it
        self._cache_locks: dict[Path, tuple[asyncio.Lock, int]] = {}

    @classmethod
    def from_settings(cls, config: Settings) -> "PipelineCoordinator":
        """Wire store and adapters from a Settings instance."""
        store = ArtifactStore(
            uploads_dir=config.storage.uploads_dir,
            outputs_dir=config.storage.outputs_dir,
            library_dir=config.storage.library_dir,
            audio_dir=config.storage.audio_dir,
        )
        engine = ConvolutionEngine(config.tools.engine_command, timeout=config.tools.engine_timeout)
        transcoder = Transcoder(
            store, config.tools.transcoder_command, timeout=config.tools.transcode_timeout
        )
        return cls(store, engine, transcoder, max_concurrent_jobs=config.tools.max_concurrent_jobs)

    # ------------------------------------------------------------------
    # Job flow
    # ------------------------------------------------------------------

    @staticmethod
    def _advance(job: Job, target: JobState) -> None:
        job.state = next_state(job.state, target)
        logger.debug(f"Job {job.output_path}: -> {target.value}")

    @staticmethod
    def _fail(job: Job, exc: BaseException) -> None:
        if can_transition(job.state, JobState.FAILED):
            failed_stage = job.state
            job.state = JobState.FAILED
            job.error = exc.details if isinstance(exc, PipelineError) and exc.details else str(exc)
            logger.error(f"Job failed during {failed_stage.value}: {job.error}")

    async def submit_job(
        self,
        audio: Optional[UploadedBlob],
        impulse: Optional[UploadedBlob],
        mix: Optional[MixSettings] = None,
    ) -> Job:
        """Run one Job end to end.

        Args:
            audio: Uploaded input audio, None if the client sent none
            impulse: Uploaded impulse response, None if the client sent none
            mix: Mix settings; defaults apply when omitted

        Returns:
            The Job in state READY, with ``converted_path`` on disk

        Raises:
            ValidationError: Either upload missing (no files written, no tools run)
            SubprocessError: Engine or transcoder failed (Job marked FAILED)
            StorageError: Uploads could not be persisted (Job marked FAILED)
        """
        job = Job(settings=mix or MixSettings())
        logger.info("Received audio processing request")

        if audio is None or impulse is None:
            raise ValidationError("Both audio file and impulse response are required")
        # Both names must be usable before either upload touches disk
        safe_name(audio.filename)
        safe_name(impulse.filename)
        self._advance(job, JobState.VALIDATED)

        try:
            job.input_audio_path = self.store.save_upload(audio.filename, audio.data)
            job.impulse_response_path = self.store.save_upload(impulse.filename, impulse.data)
            job.output_path = self.store.new_output_path()
            job.converted_path = self.store.converted_path(job.output_path.name)
            logger.info(
                f"Processing files: audio={job.input_audio_path} "
                f"ir={job.impulse_response_path} output={job.output_path}"
            )

            self._advance(job, JobState.INVOKING)
            async with self._slots:
                await self.engine.process(
                    job.input_audio_path,
                    job.impulse_response_path,
                    job.output_path,
                    job.settings,
                )

            self._advance(job, JobState.TRANSCODING)
            await self._ensure_converted(job.output_path, job.converted_path)

        except Exception as e:
            # Raw engine output is left on disk when a later stage fails
            self._fail(job, e)
            raise

        self._advance(job, JobState.READY)
        logger.info(f"Job ready: {job.converted_path.name}")
        return job

    @staticmethod
    def public_url(path: Path) -> str:
        return f"/Outputs/{path.name}"

    # ------------------------------------------------------------------
    # Transcode cache
    # ------------------------------------------------------------------

    async def _ensure_converted(self, source: Path, destination: Path) -> Path:
        """Return ``destination``, transcoding ``source`` only if it is missing.

        Concurrent callers for the same destination serialize on a per-path
        lock; the second one finds the file and skips the transcoder.
        """
        lock, users = self._cache_locks.get(destination, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._cache_locks[destination] = (lock, users + 1)
        try:
            async with lock:
                if destination.is_file():
                    logger.info(f"Cache hit: {destination.name}")
                    return destination

                logger.info(f"Cache miss: {destination.name}")
                async with self._slots:
                    return await self.transcoder.transcode(source, destination)
        finally:
            self._release_cache_lock(destination)

    def _release_cache_lock(self, destination: Path) -> None:
        lock, users = self._cache_locks[destination]
        if users <= 1:
            del self._cache_locks[destination]
        else:
            self._cache_locks[destination] = (lock, users - 1)

    async def get_or_convert(self, kind: str, identifier: str) -> Path:
        """Return the playback-safe artifact for a raw audio or impulse response file.

        Args:
            kind: "audio" (sample inputs) or "ir" (library, path relative to its root)
            identifier: Source filename or relative path

        Raises:
            ValidationError: Unknown kind or path escaping its root
            NotFoundError: Source file does not exist
            SubprocessError: Transcoder failed
        """
        if kind not in SOURCE_KINDS:
            raise ValidationError(f"Invalid source kind: {kind}")
        tag, missing_message = SOURCE_KINDS[kind]

        if kind == "audio":
            source = self.store.audio_source(identifier)
        else:
            source = self.store.library_source(identifier)
        self.store.require(source, missing_message)

        destination = self.store.converted_path(_cache_name(identifier), tag=tag)
        return await self._ensure_converted(source, destination)

    # ------------------------------------------------------------------
    # Listings and probes
    # ------------------------------------------------------------------

    def list_impulse_responses(self) -> list[ImpulseResponseEntry]:
        try:
            return self.store.list_impulse_responses()
        except OSError as e:
            logger.error(f"Error scanning impulse responses: {e}")
            raise StorageError("Failed to scan impulse responses", details=str(e)) from e

    def list_outputs(self) -> list[ArtifactRecord]:
        try:
            return self.store.list_outputs()
        except OSError as e:
            logger.error(f"Error listing output files: {e}")
            raise StorageError("Failed to list output files", details=str(e)) from e

    def list_audio_files(self) -> list[AudioFileEntry]:
        try:
            return self.store.list_audio_files()
        except OSError as e:
            logger.error(f"Error listing audio files: {e}")
            raise StorageError("Failed to list audio files", details=str(e)) from e

    def probe_file(self, kind: Optional[str], filename: Optional[str]) -> FileProbe:
        """Report whether a sample-audio or library file exists."""
        if not kind or not filename:
            raise ValidationError("Missing type or filename parameter")

        if kind == "audio":
            path = self.store.audio_source(filename)
            url = f"/assets/audio/{filename}"
        elif kind == "ir":
            decoded = unquote(filename)
            path = self.store.library_source(decoded)
            url = f"/impulse-responses/{decoded}"
        else:
            raise ValidationError("Invalid file type")

        if not path.is_file():
            return FileProbe(exists=False, path=str(path), error="File not found")
        return FileProbe(exists=True, path=str(path), size=path.stat().st_size, url=url)

    @staticmethod
    def health() -> HealthResponse:
        return HealthResponse()
