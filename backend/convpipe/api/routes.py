"""API route handlers for the pipeline coordinator."""

import json
import logging
from pathlib import Path
from typing import Callable, Optional

from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile
from fastapi.responses import FileResponse, JSONResponse
from pydantic import ValidationError as SchemaError

from convpipe.errors import NotFoundError, PipelineError, SubprocessError, ValidationError
from convpipe.orchestrator.pipeline import PipelineCoordinator
from convpipe.schemas.job import (
    ArtifactRecord,
    AudioFileEntry,
    FileProbe,
    HealthResponse,
    ImpulseResponseEntry,
    MixSettings,
    ProcessResponse,
    UploadedBlob,
)
from convpipe.services.artifact_store import STAGING_PREFIX, media_type_for

logger = logging.getLogger(__name__)

router = APIRouter()

# Headers for direct audio retrieval by browser audio elements
AUDIO_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, HEAD",
    "Access-Control-Allow-Headers": "Range",
}


def get_coordinator(request: Request) -> PipelineCoordinator:
    return request.app.state.coordinator


def _audio_response(path: Path) -> FileResponse:
    return FileResponse(path, media_type=media_type_for(path) or "audio/wav", headers=AUDIO_HEADERS)


def _parse_settings(raw: Optional[str]) -> MixSettings:
    if not raw:
        return MixSettings()
    try:
        return MixSettings.model_validate(json.loads(raw))
    except (json.JSONDecodeError, SchemaError) as e:
        raise ValidationError("Invalid settings", details=str(e)) from e


async def _read_blob(upload: Optional[UploadFile]) -> Optional[UploadedBlob]:
    if upload is None or not upload.filename:
        return None
    return UploadedBlob(filename=upload.filename, data=await upload.read())


# ============================================================================
# Health and listings
# ============================================================================

@router.get("/health", response_model=HealthResponse)
async def health(coordinator: PipelineCoordinator = Depends(get_coordinator)):
    return coordinator.health()


@router.get("/impulse-responses", response_model=list[ImpulseResponseEntry])
async def list_impulse_responses(coordinator: PipelineCoordinator = Depends(get_coordinator)):
    return coordinator.list_impulse_responses()


@router.get("/audio-files", response_model=list[AudioFileEntry])
async def list_audio_files(coordinator: PipelineCoordinator = Depends(get_coordinator)):
    return coordinator.list_audio_files()


@router.get("/output-files", response_model=list[ArtifactRecord])
async def list_output_files(coordinator: PipelineCoordinator = Depends(get_coordinator)):
    return coordinator.list_outputs()


@router.get("/test-file", response_model=FileProbe, response_model_exclude_none=True)
async def test_file(
    kind: Optional[str] = Query(None, alias="type"),
    filename: Optional[str] = None,
    coordinator: PipelineCoordinator = Depends(get_coordinator),
):
    """Existence probe for a sample-audio (type=audio) or library (type=ir) file."""
    return coordinator.probe_file(kind, filename)


# ============================================================================
# Job submission
# ============================================================================

@router.post("/process-audio")
async def process_audio(
    audio_file: Optional[UploadFile] = File(None, alias="audioFile"),
    impulse_response: Optional[UploadFile] = File(None, alias="impulseResponse"),
    settings: Optional[str] = Form(None),
    coordinator: PipelineCoordinator = Depends(get_coordinator),
):
    """Submit a Job: multipart audioFile + impulseResponse + settings JSON.

    Returns the public URL of the transcoded artifact. Validation problems
    answer 400; any stage failure answers 500 with the tool diagnostics.
    """
    audio = await _read_blob(audio_file)
    impulse = await _read_blob(impulse_response)
    if audio is None or impulse is None:
        raise ValidationError("Both audio file and impulse response are required")
    mix = _parse_settings(settings)

    try:
        job = await coordinator.submit_job(audio, impulse, mix)
    except ValidationError:
        raise
    except PipelineError as e:
        return JSONResponse(
            status_code=500,
            content={"error": "Audio processing failed", "details": e.details},
        )
    except Exception as e:
        logger.error(f"Error processing audio: {e}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"error": "Audio processing failed", "details": str(e)},
        )

    return ProcessResponse(output_file=coordinator.public_url(job.converted_path)).model_dump(
        by_alias=True
    )


# ============================================================================
# Transcoded retrieval
# ============================================================================

async def _converted_response(
    coordinator: PipelineCoordinator, kind: str, identifier: str, failure_message: str
):
    try:
        path = await coordinator.get_or_convert(kind, identifier)
    except SubprocessError as e:
        return JSONResponse(
            status_code=e.status_code,
            content={"error": failure_message, "details": e.details},
        )
    return _audio_response(path)


@router.get("/convert-audio/{filename}")
async def convert_audio(filename: str, coordinator: PipelineCoordinator = Depends(get_coordinator)):
    """Serve a sample input as 16-bit PCM, converting and caching on first request."""
    return await _converted_response(coordinator, "audio", filename, "Failed to convert audio")


@router.get("/convert-ir")
async def convert_ir(
    path: Optional[str] = None,
    coordinator: PipelineCoordinator = Depends(get_coordinator),
):
    """Serve a library impulse response as 16-bit PCM, converting on first request."""
    if not path:
        raise ValidationError("Missing path parameter")
    return await _converted_response(coordinator, "ir", path, "Failed to convert impulse response")


# ============================================================================
# Static artifact serving
# ============================================================================

def _servable(path: Path) -> bool:
    """Existing audio file that is not an in-flight staging file."""
    return (
        path.is_file()
        and media_type_for(path) is not None
        and not path.name.startswith(STAGING_PREFIX)
    )


def _serve(resolve: Callable[[str], Path], relative: str, request_path: str, message: str):
    try:
        path = resolve(relative)
    except ValidationError:
        raise NotFoundError(message, extra={"path": request_path}) from None
    if not _servable(path):
        logger.error(f"Error serving file: {request_path}")
        raise NotFoundError(message, extra={"path": request_path})
    return _audio_response(path)


@router.api_route("/assets/audio/{filename:path}", methods=["GET", "HEAD"])
async def serve_audio(
    filename: str, request: Request, coordinator: PipelineCoordinator = Depends(get_coordinator)
):
    return _serve(coordinator.store.audio_source, filename, request.url.path, "Asset file not found")


@router.api_route("/impulse-responses/{relative:path}", methods=["GET", "HEAD"])
async def serve_impulse_response(
    relative: str, request: Request, coordinator: PipelineCoordinator = Depends(get_coordinator)
):
    return _serve(
        coordinator.store.library_source, relative, request.url.path, "Impulse response file not found"
    )


@router.api_route("/Outputs/{filename:path}", methods=["GET", "HEAD"])
async def serve_output(
    filename: str, request: Request, coordinator: PipelineCoordinator = Depends(get_coordinator)
):
    return _serve(coordinator.store.output_file, filename, request.url.path, "Output file not found")


@router.get("/test-audio/{filename}")
async def test_audio(filename: str, coordinator: PipelineCoordinator = Depends(get_coordinator)):
    try:
        path = coordinator.store.output_file(filename)
    except ValidationError:
        path = None
    if path is None or not _servable(path):
        raise NotFoundError("Audio file not found", extra={"filename": filename})
    return _audio_response(path)
