"""Pydantic schemas for Jobs, mix settings and API response shapes.

Field names on the wire are camelCase (the front end and the convolution
engine both read ``dryWet``, ``lowPassFreq`` ...); Python attributes are
snake_case and populated by either name.
"""

from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from convpipe.orchestrator.state import JobState


class MixSettings(BaseModel):
    """Mix and filter settings attached to a Job.

    Frozen once constructed; serialized as a single JSON blob for the engine.
    Unknown keys are kept so newer engine options pass through untouched.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="allow",
    )

    dry_wet: float = 50.0
    input_gain: float = 0.0
    output_gain: float = 0.0
    impulse_gain: float = 0.0
    low_pass_freq: float = 20000.0
    high_pass_freq: float = 20.0
    stereo_width: float = 100.0
    normalize: bool = True

    def to_engine_json(self) -> str:
        """Serialize to the single JSON argument the engine expects."""
        return self.model_dump_json(by_alias=True)


class UploadedBlob(BaseModel):
    """Raw uploaded file content plus the client-supplied name."""

    filename: str
    data: bytes


class Job(BaseModel):
    """One end-to-end processing request; lives for a single HTTP request."""

    model_config = ConfigDict(validate_assignment=True)

    settings: MixSettings
    input_audio_path: Optional[Path] = None
    impulse_response_path: Optional[Path] = None
    output_path: Optional[Path] = None
    converted_path: Optional[Path] = None
    state: JobState = JobState.RECEIVED
    error: Optional[str] = None


# ============================================================================
# Response schemas
# ============================================================================

class HealthResponse(BaseModel):
    status: str = "OK"
    message: str = "Audio processing server is running"


class ProcessResponse(BaseModel):
    """Response schema for POST /process-audio."""

    success: bool = True
    output_file: str = Field(serialization_alias="outputFile")
    message: str = "Audio processing and conversion completed successfully"


class ImpulseResponseEntry(BaseModel):
    """A library impulse response, enumerated from ``<library>/<category>/<name>``."""

    name: str
    path: str
    category: str


class AudioFileEntry(BaseModel):
    name: str
    path: str


class ArtifactRecord(BaseModel):
    """A derived file in the outputs area."""

    name: str
    path: str
    size: int


class FileProbe(BaseModel):
    """Result of an existence probe for a source path."""

    exists: bool
    path: str
    size: Optional[int] = None
    url: Optional[str] = None
    error: Optional[str] = None
