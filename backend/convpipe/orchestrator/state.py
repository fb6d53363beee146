"""State machine constants and transition logic for Jobs.

A Job moves strictly forward through ingest, engine invocation and
transcoding. ``ready`` and ``failed`` are terminal and nothing is retried.
"""

from enum import Enum


class JobState(str, Enum):
    RECEIVED = "received"
    VALIDATED = "validated"
    INVOKING = "invoking"
    TRANSCODING = "transcoding"
    READY = "ready"
    FAILED = "failed"


# Job states in execution order
JOB_STATES = {
    JobState.RECEIVED: "Submission accepted, inputs not yet checked",
    JobState.VALIDATED: "Both uploads present, persisting to the uploads area",
    JobState.INVOKING: "Convolution engine running",
    JobState.TRANSCODING: "Converting engine output to playback-safe PCM",
    JobState.READY: "Transcoded artifact available",
    JobState.FAILED: "A stage failed; no later stage ran",
}

# Forward transitions for active stages
STEP_TRANSITIONS = {
    JobState.RECEIVED: JobState.VALIDATED,
    JobState.VALIDATED: JobState.INVOKING,
    JobState.INVOKING: JobState.TRANSCODING,
    JobState.TRANSCODING: JobState.READY,
}

# States from which a Job may fail
FAILABLE_STATES = {
    JobState.VALIDATED,
    JobState.INVOKING,
    JobState.TRANSCODING,
}


class InvalidTransition(RuntimeError):
    """Raised when a Job is moved backwards or out of a terminal state."""


def can_transition(current: JobState, target: JobState) -> bool:
    """Check whether ``current -> target`` is a legal Job transition.

    Args:
        current: State the Job is in now
        target: Requested next state

    Returns:
        True for the single forward step, or for failing an active stage
    """
    if target == JobState.FAILED:
        return current in FAILABLE_STATES
    return STEP_TRANSITIONS.get(current) == target


def next_state(current: JobState, target: JobState) -> JobState:
    """Return ``target`` if reachable from ``current``, else raise InvalidTransition."""
    if not can_transition(current, target):
        raise InvalidTransition(f"Illegal job transition {current.value} -> {target.value}")
    return target
