"""Tests for the pipeline coordinator: Job flow, transcode cache and probes."""

import asyncio
import json
import logging

import pytest

from convpipe.errors import NotFoundError, SubprocessError, ValidationError
from convpipe.orchestrator.state import JobState
from convpipe.schemas.job import MixSettings, UploadedBlob

from conftest import SCENARIO_SETTINGS, read_calls


def blobs():
    return (
        UploadedBlob(filename="in.wav", data=b"RIFF-input"),
        UploadedBlob(filename="ir.wav", data=b"RIFF-ir"),
    )


class TestSubmitJob:
    """End-to-end Job execution against stub tools."""

    async def test_successful_job(self, make_coordinator, store):
        coordinator = make_coordinator()
        mix = MixSettings.model_validate(SCENARIO_SETTINGS)

        job = await coordinator.submit_job(*blobs(), mix)

        assert job.state == JobState.READY
        assert job.error is None
        assert job.converted_path.is_file()
        assert job.converted_path.name == f"converted_{job.output_path.name}"
        assert coordinator.public_url(job.converted_path) == f"/Outputs/{job.converted_path.name}"

        engine_calls = read_calls(coordinator.engine_cmd)
        assert len(engine_calls) == 1
        argv = engine_calls[0]["argv"]
        assert len(argv) == 4
        assert argv[0] == str(job.input_audio_path)
        assert argv[1] == str(job.impulse_response_path)
        assert argv[2] == str(job.output_path)
        assert json.loads(argv[3]) == SCENARIO_SETTINGS
        assert len(read_calls(coordinator.transcoder_cmd)) == 1

    async def test_default_settings_when_omitted(self, make_coordinator):
        coordinator = make_coordinator()

        await coordinator.submit_job(*blobs())

        argv = read_calls(coordinator.engine_cmd)[0]["argv"]
        assert json.loads(argv[3]) == SCENARIO_SETTINGS

    @pytest.mark.parametrize("missing", ["audio", "impulse"])
    async def test_missing_upload_has_no_side_effects(self, make_coordinator, store, missing):
        coordinator = make_coordinator()
        audio, impulse = blobs()
        if missing == "audio":
            audio = None
        else:
            impulse = None

        with pytest.raises(ValidationError) as exc_info:
            await coordinator.submit_job(audio, impulse)

        assert exc_info.value.status_code == 400
        assert not store.uploads_dir.exists() or not any(store.uploads_dir.iterdir())
        assert read_calls(coordinator.engine_cmd) == []
        assert read_calls(coordinator.transcoder_cmd) == []

    async def test_unusable_impulse_name_has_no_side_effects(self, make_coordinator, store):
        coordinator = make_coordinator()
        audio, _ = blobs()

        with pytest.raises(ValidationError):
            await coordinator.submit_job(audio, UploadedBlob(filename="..", data=b"RIFF-ir"))

        assert not store.uploads_dir.exists() or not any(store.uploads_dir.iterdir())
        assert read_calls(coordinator.engine_cmd) == []

    async def test_cache_locks_released_after_jobs(self, make_coordinator):
        coordinator = make_coordinator()

        for _ in range(3):
            await coordinator.submit_job(*blobs())

        assert coordinator._cache_locks == {}

    async def test_engine_failure_skips_transcoder(self, make_coordinator, store, caplog):
        caplog.set_level(logging.ERROR, logger="convpipe")
        coordinator = make_coordinator(engine="engine_fail")

        with pytest.raises(SubprocessError) as exc_info:
            await coordinator.submit_job(*blobs())

        assert exc_info.value.details == "bad format"
        assert read_calls(coordinator.transcoder_cmd) == []
        assert "Job failed during invoking: bad format" in caplog.text
        # Uploads stay on disk; no converted artifact is produced
        assert len(list(store.uploads_dir.iterdir())) == 2
        assert not any(p.name.startswith("converted_") for p in store.outputs_dir.iterdir())

    async def test_transcoder_failure_keeps_raw_output(self, make_coordinator, store):
        coordinator = make_coordinator(transcoder="transcoder_fail")

        with pytest.raises(SubprocessError):
            await coordinator.submit_job(*blobs())

        names = [p.name for p in store.outputs_dir.iterdir()]
        assert len(names) == 1
        assert names[0].startswith("output_")

    async def test_engine_invocations_are_bounded(self, make_coordinator):
        coordinator = make_coordinator(engine="engine_slow", max_concurrent_jobs=1)

        await asyncio.gather(coordinator.submit_job(*blobs()), coordinator.submit_job(*blobs()))

        first, second = sorted(read_calls(coordinator.engine_cmd), key=lambda c: c["start"])
        assert second["start"] >= first["end"]


class TestGetOrConvert:
    """Cache-by-existence for transcoded sources."""

    async def test_second_call_is_cache_hit(self, make_coordinator, sample_audio):
        coordinator = make_coordinator()

        first = await coordinator.get_or_convert("audio", "in.wav")
        mtime = first.stat().st_mtime_ns
        second = await coordinator.get_or_convert("audio", "in.wav")

        assert first == second
        assert first.name == "converted_in.wav"
        assert second.read_bytes() == sample_audio.read_bytes()
        assert second.stat().st_mtime_ns == mtime
        assert len(read_calls(coordinator.transcoder_cmd)) == 1

    async def test_concurrent_requests_transcode_once(self, make_coordinator, sample_audio):
        coordinator = make_coordinator()

        results = await asyncio.gather(
            *(coordinator.get_or_convert("audio", "in.wav") for _ in range(3))
        )

        assert len(set(results)) == 1
        assert len(read_calls(coordinator.transcoder_cmd)) == 1
        assert coordinator._cache_locks == {}

    async def test_impulse_response_cache_name_keeps_category(self, make_coordinator, library):
        coordinator = make_coordinator()

        path = await coordinator.get_or_convert("ir", "Room/small_room.wav")

        assert path.name == "converted_ir_Room_small_room.wav"
        assert path.read_bytes() == b"RIFFRoom"

    async def test_missing_source(self, make_coordinator, store):
        coordinator = make_coordinator()

        with pytest.raises(NotFoundError) as exc_info:
            await coordinator.get_or_convert("ir", "Room/missing.wav")

        assert exc_info.value.message == "Impulse response file not found"
        assert read_calls(coordinator.transcoder_cmd) == []

    async def test_unknown_kind(self, make_coordinator):
        with pytest.raises(ValidationError):
            await make_coordinator().get_or_convert("video", "clip.mp4")

    async def test_traversal_rejected(self, make_coordinator, sample_audio):
        with pytest.raises(ValidationError):
            await make_coordinator().get_or_convert("audio", "../uploads/x.wav")

    async def test_failed_conversion_is_retried_next_time(self, make_coordinator, sample_audio, store):
        failing = make_coordinator(transcoder="transcoder_fail")
        with pytest.raises(SubprocessError):
            await failing.get_or_convert("audio", "in.wav")
        assert not store.converted_path("in.wav").exists()
        assert failing._cache_locks == {}

        path = await make_coordinator().get_or_convert("audio", "in.wav")
        assert path.is_file()


class TestProbesAndListings:
    def test_probe_existing_audio(self, make_coordinator, sample_audio):
        probe = make_coordinator().probe_file("audio", "in.wav")

        assert probe.exists
        assert probe.size == sample_audio.stat().st_size
        assert probe.url == "/assets/audio/in.wav"

    def test_probe_decodes_impulse_response_path(self, make_coordinator, library):
        probe = make_coordinator().probe_file("ir", "Hall%2Fbig_hall.wav")

        assert probe.exists
        assert probe.url == "/impulse-responses/Hall/big_hall.wav"

    def test_probe_missing_file(self, make_coordinator, store):
        probe = make_coordinator().probe_file("audio", "nope.wav")

        assert not probe.exists
        assert probe.error == "File not found"
        assert probe.url is None

    @pytest.mark.parametrize(
        "kind,filename,message",
        [
            (None, "a.wav", "Missing type or filename parameter"),
            ("audio", "", "Missing type or filename parameter"),
            ("video", "a.wav", "Invalid file type"),
        ],
    )
    def test_probe_rejects_bad_parameters(self, make_coordinator, kind, filename, message):
        with pytest.raises(ValidationError) as exc_info:
            make_coordinator().probe_file(kind, filename)
        assert exc_info.value.message == message

    def test_listings(self, make_coordinator, library):
        coordinator = make_coordinator()

        assert len(coordinator.list_impulse_responses()) == 2
        assert coordinator.list_outputs() == []
        assert coordinator.list_audio_files() == []

    def test_health(self, make_coordinator):
        health = make_coordinator().health()
        assert health.status == "OK"
        assert health.message == "Audio processing server is running"
