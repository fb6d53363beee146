"""Tests for the filesystem-backed artifact store."""

import re

import pytest

from convpipe.errors import NotFoundError, ValidationError
from convpipe.services.artifact_store import STAGING_PREFIX, media_type_for


class TestUploads:
    """Persisting uploaded blobs."""

    def test_upload_named_with_stamp_prefix(self, store):
        path = store.save_upload("guitar.wav", b"RIFF")

        assert path.parent == store.uploads_dir
        assert re.fullmatch(r"\d+-guitar\.wav", path.name)
        assert path.read_bytes() == b"RIFF"

    def test_same_name_uploads_never_overwrite(self, store):
        first = store.save_upload("take.wav", b"one")
        second = store.save_upload("take.wav", b"two")

        assert first != second
        assert first.read_bytes() == b"one"
        assert second.read_bytes() == b"two"

    def test_directory_parts_are_dropped(self, store):
        path = store.save_upload("../../etc/evil.wav", b"x")

        assert path.parent == store.uploads_dir
        assert path.name.endswith("-evil.wav")

    def test_empty_name_rejected(self, store):
        with pytest.raises(ValidationError):
            store.save_upload("..", b"x")


class TestGeneratedNames:
    """Output and cache path derivation."""

    def test_output_paths_are_unique_and_increasing(self, store):
        a = store.new_output_path()
        b = store.new_output_path()

        assert re.fullmatch(r"output_\d+\.wav", a.name)
        assert a.parent == store.outputs_dir
        assert int(b.stem.split("_")[1]) > int(a.stem.split("_")[1])

    def test_converted_path_is_deterministic(self, store):
        assert store.converted_path("output_1.wav") == store.converted_path("output_1.wav")
        assert store.converted_path("output_1.wav").name == "converted_output_1.wav"
        assert store.converted_path("a.wav", tag="converted_ir").name == "converted_ir_a.wav"

    def test_staging_file_is_hidden_sibling(self, store):
        destination = store.outputs_dir / "converted_x.wav"
        staged = store.staging_path(destination)

        assert staged.parent == destination.parent
        assert staged.name.startswith(STAGING_PREFIX)
        assert staged.suffix == ".wav"

    def test_commit_replaces_destination(self, store):
        store.ensure_roots()
        destination = store.outputs_dir / "converted_x.wav"
        destination.write_bytes(b"old")
        staged = store.staging_path(destination)
        staged.write_bytes(b"new")

        store.commit(staged, destination)

        assert destination.read_bytes() == b"new"
        assert not staged.exists()


class TestPathResolution:
    """Traversal protection for the read roots."""

    def test_resolves_inside_root(self, store):
        assert store.library_source("Room/a.wav") == store.library_dir / "Room" / "a.wav"

    @pytest.mark.parametrize("relative", ["../secret.wav", "Room/../../secret.wav"])
    def test_traversal_rejected(self, store, relative):
        with pytest.raises(ValidationError) as exc_info:
            store.library_source(relative)
        assert exc_info.value.extra == {"path": relative}

    def test_require_missing_file(self, store):
        with pytest.raises(NotFoundError) as exc_info:
            store.require(store.audio_dir / "nope.wav", "Audio file not found")
        assert exc_info.value.status_code == 404


class TestListings:
    """Library, sample audio and output enumeration."""

    def test_library_groups_by_category(self, store, library):
        entries = store.list_impulse_responses()

        assert {(e.category, e.name) for e in entries} == {
            ("Room", "small_room"),
            ("Hall", "big_hall"),
        }
        paths = {e.path for e in entries}
        assert "/impulse-responses/Room/small_room.wav" in paths
        assert not any(p.endswith(".txt") for p in paths)

    def test_library_ignores_top_level_files(self, store, library):
        (library / "loose.wav").write_bytes(b"RIFF")

        assert len(store.list_impulse_responses()) == 2

    def test_missing_library_is_empty(self, store):
        assert store.list_impulse_responses() == []

    def test_outputs_hide_staging_and_non_wav(self, store):
        store.ensure_roots()
        (store.outputs_dir / "converted_output_1.wav").write_bytes(b"12345")
        (store.outputs_dir / f"{STAGING_PREFIX}abc-converted_output_2.wav").write_bytes(b"x")
        (store.outputs_dir / "notes.txt").write_text("x")

        records = store.list_outputs()

        assert [(r.name, r.path, r.size) for r in records] == [
            ("converted_output_1.wav", "/Outputs/converted_output_1.wav", 5)
        ]

    def test_audio_files_listed_by_extension(self, store, sample_audio):
        (store.audio_dir / "readme.md").write_text("x")

        entries = store.list_audio_files()

        assert [(e.name, e.path) for e in entries] == [("in.wav", "/assets/audio/in.wav")]


@pytest.mark.parametrize(
    "name,expected",
    [("a.wav", "audio/wav"), ("a.MP3", "audio/mpeg"), ("a.flac", "audio/flac"), ("a.txt", None)],
)
def test_media_type_for(name, expected):
    assert media_type_for(name) == expected
