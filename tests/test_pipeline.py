"""Tests for the pipeline orchestrator: job states, cleanup and payloads."""

import asyncio
import io
from pathlib import Path

import pytest
from starlette.datastructures import UploadFile

import pipeline
from config import get_settings
from conftest import OWNER_ID, OWNER_NAME, build_mp3, build_png, listdir
from database import db
from engine import EngineError, EngineTimeout
from errors import (
    MalformedInputError,
    NotFoundError,
    PipelineTimeoutError,
    RangeError,
    TranscodeError,
    UploadTooLargeError,
    ValidationError,
)
from jobs import get_job
from models import MixRequest, TrimRequest
from normalizer import sniff_container

WEBM_BYTES = b"\x1a\x45\xdf\xa3" + b"\x00" * 128


def _upload(data: bytes, filename: str) -> UploadFile:
    return UploadFile(file=io.BytesIO(data), filename=filename)


def _only_job(settings) -> dict:
    with db() as conn:
        rows = conn.execute("SELECT id FROM jobs").fetchall()
    assert len(rows) == 1
    return get_job(rows[0]["id"])


class TestUploadJob:
    @pytest.mark.asyncio
    async def test_tagged_canonical_upload(self, settings, engine, workdir) -> None:
        data = build_mp3(workdir, seconds=2.0, artist="Ada", title="Loop", genre="Electronic")

        payload = await pipeline.process_upload(settings, engine, _upload(data, "loop.mp3"), OWNER_ID)

        assert engine.calls == []
        assert payload["artist"] == "Ada"
        assert payload["name"] == "Loop"
        assert payload["genre"] == "Electronic"
        assert payload["album"] == "Unknown"
        assert payload["Image"] == settings.default_cover_url
        assert payload["mp3"] == f"http://testserver/mp3/{payload['file']}"
        assert payload["length"] == pytest.approx(2.0, rel=0.05)
        assert "warnings" not in payload

        job = get_job(payload["job_id"])
        assert job["state"] == "completed"
        assert job["output_name"] == payload["file"]
        assert listdir(settings.tmp_dir) == []
        assert listdir(settings.tracks_dir) == [payload["file"]]

    @pytest.mark.asyncio
    async def test_untagged_webm_upload(self, settings, engine, workdir) -> None:
        engine.output = build_mp3(workdir, seconds=1.0)

        payload = await pipeline.process_upload(settings, engine, _upload(WEBM_BYTES, "take.webm"), OWNER_ID)

        assert [c[0] for c in engine.calls] == ["transcode"]
        assert payload["artist"] == OWNER_NAME
        assert payload["name"] == "Unknown"
        assert payload["Image"] == settings.default_cover_url
        assert payload["file"].endswith(".mp3")
        assert listdir(settings.tmp_dir) == []

    @pytest.mark.asyncio
    async def test_embedded_cover_becomes_derived_asset(self, settings, engine, workdir) -> None:
        data = build_mp3(workdir, title="Cover", image=build_png())

        payload = await pipeline.process_upload(settings, engine, _upload(data, "c.mp3"), OWNER_ID)

        image_name = payload["Image"].rsplit("/", 1)[1]
        assert payload["Image"] == f"http://testserver/images/{image_name}"
        assert listdir(settings.images_dir) == [image_name]

    @pytest.mark.asyncio
    async def test_unwritable_cover_falls_back_with_warning(self, settings, engine, workdir) -> None:
        data = build_mp3(workdir, title="Broken cover", image=b"not really a png")

        payload = await pipeline.process_upload(settings, engine, _upload(data, "c.mp3"), OWNER_ID)

        assert payload["Image"] == settings.default_cover_url
        assert len(payload["warnings"]) == 1
        assert "cover image not saved" in payload["warnings"][0]
        job = get_job(payload["job_id"])
        assert job["state"] == "completed"
        assert job["warnings"] == payload["warnings"]

    @pytest.mark.asyncio
    async def test_transcode_failure_releases_everything(self, settings, engine) -> None:
        engine.fail_with = EngineError("ffmpeg exited with code 1", stderr="EBML header parsing failed")
        engine.partial = b"partial"

        with pytest.raises(TranscodeError):
            await pipeline.process_upload(settings, engine, _upload(WEBM_BYTES, "take.webm"), OWNER_ID)

        job = _only_job(settings)
        assert job["state"] == "failed"
        assert job["error_kind"] == "TranscodeError"
        assert listdir(settings.tmp_dir) == []
        assert listdir(settings.tracks_dir) == []

    @pytest.mark.asyncio
    async def test_timeout_marks_job_failed(self, settings, engine) -> None:
        engine.fail_with = EngineTimeout("ffmpeg did not finish within 300s")

        with pytest.raises(PipelineTimeoutError):
            await pipeline.process_upload(settings, engine, _upload(WEBM_BYTES, "take.webm"), OWNER_ID)

        assert _only_job(settings)["error_kind"] == "TimeoutError"
        assert listdir(settings.tmp_dir) == []

    @pytest.mark.asyncio
    async def test_cancellation_releases_staged_and_partial_files(self, settings, engine) -> None:
        engine.block = asyncio.Event()
        engine.partial = b"partial"
        task = asyncio.create_task(
            pipeline.process_upload(settings, engine, _upload(WEBM_BYTES, "take.webm"), OWNER_ID)
        )
        while not engine.calls:
            await asyncio.sleep(0.01)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        job = _only_job(settings)
        assert job["state"] == "failed"
        assert job["error_kind"] == "Cancelled"
        assert listdir(settings.tmp_dir) == []
        assert listdir(settings.tracks_dir) == []

    @pytest.mark.asyncio
    async def test_unknown_owner(self, settings, engine, workdir) -> None:
        data = build_mp3(workdir)
        with pytest.raises(NotFoundError):
            await pipeline.process_upload(settings, engine, _upload(data, "a.mp3"), "nobody")
        assert _only_job(settings)["error_kind"] == "NotFoundError"
        assert listdir(settings.tmp_dir) == []

    @pytest.mark.asyncio
    async def test_unsupported_extension_rejected_before_staging(self, settings, engine) -> None:
        with pytest.raises(ValidationError):
            await pipeline.process_upload(settings, engine, _upload(b"MZ\x90\x00", "setup.exe"), OWNER_ID)
        job = _only_job(settings)
        assert job["state"] == "failed"
        assert job["error_kind"] == "ValidationError"
        assert listdir(settings.tmp_dir) == []

    @pytest.mark.asyncio
    async def test_misnamed_webm_is_not_stored_as_is(self, settings, engine, workdir) -> None:
        engine.output = build_mp3(workdir, seconds=1.0)

        payload = await pipeline.process_upload(settings, engine, _upload(WEBM_BYTES, "song.mp3"), OWNER_ID)

        assert [c[0] for c in engine.calls] == ["transcode"]
        stored = Path(settings.tracks_dir, payload["file"]).read_bytes()
        assert sniff_container(stored[:16]) == "mp3"

    @pytest.mark.asyncio
    async def test_unsupported_extension_checked_before_owner(self, settings, engine) -> None:
        with pytest.raises(ValidationError):
            await pipeline.process_upload(settings, engine, _upload(b"MZ\x90\x00", "setup.exe"), "nobody")
        assert _only_job(settings)["error_kind"] == "ValidationError"

    @pytest.mark.asyncio
    async def test_oversized_upload(self, settings, engine, monkeypatch) -> None:
        monkeypatch.setenv("MAX_UPLOAD_BYTES", "100")
        small = get_settings()
        with pytest.raises(UploadTooLargeError):
            await pipeline.process_upload(small, engine, _upload(b"\x00" * 1000, "big.wav"), OWNER_ID)
        assert listdir(settings.tmp_dir) == []

    @pytest.mark.asyncio
    async def test_empty_upload(self, settings, engine) -> None:
        with pytest.raises(MalformedInputError):
            await pipeline.process_upload(settings, engine, _upload(b"", "empty.mp3"), OWNER_ID)
        assert listdir(settings.tmp_dir) == []
        assert listdir(settings.tracks_dir) == []


class TestMixAndTrimJobs:
    @pytest.mark.asyncio
    async def test_mix_job(self, settings, engine, workdir, store_track) -> None:
        first = store_track(build_mp3(workdir, seconds=2.0))
        second = store_track(build_mp3(workdir, seconds=4.0))
        engine.output = build_mp3(workdir, seconds=4.0)

        payload = await pipeline.process_mix(
            settings, engine, OWNER_ID, MixRequest(sources=[first, second], fade=2, tempo=1.0, pitch=1.0, gain=1.0)
        )

        assert payload["artist"] == OWNER_NAME
        assert payload["length"] == pytest.approx(4.0, rel=0.05)
        assert payload["Image"] == settings.default_cover_url
        assert settings.media_dir not in str(payload)
        assert get_job(payload["job_id"])["state"] == "completed"

    @pytest.mark.asyncio
    async def test_mix_parameters_checked_before_owner(self, settings, engine, workdir, store_track) -> None:
        first = store_track(build_mp3(workdir))
        second = store_track(build_mp3(workdir))

        with pytest.raises(ValidationError):
            await pipeline.process_mix(
                settings, engine, "nobody", MixRequest(sources=[first, second], pitch=float("nan"))
            )
        assert _only_job(settings)["error_kind"] == "ValidationError"
        assert engine.calls == []

    @pytest.mark.asyncio
    async def test_trim_bounds_checked_before_owner(self, settings, engine) -> None:
        with pytest.raises(ValidationError):
            await pipeline.process_trim(settings, engine, "nobody", TrimRequest(source="x.mp3", start=-1, span=1))
        assert _only_job(settings)["error_kind"] == "ValidationError"

    @pytest.mark.asyncio
    async def test_trim_range_error_recorded(self, settings, engine, workdir, store_track) -> None:
        source = store_track(build_mp3(workdir))

        with pytest.raises(RangeError):
            await pipeline.process_trim(settings, engine, OWNER_ID, TrimRequest(source=source, start=10, span=2))

        job = _only_job(settings)
        assert job["error_kind"] == "RangeError"
        assert listdir(settings.tracks_dir) == [source]


class TestJobScope:
    def test_release_happens_once(self, settings, workdir) -> None:
        scratch = workdir / "scratch.bin"
        scratch.write_bytes(b"x")
        with pipeline.job_scope("upload", OWNER_ID) as scope:
            scope.scratch(str(scratch))
            scope.complete("out.mp3")
        assert not scratch.exists()

        scratch.write_bytes(b"y")
        scope.release()
        assert scratch.exists()

    def test_outputs_kept_on_success_and_removed_on_failure(self, settings, workdir) -> None:
        kept = workdir / "kept.mp3"
        kept.write_bytes(b"x")
        with pipeline.job_scope("mix", OWNER_ID) as scope:
            scope.output(str(kept))
            scope.complete("kept.mp3")
        assert kept.exists()

        dropped = workdir / "dropped.mp3"
        dropped.write_bytes(b"x")
        with pytest.raises(RangeError):
            with pipeline.job_scope("trim", OWNER_ID) as scope:
                scope.output(str(dropped))
                raise RangeError("start beyond end")
        assert not dropped.exists()
        assert scope.job.state.value == "failed"
