"""
Pipeline orchestration: one job per request.

Upload jobs move through

    received -> staged -> normalizing -> normalized -> metadata_extracted -> completed

while mix and trim jobs, which start from already-normalized stored tracks,
go straight from received to metadata_extracted. Any error moves the job to
failed. Every state change is persisted to the jobs table.

Files a job creates are registered on its JobScope: scratch files (the
staged upload) are deleted whenever the job ends, output files only when it
fails. The scope releases them exactly once, on every exit path.
"""

import asyncio
import logging
import os
from contextlib import contextmanager

import assets
import filtergraph
import jobs
import normalizer
import tags
from accounts import lookup_username
from config import Settings
from errors import (
    AssetWriteError,
    MalformedInputError,
    PipelineError,
    StorageError,
    UploadTooLargeError,
    ValidationError,
)
from models import AudioMetadata, Job, JobState, MixRequest, StagedUpload, TrimRequest

logger = logging.getLogger(__name__)

UNKNOWN = "Unknown"
ALLOWED_EXTENSIONS = {".mp3", ".wav", ".flac", ".m4a", ".ogg", ".opus", ".webm"}
CHUNK_SIZE = 65536


class JobScope:
    def __init__(self, job: Job):
        self.job = job
        self._scratch: list[str] = []
        self._outputs: list[str] = []
        self._released = False

    def transition(self, state: JobState) -> None:
        logger.info(f"Job {self.job.id}: {self.job.state.value} -> {state.value}")
        self.job.state = state
        jobs.save_state(self.job)

    def scratch(self, path: str) -> None:
        self._scratch.append(path)

    def output(self, path: str) -> None:
        self._outputs.append(path)

    def warn(self, message: str) -> None:
        self.job.warnings.append(message)
        jobs.save_state(self.job)

    def complete(self, output_name: str) -> None:
        logger.info(f"Job {self.job.id} completed: {output_name}")
        self.job.state = JobState.COMPLETED
        jobs.save_state(self.job, output_name=output_name)

    def fail(self, kind: str, message: str) -> None:
        self.job.state = JobState.FAILED
        self.job.error_kind = kind
        self.job.error_msg = message
        jobs.save_state(self.job)

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        doomed = list(self._scratch)
        if self.job.state != JobState.COMPLETED:
            doomed += self._outputs
        for path in doomed:
            try:
                assets.discard(path)
            except OSError as e:
                logger.error(f"Job {self.job.id}: could not remove {path}: {e}")


@contextmanager
def job_scope(kind: str, owner_id: str | None):
    job = jobs.create_job(kind, owner_id or "")
    scope = JobScope(job)
    try:
        yield scope
    except PipelineError as e:
        logger.error(f"Job {job.id} failed in state {job.state.value}: {e.kind}: {e}", exc_info=True)
        scope.fail(e.kind, e.message)
        raise
    except asyncio.CancelledError:
        logger.warning(f"Job {job.id} cancelled in state {job.state.value}")
        scope.fail("Cancelled", "job was cancelled")
        raise
    except OSError as e:
        logger.error(f"Job {job.id} failed in state {job.state.value}: {e}", exc_info=True)
        scope.fail(StorageError.kind, str(e))
        raise StorageError(f"Storage failure: {e}") from e
    except Exception as e:
        logger.error(f"Job {job.id} failed in state {job.state.value}: {e}", exc_info=True)
        scope.fail("InternalError", str(e))
        raise
    finally:
        scope.release()


def declared_container(filename: str | None) -> str:
    if not filename:
        raise ValidationError("file is required")
    ext = os.path.splitext(filename)[1].lower()
    if ext not in ALLOWED_EXTENSIONS:
        raise ValidationError(f"Unsupported file type: {ext or filename}")
    return ext[1:]


async def stage_upload(settings: Settings, scope: JobScope, upload, container: str) -> StagedUpload:
    """Stream the upload into the temporary directory (received -> staged)."""
    dest = os.path.join(settings.tmp_dir, assets.new_name(container))
    scope.scratch(dest)

    size = 0
    try:
        with open(dest, "wb") as f_out:
            while chunk := await upload.read(CHUNK_SIZE):
                size += len(chunk)
                if size > settings.max_upload_bytes:
                    raise UploadTooLargeError(
                        f"File too large (max {settings.max_upload_bytes // (1024 * 1024)}MB)"
                    )
                f_out.write(chunk)
    except OSError as e:
        raise StorageError(f"Could not stage upload: {e}") from e

    if size == 0:
        raise MalformedInputError("Uploaded file is empty")

    scope.transition(JobState.STAGED)
    return StagedUpload(path=dest, original_filename=upload.filename, container=container, size=size)


def _read_bytes(path: str) -> bytes:
    with open(path, "rb") as f:
        return f.read()


async def read_metadata(path: str) -> AudioMetadata:
    try:
        data = await asyncio.to_thread(_read_bytes, path)
    except OSError as e:
        raise StorageError(f"Could not read {os.path.basename(path)}: {e}") from e
    return await asyncio.to_thread(tags.parse, data)


def emit_cover(settings: Settings, scope: JobScope, metadata: AudioMetadata) -> str | None:
    """Store embedded cover art; a failure downgrades to a job warning."""
    if not metadata.image:
        return None
    try:
        asset = assets.emit(settings, metadata.image)
    except AssetWriteError as e:
        logger.warning(f"Job {scope.job.id}: cover image not saved, using default cover: {e}")
        scope.warn(f"cover image not saved: {e.message}")
        return None
    scope.output(asset.path)
    return asset.url


def build_payload(
    settings: Settings,
    job: Job,
    name: str,
    metadata: AudioMetadata,
    username: str | None,
    cover_url: str | None,
) -> dict:
    length = round(metadata.duration_s, 3) if metadata.duration_s is not None else UNKNOWN
    payload = {
        "job_id": job.id,
        "file": name,
        "artist": metadata.artist or username or UNKNOWN,
        "name": metadata.title or UNKNOWN,
        "length": length,
        "Image": cover_url or settings.default_cover_url,
        "album": metadata.album or UNKNOWN,
        "genre": metadata.genre or UNKNOWN,
        "mp3": settings.track_url(name),
    }
    if job.warnings:
        payload["warnings"] = list(job.warnings)
    return payload


async def process_upload(settings: Settings, engine, upload, owner_id: str | None) -> dict:
    with job_scope("upload", owner_id) as scope:
        container = declared_container(upload.filename)
        username = lookup_username(owner_id)

        staged = await stage_upload(settings, scope, upload, container)

        scope.transition(JobState.NORMALIZING)
        normalized = await normalizer.normalize(settings, engine, staged)
        scope.output(normalized.path)
        scope.transition(JobState.NORMALIZED)

        metadata = await read_metadata(normalized.path)
        cover_url = emit_cover(settings, scope, metadata)
        scope.transition(JobState.METADATA_EXTRACTED)

        payload = build_payload(settings, scope.job, normalized.name, metadata, username, cover_url)
        scope.complete(normalized.name)
        return payload


async def process_mix(settings: Settings, engine, owner_id: str | None, request: MixRequest) -> dict:
    with job_scope("mix", owner_id) as scope:
        filtergraph.validate_mix(request)
        username = lookup_username(owner_id)
        result = await filtergraph.mix(settings, engine, request)
        scope.output(result.path)

        cover_url = emit_cover(settings, scope, result.metadata)
        scope.transition(JobState.METADATA_EXTRACTED)

        payload = build_payload(settings, scope.job, result.name, result.metadata, username, cover_url)
        scope.complete(result.name)
        return payload


async def process_trim(settings: Settings, engine, owner_id: str | None, request: TrimRequest) -> dict:
    with job_scope("trim", owner_id) as scope:
        filtergraph.validate_trim(request)
        username = lookup_username(owner_id)
        result = await filtergraph.trim(settings, engine, request)
        scope.output(result.path)

        cover_url = emit_cover(settings, scope, result.metadata)
        scope.transition(JobState.METADATA_EXTRACTED)

        payload = build_payload(settings, scope.job, result.name, result.metadata, username, cover_url)
        scope.complete(result.name)
        return payload
