import logging

from fastapi import APIRouter, Depends, File, Form, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict

import pipeline
from config import Settings, ensure_media_dirs, get_settings
from engine import FfmpegEngine
from models import MixRequest, TrimRequest

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/tracks")


def get_engine(settings: Settings = Depends(get_settings)) -> FfmpegEngine:
    return FfmpegEngine(settings.ffmpeg_bin, settings.ffprobe_bin, timeout_s=settings.engine_timeout_s)


class MixBody(BaseModel):
    model_config = ConfigDict(allow_inf_nan=False)

    owner_id: str
    first_file: str
    second_file: str
    fade: float = 0.0
    tempo: float = 1.0
    pitch: float = 1.0
    gain: float = 1.5


class TrimBody(BaseModel):
    model_config = ConfigDict(allow_inf_nan=False)

    owner_id: str
    file: str
    start: float = 0.0
    # A length in seconds, not an end timestamp.
    span: float


@router.post("/upload")
async def upload_track(
    owner_id: str = Form(...),
    file: UploadFile = File(...),
    settings: Settings = Depends(get_settings),
    engine: FfmpegEngine = Depends(get_engine),
):
    ensure_media_dirs(settings)
    data = await pipeline.process_upload(settings, engine, file, owner_id)
    logger.info(f"Upload complete: job={data['job_id']} file={data['file']}")
    return JSONResponse({"message": "Track uploaded successfully", "data": data}, status_code=201)


@router.post("/mix")
async def mix_tracks(
    body: MixBody,
    settings: Settings = Depends(get_settings),
    engine: FfmpegEngine = Depends(get_engine),
):
    ensure_media_dirs(settings)
    request = MixRequest(
        sources=[body.first_file, body.second_file],
        fade=body.fade,
        tempo=body.tempo,
        pitch=body.pitch,
        gain=body.gain,
    )
    data = await pipeline.process_mix(settings, engine, body.owner_id, request)
    return {"message": "Tracks merged successfully", "data": data}


@router.post("/trim")
async def trim_track(
    body: TrimBody,
    settings: Settings = Depends(get_settings),
    engine: FfmpegEngine = Depends(get_engine),
):
    ensure_media_dirs(settings)
    request = TrimRequest(source=body.file, start=body.start, span=body.span)
    data = await pipeline.process_trim(settings, engine, body.owner_id, request)
    return {"message": "Track trimmed successfully", "data": data}
