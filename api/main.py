import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from config import ensure_media_dirs, get_settings
from database import init_db
from errors import PipelineError, ValidationError
from jobs import recover_interrupted_jobs
from routers import status, tracks

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info(f"Starting up Bloby audio API (media in {settings.media_dir})")
    ensure_media_dirs(settings)
    init_db()
    recover_interrupted_jobs(settings)
    yield
    logger.info("Shutting down Bloby audio API")


app = FastAPI(title="Bloby audio API", lifespan=lifespan)

_hostname = os.environ.get("SERVER_HOSTNAME", "")
_origins = [f"https://{_hostname}"] if _hostname else ["http://localhost", "http://localhost:3000"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type"],
)


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError):
    return JSONResponse({"error": exc.kind, "message": exc.message}, status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    problems = []
    for err in exc.errors():
        field = ".".join(str(part) for part in err.get("loc", ()) if part not in ("body", "form"))
        problems.append(f"{field}: {err.get('msg')}" if field else str(err.get("msg")))
    return JSONResponse(
        {"error": ValidationError.kind, "message": "; ".join(problems)},
        status_code=ValidationError.status_code,
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse({"error": "InternalError", "message": "Internal server error"}, status_code=500)


app.include_router(tracks.router)
app.include_router(status.router)

_settings = get_settings()
app.mount(_settings.mp3_url_path, StaticFiles(directory=_settings.tracks_dir, check_dir=False), name="mp3")
app.mount(_settings.images_url_path, StaticFiles(directory=_settings.images_dir, check_dir=False), name="images")


@app.get("/health")
def health():
    return {"ok": True}
