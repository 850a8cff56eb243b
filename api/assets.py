import io
import logging
import os
import re
import uuid
from urllib.parse import urlparse

from PIL import Image

from config import Settings
from errors import AssetWriteError, NotFoundError
from models import DerivedAsset

logger = logging.getLogger(__name__)

TRACK_NAME_RE = re.compile(r"^[0-9a-f]{32}\.mp3$")
IMAGE_EXTENSIONS = {"PNG": "png", "JPEG": "jpg", "GIF": "gif", "WEBP": "webp", "BMP": "bmp"}


def new_name(ext: str) -> str:
    """A collision-free file name; no two jobs ever generate the same one."""
    return f"{uuid.uuid4().hex}.{ext}"


def discard(path: str | None) -> None:
    if path and os.path.exists(path):
        os.unlink(path)
        logger.info(f"Removed {path}")


def resolve_track(settings: Settings, reference: str) -> str:
    """Map a stored-track reference to its path in the tracks directory.

    A reference is the generated name returned by an earlier job, or the
    public URL ending in it. Anything else is treated as not found.
    """
    name = os.path.basename(urlparse(reference.strip()).path)
    if not TRACK_NAME_RE.match(name):
        raise NotFoundError(f"Track not found: {reference}", details={"reference": reference})
    path = os.path.join(settings.tracks_dir, name)
    if not os.path.isfile(path):
        raise NotFoundError(f"Track not found: {reference}", details={"reference": reference})
    return path


def _image_extension(data: bytes) -> str:
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.verify()
            fmt = img.format
    except Exception as e:
        raise AssetWriteError("Embedded image is not a readable image", details={"error": str(e)}) from e
    ext = IMAGE_EXTENSIONS.get(fmt or "")
    if not ext:
        raise AssetWriteError(f"Unsupported embedded image format: {fmt}")
    return ext


def emit(settings: Settings, data: bytes) -> DerivedAsset:
    """Persist embedded cover art under a generated name and return its URL."""
    ext = _image_extension(data)
    name = new_name(ext)
    path = os.path.join(settings.images_dir, name)
    created = False
    try:
        with open(path, "xb") as f:
            created = True
            f.write(data)
    except OSError as e:
        if created:
            discard(path)
        raise AssetWriteError(f"Could not write cover image: {e}", details={"path": path}) from e

    logger.info(f"Cover image written to {path}")
    return DerivedAsset(path=path, name=name, url=settings.image_url(name))
