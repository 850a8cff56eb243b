import asyncio
import logging
import os
import shutil
from typing import Optional

from assets import discard, new_name
from config import Settings
from engine import EngineError, EngineTimeout
from errors import PipelineTimeoutError, StorageError, TranscodeError
from models import NormalizedAsset, StagedUpload

logger = logging.getLogger(__name__)

CANONICAL_FORMAT = "mp3"


def sniff_container(head: bytes) -> Optional[str]:
    """Identify a container from its leading bytes."""
    if head.startswith(b"ID3"):
        return "mp3"
    # MPEG audio frame sync: 11 set bits, layer bits non-zero (ADTS AAC has 00)
    if len(head) >= 2 and head[0] == 0xFF and (head[1] & 0xE0) == 0xE0 and (head[1] >> 1) & 0x03:
        return "mp3"
    if head.startswith(b"\x1a\x45\xdf\xa3"):
        return "webm"
    if head.startswith(b"RIFF") and head[8:12] == b"WAVE":
        return "wav"
    if head.startswith(b"fLaC"):
        return "flac"
    if head.startswith(b"OggS"):
        return "ogg"
    if head[4:8] == b"ftyp":
        return "m4a"
    return None


def _read_head(path: str, n: int = 16) -> bytes:
    with open(path, "rb") as f:
        return f.read(n)


async def normalize(settings: Settings, engine, staged: StagedUpload) -> NormalizedAsset:
    """Bring a staged upload into the canonical format under a fresh name.

    Uploads whose declared and sniffed containers are both canonical are
    copied byte for byte without touching the engine. Everything else is
    transcoded; a failed or wrong-format output is deleted before the error
    propagates.
    """
    name = new_name(CANONICAL_FORMAT)
    dest = os.path.join(settings.tracks_dir, name)

    try:
        sniffed = sniff_container(_read_head(staged.path))
    except OSError as e:
        raise StorageError(f"Could not read staged upload: {e}") from e

    if staged.container == CANONICAL_FORMAT and sniffed == CANONICAL_FORMAT:
        try:
            await asyncio.to_thread(shutil.copyfile, staged.path, dest)
        except OSError as e:
            discard(dest)
            raise StorageError(f"Could not store upload: {e}") from e
        except asyncio.CancelledError:
            discard(dest)
            raise
        logger.info(f"{staged.original_filename} already {CANONICAL_FORMAT}, stored as {name}")
        return NormalizedAsset(path=dest, name=name, transcoded=False)

    if staged.container == CANONICAL_FORMAT:
        logger.warning(f"{staged.original_filename} is named .mp3 but looks like {sniffed or 'unknown'} data")

    try:
        await engine.transcode(staged.path, dest)
    except EngineTimeout as e:
        discard(dest)
        raise PipelineTimeoutError(str(e), details={"input": staged.original_filename}) from e
    except EngineError as e:
        discard(dest)
        raise TranscodeError(
            f"Could not convert {staged.container} to {CANONICAL_FORMAT}",
            details={"input": staged.original_filename, "stderr": e.stderr},
        ) from e
    except asyncio.CancelledError:
        discard(dest)
        raise

    try:
        produced = sniff_container(_read_head(dest))
    except OSError as e:
        discard(dest)
        raise TranscodeError(f"Transcoder produced no output: {e}") from e
    if produced != CANONICAL_FORMAT:
        discard(dest)
        raise TranscodeError(
            f"Transcoder produced {produced or 'unrecognised'} output instead of {CANONICAL_FORMAT}"
        )

    logger.info(f"Transcoded {staged.original_filename} ({staged.container}) -> {name}")
    return NormalizedAsset(path=dest, name=name, transcoded=True)
