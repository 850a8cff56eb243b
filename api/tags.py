import io
import logging
from typing import Optional

from mutagen import MutagenError
from mutagen.id3 import ID3, ID3NoHeaderError
from mutagen.mp3 import MP3

from errors import MalformedInputError
from models import AudioMetadata

logger = logging.getLogger(__name__)

ID3_HEADER_LEN = 10
APIC_FRONT_COVER = 3


def _id3_declared_size(data: bytes) -> Optional[int]:
    """Total byte length an ID3v2 header claims for its tag, or None if untagged."""
    if not data.startswith(b"ID3"):
        return None
    if len(data) < ID3_HEADER_LEN:
        raise MalformedInputError("Truncated ID3 header")
    flags = data[5]
    size = 0
    for b in data[6:10]:
        size = (size << 7) | (b & 0x7F)
    footer = ID3_HEADER_LEN if flags & 0x10 else 0
    return ID3_HEADER_LEN + size + footer


def _text(tags: ID3, frame_id: str) -> Optional[str]:
    frames = tags.getall(frame_id)
    if not frames or not frames[0].text:
        return None
    value = str(frames[0].text[0]).strip()
    return value or None


def _genre(tags: ID3) -> Optional[str]:
    frames = tags.getall("TCON")
    if not frames:
        return None
    # TCON may hold ID3v1 numeric references like "(13)"; .genres resolves them
    genres = [g.strip() for g in frames[0].genres if g.strip()]
    return genres[0] if genres else None


def _image(tags: ID3) -> tuple[Optional[bytes], Optional[str]]:
    pictures = tags.getall("APIC")
    if not pictures:
        return None, None
    cover = next((p for p in pictures if p.type == APIC_FRONT_COVER), pictures[0])
    if not cover.data:
        return None, None
    return bytes(cover.data), cover.mime or None


def _read_tags(data: bytes) -> Optional[ID3]:
    try:
        return ID3(io.BytesIO(data))
    except ID3NoHeaderError:
        return None
    except MutagenError as e:
        logger.debug(f"Unreadable ID3 tag, ignoring: {e}")
        return None


def _stream_duration(data: bytes) -> Optional[float]:
    try:
        info = MP3(io.BytesIO(data)).info
    except MutagenError:
        return None
    if not info.length:
        return None
    return float(info.length)


def _tlen_duration(tags: ID3) -> Optional[float]:
    value = _text(tags, "TLEN")
    if value is None:
        return None
    try:
        ms = float(value)
    except ValueError:
        return None
    return ms / 1000.0 if ms > 0 else None


def parse(data: bytes) -> AudioMetadata:
    """Extract tag metadata from raw audio bytes.

    Missing or unreadable frames leave the matching field as None. Only an
    empty buffer or an ID3 tag cut short of its declared size raises
    MalformedInputError. Image bytes are returned as-is.
    """
    if not data:
        raise MalformedInputError("Empty audio data")

    declared = _id3_declared_size(data)
    if declared is not None and declared > len(data):
        raise MalformedInputError(
            "Truncated ID3 tag",
            details={"declared_bytes": declared, "available_bytes": len(data)},
        )

    tags = _read_tags(data)
    duration = _stream_duration(data)

    if tags is None:
        return AudioMetadata(duration_s=duration)

    image, image_mime = _image(tags)
    return AudioMetadata(
        artist=_text(tags, "TPE1"),
        title=_text(tags, "TIT2"),
        album=_text(tags, "TALB"),
        genre=_genre(tags),
        duration_s=duration if duration is not None else _tlen_duration(tags),
        image=image,
        image_mime=image_mime,
    )


def file_duration(path: str) -> Optional[float]:
    """Stream duration of a stored MP3 file, or None if it cannot be measured."""
    try:
        info = MP3(path).info
    except MutagenError:
        return None
    if not info.length:
        return None
    return float(info.length)
