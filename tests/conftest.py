"""
Shared fixtures: an isolated media directory and database per test, a fake
audio engine, and builders for real MP3/PNG bytes.
"""

import asyncio
import io
import os
import re
import uuid
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from mutagen.id3 import APIC, ID3, TALB, TCON, TIT2, TLEN, TPE1
from PIL import Image

from config import ensure_media_dirs, get_settings
from database import db, init_db
from main import app
from routers.tracks import get_engine

OWNER_ID = "user-1"
OWNER_NAME = "ada_user"

# One MPEG-1 Layer III frame: 128kbps, 44.1kHz, stereo, no padding (417 bytes)
MPEG_FRAME = b"\xff\xfb\x90\x00" + b"\x00" * 413
FRAME_SECONDS = 1152 / 44100


def build_mp3(
    workdir: Path,
    seconds: float = 1.0,
    artist: str | None = None,
    title: str | None = None,
    album: str | None = None,
    genre: str | None = None,
    image: bytes | None = None,
    tlen_ms: int | None = None,
) -> bytes:
    """MP3 bytes with ``seconds`` of silent frames and the given ID3 frames."""
    path = workdir / f"{uuid.uuid4().hex}.mp3"
    frames = round(seconds / FRAME_SECONDS)
    path.write_bytes(MPEG_FRAME * frames)

    tags = ID3()
    if artist:
        tags.add(TPE1(encoding=3, text=[artist]))
    if title:
        tags.add(TIT2(encoding=3, text=[title]))
    if album:
        tags.add(TALB(encoding=3, text=[album]))
    if genre:
        tags.add(TCON(encoding=3, text=[genre]))
    if tlen_ms is not None:
        tags.add(TLEN(encoding=3, text=[str(tlen_ms)]))
    if image:
        tags.add(APIC(encoding=3, mime="image/png", type=3, desc="Cover", data=image))
    if len(tags):
        tags.save(path)
    return path.read_bytes()


def atrim_duration(filter_complex: str) -> float:
    """The duration option of the atrim stage in a rendered filter_complex."""
    return float(re.search(r"atrim=start=[^:]+:duration=([0-9.]+)", filter_complex).group(1))


def build_png(size: tuple[int, int] = (4, 4)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, (200, 40, 90)).save(buf, format="PNG")
    return buf.getvalue()


class FakeEngine:
    """Stands in for FfmpegEngine: records calls and writes canned output."""

    def __init__(self):
        self.output = b""
        self.duration: float | None = None
        self.fail_with: Exception | None = None
        self.partial = b""
        self.block: asyncio.Event | None = None
        self.calls: list[tuple] = []

    def calls_of(self, kind: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == kind]

    async def _finish(self, output_path: str) -> None:
        await asyncio.sleep(0)
        if self.block is not None:
            Path(output_path).write_bytes(self.partial)
            await self.block.wait()
        if self.fail_with is not None:
            if self.partial:
                Path(output_path).write_bytes(self.partial)
            raise self.fail_with
        Path(output_path).write_bytes(self.output)

    async def transcode(self, input_path: str, output_path: str) -> None:
        self.calls.append(("transcode", input_path, output_path))
        await self._finish(output_path)

    async def render(self, inputs, filter_complex, output_label, output_path) -> None:
        self.calls.append(("render", list(inputs), filter_complex, output_label, output_path))
        await self._finish(output_path)

    async def probe_duration(self, path: str) -> float | None:
        self.calls.append(("probe", path))
        return self.duration


@pytest.fixture
def workdir(tmp_path):
    path = tmp_path / "work"
    path.mkdir()
    return path


@pytest.fixture
def settings(tmp_path, monkeypatch):
    monkeypatch.setenv("MEDIA_DIR", str(tmp_path / "media"))
    monkeypatch.setenv("DB_PATH", str(tmp_path / "bloby.db"))
    monkeypatch.setenv("PUBLIC_BASE_URL", "http://testserver")
    monkeypatch.setenv("DEFAULT_COVER_URL", "http://testserver/assets/cover.svg")
    current = get_settings()
    ensure_media_dirs(current)
    init_db()
    with db() as conn:
        conn.execute("INSERT INTO users (id, username) VALUES (?, ?)", (OWNER_ID, OWNER_NAME))
    return current


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def client(settings, engine):
    app.dependency_overrides[get_engine] = lambda: engine
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def store_track(settings):
    """Place MP3 bytes in the tracks directory as if an earlier job produced them."""

    def _store(data: bytes) -> str:
        name = f"{uuid.uuid4().hex}.mp3"
        Path(settings.tracks_dir, name).write_bytes(data)
        return name

    return _store


def listdir(path: str) -> list[str]:
    return sorted(os.listdir(path))
