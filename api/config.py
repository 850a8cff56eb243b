import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    media_dir: str
    db_path: str
    public_base_url: str
    mp3_url_path: str
    images_url_path: str
    default_cover_url: str
    engine_timeout_s: float
    max_upload_bytes: int
    ffmpeg_bin: str
    ffprobe_bin: str

    @property
    def tmp_dir(self) -> str:
        return os.path.join(self.media_dir, "tmp")

    @property
    def tracks_dir(self) -> str:
        return os.path.join(self.media_dir, "mp3")

    @property
    def images_dir(self) -> str:
        return os.path.join(self.media_dir, "images")

    def track_url(self, name: str) -> str:
        return f"{self.public_base_url}{self.mp3_url_path}/{name}"

    def image_url(self, name: str) -> str:
        return f"{self.public_base_url}{self.images_url_path}/{name}"


def get_settings() -> Settings:
    """Read settings from the environment.

    Called per request rather than cached, so a changed environment takes
    effect without a restart.
    """
    base_url = os.environ.get("PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/")
    return Settings(
        media_dir=os.environ.get("MEDIA_DIR", "/media"),
        db_path=os.environ.get("DB_PATH", "/data/bloby.db"),
        public_base_url=base_url,
        mp3_url_path=os.environ.get("MP3_URL_PATH", "/mp3"),
        images_url_path=os.environ.get("IMAGES_URL_PATH", "/images"),
        default_cover_url=os.environ.get(
            "DEFAULT_COVER_URL", "http://localhost:3000/assets/img/covers/cover.svg"
        ),
        engine_timeout_s=float(os.environ.get("ENGINE_TIMEOUT_S", "300")),
        max_upload_bytes=int(os.environ.get("MAX_UPLOAD_BYTES", str(200 * 1024 * 1024))),
        ffmpeg_bin=os.environ.get("FFMPEG_BIN", "ffmpeg"),
        ffprobe_bin=os.environ.get("FFPROBE_BIN", "ffprobe"),
    )


def ensure_media_dirs(settings: Settings) -> None:
    for path in (settings.tmp_dir, settings.tracks_dir, settings.images_dir):
        os.makedirs(path, exist_ok=True)
