from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class JobState(str, Enum):
    RECEIVED = "received"
    STAGED = "staged"
    NORMALIZING = "normalizing"
    NORMALIZED = "normalized"
    METADATA_EXTRACTED = "metadata_extracted"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)


@dataclass
class StagedUpload:
    path: str
    original_filename: str
    container: str  # lowercased extension without the dot, e.g. 'webm'
    size: int


@dataclass
class NormalizedAsset:
    path: str
    name: str
    transcoded: bool


@dataclass(frozen=True)
class AudioMetadata:
    artist: Optional[str] = None
    title: Optional[str] = None
    album: Optional[str] = None
    genre: Optional[str] = None
    duration_s: Optional[float] = None
    image: Optional[bytes] = None
    image_mime: Optional[str] = None


@dataclass
class DerivedAsset:
    path: str
    name: str
    url: str


@dataclass
class MixRequest:
    sources: list[str]
    fade: float = 0.0
    tempo: float = 1.0
    pitch: float = 1.0
    gain: float = 1.5


@dataclass
class TrimRequest:
    source: str
    start: float
    span: float


@dataclass
class ProcessedTrackResult:
    path: str
    name: str
    metadata: AudioMetadata


@dataclass
class Job:
    id: str
    kind: str  # 'upload' | 'mix' | 'trim'
    owner_id: str
    state: JobState = JobState.RECEIVED
    error_kind: Optional[str] = None
    error_msg: Optional[str] = None
    warnings: list[str] = field(default_factory=list)
