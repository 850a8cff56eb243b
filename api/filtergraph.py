"""
Filter graph construction and rendering for synthesized tracks.

A graph is an ordered list of named stages. Raw inputs are addressed by
their ffmpeg stream specifiers (``0:a``, ``1:a``, ...); every other input
label must be the output of an earlier stage, and exactly one output label
is left unconsumed: the terminal output that gets mapped to the file.

The whole graph is handed to the engine as a single ``-filter_complex``
submission, so a mix is one external run no matter how many stages it has.
"""

import asyncio
import logging
import math
import os
from dataclasses import dataclass, field

import tags
from assets import discard, new_name, resolve_track
from config import Settings
from engine import EngineError, EngineTimeout
from errors import (
    FilterGraphError,
    MalformedInputError,
    PipelineTimeoutError,
    RangeError,
    StorageError,
    ValidationError,
)
from models import MixRequest, ProcessedTrackResult, TrimRequest

logger = logging.getLogger(__name__)

# Stage vocabulary -> ffmpeg filter
FILTERS = {
    "mix": "amix",
    "fade": "afade",
    "tempo-shift": "atempo",
    "pitch-shift": "rubberband",
    "gain": "volume",
    "trim": "atrim",
}

TEMPO_MIN = 0.5
TEMPO_MAX = 100.0


def _fmt(value) -> str:
    if isinstance(value, float):
        return f"{value:g}"
    return str(value)


@dataclass
class FilterStage:
    name: str
    options: dict = field(default_factory=dict)
    inputs: list[str] = field(default_factory=list)
    output: str = ""

    def render(self) -> str:
        labels_in = "".join(f"[{label}]" for label in self.inputs)
        opts = ":".join(f"{k}={_fmt(v)}" for k, v in self.options.items())
        expr = FILTERS[self.name] + (f"={opts}" if opts else "")
        if self.name == "trim":
            # atrim keeps the source timestamps; restart them at zero
            expr += ",asetpts=PTS-STARTPTS"
        return f"{labels_in}{expr}[{self.output}]"


@dataclass
class FilterGraph:
    n_inputs: int
    stages: list[FilterStage]
    terminal: str

    def to_filter_complex(self) -> str:
        return ";".join(stage.render() for stage in self.stages)

    def describe(self) -> list[dict]:
        return [{"stage": s.name, "options": dict(s.options)} for s in self.stages]


class FilterGraphBuilder:
    """Builds a FilterGraph over ``n_inputs`` raw sources.

    ``add`` chains onto the previous stage's output unless ``inputs`` is
    given; the first stage defaults to all raw sources.
    """

    def __init__(self, n_inputs: int):
        if n_inputs < 1:
            raise ValueError("a filter graph needs at least one input")
        self.n_inputs = n_inputs
        self.raw_labels = [f"{i}:a" for i in range(n_inputs)]
        self.stages: list[FilterStage] = []

    def add(self, name: str, options: dict | None = None, inputs: list[str] | None = None, output: str | None = None):
        if name not in FILTERS:
            raise ValueError(f"unknown filter stage: {name}")

        if inputs is None:
            inputs = [self.stages[-1].output] if self.stages else list(self.raw_labels)
        known = set(self.raw_labels) | {s.output for s in self.stages}
        for label in inputs:
            if label not in known:
                raise ValueError(f"stage {name!r} reads undefined label {label!r}")

        if output is None:
            output = f"s{len(self.stages)}_{name.replace('-', '_')}"
        if output in known:
            raise ValueError(f"label {output!r} is already defined")

        self.stages.append(FilterStage(name=name, options=dict(options or {}), inputs=list(inputs), output=output))
        return self

    def build(self) -> FilterGraph:
        if not self.stages:
            raise ValueError("a filter graph needs at least one stage")
        consumed = {label for stage in self.stages for label in stage.inputs}
        dangling = [s.output for s in self.stages if s.output not in consumed]
        if len(dangling) != 1:
            raise ValueError(f"expected exactly one terminal output, found {dangling}")
        return FilterGraph(n_inputs=self.n_inputs, stages=list(self.stages), terminal=dangling[0])


def _require_finite(**values) -> None:
    for key, value in values.items():
        if not math.isfinite(value):
            raise ValidationError(f"{key} must be a finite number")


def validate_mix(request: MixRequest) -> None:
    if not request.sources:
        raise ValidationError("at least one source track is required")
    _require_finite(fade=request.fade, tempo=request.tempo, pitch=request.pitch, gain=request.gain)
    if request.fade < 0:
        raise ValidationError("fade must be >= 0")
    if not TEMPO_MIN <= request.tempo <= TEMPO_MAX:
        raise ValidationError(f"tempo must be between {TEMPO_MIN:g} and {TEMPO_MAX:g}")
    if request.pitch <= 0:
        raise ValidationError("pitch must be > 0")
    if request.gain < 0:
        raise ValidationError("gain must be >= 0")


def validate_trim(request: TrimRequest) -> None:
    if not request.source:
        raise ValidationError("file is required")
    _require_finite(start=request.start, span=request.span)
    if request.start < 0:
        raise ValidationError("start must be >= 0")
    # atrim treats a zero duration as "no limit"
    if request.span <= 0:
        raise ValidationError("span must be > 0")


def build_mix_graph(n_inputs: int, request: MixRequest) -> FilterGraph:
    if request.fade > 0:
        fade = {"t": "in", "st": 0, "d": float(request.fade)}
    else:
        # afade falls back to a one-second default when d=0; one sample is a no-op fade
        fade = {"t": "in", "st": 0, "ns": 1}
    return (
        FilterGraphBuilder(n_inputs)
        .add("mix", {"inputs": n_inputs, "duration": "longest"})
        .add("fade", fade)
        .add("tempo-shift", {"tempo": float(request.tempo)})
        .add("pitch-shift", {"pitch": float(request.pitch)})
        .add("gain", {"volume": float(request.gain)})
        .build()
    )


def build_trim_graph(start: float, span: float) -> FilterGraph:
    return FilterGraphBuilder(1).add("trim", {"start": float(start), "duration": float(span)}).build()


def _read_back(path: str):
    with open(path, "rb") as f:
        return tags.parse(f.read())


async def _render(settings: Settings, engine, inputs: list[str], graph: FilterGraph) -> ProcessedTrackResult:
    name = new_name("mp3")
    dest = os.path.join(settings.tracks_dir, name)
    try:
        await engine.render(inputs, graph.to_filter_complex(), graph.terminal, dest)
    except EngineTimeout as e:
        discard(dest)
        raise PipelineTimeoutError(str(e), details={"stages": graph.describe()}) from e
    except EngineError as e:
        discard(dest)
        raise FilterGraphError(
            f"Audio engine failed: {e}",
            details={"stages": graph.describe(), "stderr": e.stderr},
        ) from e
    except asyncio.CancelledError:
        discard(dest)
        raise

    try:
        metadata = await asyncio.to_thread(_read_back, dest)
    except OSError as e:
        discard(dest)
        raise StorageError(f"Could not read rendered track: {e}") from e
    except MalformedInputError:
        discard(dest)
        raise

    logger.info(f"Rendered {len(graph.stages)}-stage graph -> {name}")
    return ProcessedTrackResult(path=dest, name=name, metadata=metadata)


async def mix(settings: Settings, engine, request: MixRequest) -> ProcessedTrackResult:
    """Mix the sources, then fade in, shift tempo and pitch, and apply gain."""
    validate_mix(request)
    inputs = [resolve_track(settings, ref) for ref in request.sources]
    graph = build_mix_graph(len(inputs), request)
    logger.info(f"Mixing {len(inputs)} track(s): {graph.to_filter_complex()}")
    return await _render(settings, engine, inputs, graph)


async def trim(settings: Settings, engine, request: TrimRequest) -> ProcessedTrackResult:
    """Extract ``[start, start + span)`` from the source.

    ``span`` is a length, not an end timestamp. It is clamped to the part of
    the source after ``start`` when the source duration is known. Stored
    tracks are MP3, so the duration is read from the stream itself; ffprobe
    is only asked when that fails.
    """
    validate_trim(request)
    source = resolve_track(settings, request.source)

    duration = await asyncio.to_thread(tags.file_duration, source)
    if duration is None:
        try:
            duration = await engine.probe_duration(source)
        except EngineTimeout as e:
            raise PipelineTimeoutError(str(e), details={"source": request.source}) from e

    span = request.span
    if duration is not None:
        if request.start >= duration:
            raise RangeError(
                f"start ({request.start:g}s) is beyond the end of the track ({duration:g}s)",
                details={"start": request.start, "duration": duration},
            )
        span = min(span, duration - request.start)

    graph = build_trim_graph(request.start, span)
    logger.info(f"Trimming {request.source}: start={request.start:g}s span={span:g}s")
    return await _render(settings, engine, [source], graph)
