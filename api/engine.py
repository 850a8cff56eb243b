import asyncio
import json
import logging

logger = logging.getLogger(__name__)

# Canonical output: MP3/128kbps, 44.1kHz stereo, ID3v2.3 tags
MP3_ENCODE_ARGS = [
    "-vn",
    "-acodec", "libmp3lame",
    "-ab", "128k",
    "-ar", "44100",
    "-ac", "2",
    "-id3v2_version", "3",
    "-f", "mp3",
]


class EngineError(Exception):
    """The external process could not be started or exited non-zero."""

    def __init__(self, message: str, stderr: str = ""):
        super().__init__(message)
        self.stderr = stderr


class EngineTimeout(Exception):
    pass


class FfmpegEngine:
    """Runs ffmpeg/ffprobe as asyncio subprocesses.

    Each call suspends only the awaiting job. A call that outlives
    ``timeout_s`` has its process killed and raises EngineTimeout; a
    cancelled call kills its process before the cancellation propagates.
    """

    def __init__(self, ffmpeg_bin: str = "ffmpeg", ffprobe_bin: str = "ffprobe", timeout_s: float = 300.0):
        self.ffmpeg_bin = ffmpeg_bin
        self.ffprobe_bin = ffprobe_bin
        self.timeout_s = timeout_s

    async def _run(self, cmd: list[str]) -> bytes:
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise EngineError(f"Could not start {cmd[0]}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout_s)
        except asyncio.TimeoutError:
            await _kill(proc)
            raise EngineTimeout(f"{cmd[0]} did not finish within {self.timeout_s:g}s")
        except asyncio.CancelledError:
            await _kill(proc)
            raise

        if proc.returncode != 0:
            tail = stderr.decode("utf-8", errors="replace")[-500:]
            raise EngineError(f"{cmd[0]} exited with code {proc.returncode}", stderr=tail)
        return stdout

    async def transcode(self, input_path: str, output_path: str) -> None:
        cmd = [self.ffmpeg_bin, "-nostdin", "-i", input_path, *MP3_ENCODE_ARGS, "-y", output_path]
        logger.info(f"Transcoding {input_path} -> {output_path}")
        await self._run(cmd)

    async def render(self, inputs: list[str], filter_complex: str, output_label: str, output_path: str) -> None:
        """Materialize a filter graph over ``inputs`` into ``output_path``."""
        cmd = [self.ffmpeg_bin, "-nostdin"]
        for path in inputs:
            cmd += ["-i", path]
        cmd += ["-filter_complex", filter_complex, "-map", f"[{output_label}]", *MP3_ENCODE_ARGS, "-y", output_path]
        logger.info(f"Rendering filter graph over {len(inputs)} input(s) -> {output_path}")
        await self._run(cmd)

    async def probe_duration(self, path: str) -> float | None:
        """Duration in seconds reported by ffprobe, or None when it is unknown."""
        cmd = [
            self.ffprobe_bin,
            "-v", "quiet",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            path,
        ]
        try:
            out = await self._run(cmd)
        except EngineError as e:
            logger.warning(f"ffprobe failed for {path}: {e}")
            return None

        info = json.loads(out or b"{}")
        for stream in info.get("streams", []):
            if stream.get("codec_type") == "audio" and stream.get("duration"):
                return float(stream["duration"]) or None
        duration = info.get("format", {}).get("duration")
        if not duration:
            return None
        return float(duration) or None


async def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    try:
        proc.kill()
    except ProcessLookupError:
        return
    await proc.wait()
