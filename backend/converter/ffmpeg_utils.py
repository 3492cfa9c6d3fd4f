# backend/converter/ffmpeg_utils.py
"""ffmpeg invocation for a single conversion attempt.

``build_ffmpeg_command`` turns conversion parameters into an argument list,
and ``TranscodeJob.events`` runs it, surfacing what ffmpeg does as a typed
event stream: one ``EngineStarted``, any number of ``EngineProgress``, then
exactly one of ``EngineCompleted`` / ``EngineFailed``.
"""

import asyncio
import logging
import shlex
from collections import deque
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, List, Optional, Tuple, Union

logger = logging.getLogger(__name__)

STDERR_TAIL_LINES = 20


@dataclass(frozen=True)
class FormatProfile:
    codec: str
    muxer: str
    extra_args: Tuple[str, ...] = ()
    # "-q:a" (encoder quality scale) or "-b:a" (bitrate default per tier)
    quality_flag: Optional[str] = None
    quality_values: Dict[str, str] = field(default_factory=dict)
    supports_bitrate: bool = False


FORMAT_PROFILES: Dict[str, FormatProfile] = {
    "mp3": FormatProfile(
        codec="libmp3lame", muxer="mp3",
        quality_flag="-q:a", quality_values={"high": "0", "medium": "4", "low": "9"},
        supports_bitrate=True,
    ),
    "ogg": FormatProfile(
        codec="libvorbis", muxer="ogg",
        quality_flag="-q:a", quality_values={"high": "8", "medium": "5", "low": "2"},
        supports_bitrate=True,
    ),
    "m4a": FormatProfile(
        codec="aac", muxer="ipod",
        quality_flag="-b:a", quality_values={"high": "256k", "medium": "192k", "low": "128k"},
        supports_bitrate=True,
    ),
    "wav": FormatProfile(codec="pcm_s16le", muxer="wav", extra_args=("-ac", "2", "-ar", "44100")),
    "flac": FormatProfile(codec="flac", muxer="flac"),
}

SUPPORTED_FORMATS = tuple(FORMAT_PROFILES)


def normalize_bitrate(value: Union[int, str, None]) -> Optional[str]:
    """Return an ffmpeg bitrate string ("192k") from 192, "192" or "192k"."""
    if value is None or value == "":
        return None
    text = str(value).strip().lower()
    if text.endswith("k"):
        text = text[:-1]
    if not text.isdigit() or int(text) <= 0:
        raise ValueError(f"Invalid bitrate: {value!r}")
    return f"{int(text)}k"


def format_seconds(value: float) -> str:
    return ("%f" % value).rstrip("0").rstrip(".")


@dataclass
class TranscodeParams:
    input_path: str
    output_path: str
    format: str = "mp3"
    quality: str = "high"
    bitrate: Optional[str] = None
    start: Optional[float] = None
    end: Optional[float] = None

    def expected_duration(self, probed: Optional[float] = None) -> Optional[float]:
        """Length of the output in seconds, if it can be known."""
        if self.start is not None and self.end is not None:
            return self.end - self.start
        if probed is None:
            return None
        return max(probed - (self.start or 0.0), 0.0) or None


def codec_args(params: TranscodeParams) -> List[str]:
    profile = FORMAT_PROFILES[params.format]
    args = ["-c:a", profile.codec, *profile.extra_args]
    if profile.quality_flag is None:
        # lossless/raw: quality tier and bitrate do not apply
        return args
    if params.bitrate and profile.supports_bitrate:
        args += ["-b:a", params.bitrate]
    else:
        args += [profile.quality_flag, profile.quality_values[params.quality]]
    return args


def build_ffmpeg_command(params: TranscodeParams, ffmpeg_path: str = "ffmpeg") -> List[str]:
    cmd = [ffmpeg_path, "-y"]
    # seek before -i so the input is not decoded up to the start point
    if params.start is not None:
        cmd += ["-ss", format_seconds(params.start)]
    cmd += ["-i", params.input_path]
    if params.start is not None and params.end is not None:
        cmd += ["-t", format_seconds(params.end - params.start)]
    cmd += ["-vn"]
    cmd += codec_args(params)
    cmd += [
        "-f", FORMAT_PROFILES[params.format].muxer,
        "-progress", "pipe:1", "-nostats",
        params.output_path,
    ]
    return cmd


async def probe_duration(path: str, ffprobe_path: str = "ffprobe") -> Optional[float]:
    """Return the container duration in seconds, or None if ffprobe can't tell."""
    cmd = [
        ffprobe_path, "-v", "error",
        "-show_entries", "format=duration",
        "-of", "default=noprint_wrappers=1:nokey=1",
        path,
    ]
    proc = None
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
        )
        stdout, _ = await proc.communicate()
    except OSError as exc:
        logger.warning("ffprobe unavailable (%s); progress will not be reported", exc)
        return None
    finally:
        if proc is not None and proc.returncode is None:
            proc.kill()
            await proc.wait()
    try:
        duration = float(stdout.decode().strip())
    except ValueError:
        return None
    return duration if duration > 0 else None


def parse_progress_time(line: str) -> Optional[float]:
    """Seconds of output written, from an ``out_time_us``/``out_time_ms`` line.

    ffmpeg reports both keys in microseconds.
    """
    key, _, value = line.strip().partition("=")
    if key not in ("out_time_us", "out_time_ms"):
        return None
    try:
        return int(value) / 1_000_000
    except ValueError:
        # "N/A" before the first packet is written
        return None


@dataclass(frozen=True)
class EngineStarted:
    command: str


@dataclass(frozen=True)
class EngineProgress:
    percent: float


@dataclass(frozen=True)
class EngineCompleted:
    pass


@dataclass(frozen=True)
class EngineFailed:
    message: str


EngineEvent = Union[EngineStarted, EngineProgress, EngineCompleted, EngineFailed]


async def _drain(stream: asyncio.StreamReader, tail: deque) -> None:
    async for raw in stream:
        line = raw.decode(errors="replace").strip()
        if line:
            tail.append(line)


class TranscodeJob:
    """One ffmpeg run. Instances are single-use."""

    def __init__(self, params: TranscodeParams, ffmpeg_path: str = "ffmpeg", ffprobe_path: str = "ffprobe"):
        self.params = params
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path
        self.process: Optional[asyncio.subprocess.Process] = None
        self._used = False

    async def events(self) -> AsyncIterator[EngineEvent]:
        if self._used:
            raise RuntimeError("TranscodeJob cannot be reused")
        self._used = True

        params = self.params
        cmd = build_ffmpeg_command(params, self.ffmpeg_path)

        probed = None
        if params.start is None or params.end is None:
            probed = await probe_duration(params.input_path, self.ffprobe_path)
        duration = params.expected_duration(probed)

        try:
            self.process = await asyncio.create_subprocess_exec(
                *cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
            )
        except OSError as exc:
            yield EngineFailed(f"Could not start ffmpeg: {exc}")
            return

        yield EngineStarted(shlex.join(cmd))

        stderr_tail: deque = deque(maxlen=STDERR_TAIL_LINES)
        stderr_task = asyncio.ensure_future(_drain(self.process.stderr, stderr_tail))
        try:
            last_percent = None
            async for raw in self.process.stdout:
                seconds = parse_progress_time(raw.decode(errors="replace"))
                if seconds is None or not duration:
                    continue
                percent = min(max(seconds / duration * 100.0, 0.0), 100.0)
                if percent != last_percent:
                    last_percent = percent
                    yield EngineProgress(percent)
            await stderr_task
            returncode = await self.process.wait()
        finally:
            if self.process.returncode is None:
                logger.warning("Killing ffmpeg (pid %s)", self.process.pid)
                self.process.kill()
                await self.process.wait()
            if not stderr_task.done():
                stderr_task.cancel()

        if returncode == 0:
            yield EngineCompleted()
        else:
            detail = stderr_tail[-1] if stderr_tail else "no output"
            yield EngineFailed(f"ffmpeg exited with code {returncode}: {detail}")
