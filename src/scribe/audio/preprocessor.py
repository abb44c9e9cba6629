"""AudioPreprocessor -- downmix, resample, and re-encode uploads before processing.

Speech gains nothing from stereo or high sample rates, so every upload is
forced to mono and re-encoded at a low bitrate (defaults: 48 kbit/s MP3 at
22 050 Hz). ffmpeg does the actual work; this module drives it as an
asyncio subprocess, turns its ``-progress`` stream into a monotonic 0-100
percentage, and owns the scratch workspace the encode runs in.

Failure policy: if ffmpeg is unavailable the call fails immediately with
CompressionError. There is no fallback to the uncompressed upload; callers
may submit the original only when ``fits_without_compression`` says so.

Exports:
    CompressionOptions, AudioProbe, CompressedAudio: value types.
    FfmpegEngine: ffmpeg/ffprobe subprocess driver.
    AudioPreprocessor: compress() entry point.
"""

from __future__ import annotations

import asyncio
import json
import shutil
import tempfile
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Protocol

import structlog
from pydantic import BaseModel, Field

from src.scribe.audio.storage import AudioStore
from src.scribe.errors import CompressionError

logger = structlog.get_logger(__name__)

ProgressCallback = Callable[[int], None]


# ── Value Types ──────────────────────────────────────────────────────────────


class CompressionOptions(BaseModel):
    """Encode settings. Channel count is not configurable: output is always mono."""

    target_bitrate_kbps: int = Field(default=48, ge=8, le=320)
    sample_rate: int = Field(default=22050, ge=8000, le=48000)

    @property
    def channels(self) -> int:
        return 1


class AudioProbe(BaseModel):
    channels: int
    sample_rate: int
    bitrate_kbps: float | None = None
    duration_seconds: float = 0.0


class CompressedAudio(BaseModel):
    """The stored, compressed artifact."""

    audio_ref: str
    channels: int
    sample_rate: int
    bitrate_kbps: float | None
    duration_seconds: float
    size_bytes: int


# ── Engine ───────────────────────────────────────────────────────────────────


class CompressionEngine(Protocol):
    def ensure_available(self) -> None: ...

    async def probe(self, path: Path) -> AudioProbe: ...

    async def transcode(
        self,
        source: Path,
        destination: Path,
        options: CompressionOptions,
        duration_seconds: float,
        on_progress: ProgressCallback,
    ) -> None: ...


class FfmpegEngine:
    """Runs ffmpeg and ffprobe as asyncio subprocesses."""

    def __init__(self, ffmpeg_binary: str = "ffmpeg", ffprobe_binary: str = "ffprobe") -> None:
        self._ffmpeg = ffmpeg_binary
        self._ffprobe = ffprobe_binary

    def ensure_available(self) -> None:
        for binary in (self._ffmpeg, self._ffprobe):
            if shutil.which(binary) is None:
                raise CompressionError(f"{binary} not found on PATH")

    async def probe(self, path: Path) -> AudioProbe:
        cmd = [
            self._ffprobe,
            "-v", "error",
            "-select_streams", "a:0",
            "-show_entries", "stream=channels,sample_rate,bit_rate:format=duration,bit_rate",
            "-of", "json",
            str(path),
        ]
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await proc.communicate()
        if proc.returncode != 0:
            raise CompressionError(
                f"ffprobe failed on {path.name}: {stderr.decode(errors='replace').strip()}"
            )
        return parse_probe_output(stdout.decode())

    async def transcode(
        self,
        source: Path,
        destination: Path,
        options: CompressionOptions,
        duration_seconds: float,
        on_progress: ProgressCallback,
    ) -> None:
        cmd = build_ffmpeg_command(self._ffmpeg, source, destination, options)
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stderr_task = asyncio.create_task(proc.stderr.read())
        try:
            async for raw_line in proc.stdout:
                percent = parse_progress_line(raw_line.decode(errors="replace"), duration_seconds)
                if percent is not None:
                    on_progress(percent)
            returncode = await proc.wait()
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            stderr_task.cancel()
            raise
        stderr = (await stderr_task).decode(errors="replace").strip()
        if returncode != 0:
            raise CompressionError(f"ffmpeg exited with {returncode}: {stderr[-500:]}")


def build_ffmpeg_command(
    ffmpeg_binary: str,
    source: Path,
    destination: Path,
    options: CompressionOptions,
) -> list[str]:
    return [
        ffmpeg_binary,
        "-y",
        "-nostats",
        "-i", str(source),
        "-vn",
        "-map", "0:a:0",
        "-ac", str(options.channels),
        "-ar", str(options.sample_rate),
        "-b:a", f"{options.target_bitrate_kbps}k",
        "-f", "mp3",
        "-progress", "pipe:1",
        str(destination),
    ]


def parse_probe_output(raw: str) -> AudioProbe:
    data = json.loads(raw or "{}")
    streams = data.get("streams") or []
    if not streams:
        raise CompressionError("No audio stream found")
    stream = streams[0]
    fmt = data.get("format") or {}
    bit_rate = stream.get("bit_rate") or fmt.get("bit_rate")
    return AudioProbe(
        channels=int(stream.get("channels") or 0),
        sample_rate=int(stream.get("sample_rate") or 0),
        bitrate_kbps=round(int(bit_rate) / 1000, 1) if bit_rate else None,
        duration_seconds=float(fmt.get("duration") or 0.0),
    )


def parse_progress_line(line: str, duration_seconds: float) -> int | None:
    """Map one ``-progress`` key=value line to a percentage, if it carries one.

    ffmpeg reports ``out_time_us`` (and, confusingly, ``out_time_ms`` also
    in microseconds). ``progress=end`` means done.
    """
    key, _, value = line.strip().partition("=")
    if key == "progress" and value == "end":
        return 100
    if key not in ("out_time_us", "out_time_ms") or duration_seconds <= 0:
        return None
    try:
        elapsed = int(value) / 1_000_000
    except ValueError:
        return None
    return max(0, min(99, int(elapsed / duration_seconds * 100)))


class MonotonicProgress:
    """Forwards only strictly increasing percentages, clamped to 0..100."""

    def __init__(self, callback: ProgressCallback | None) -> None:
        self._callback = callback
        self.last = -1

    def __call__(self, percent: int) -> None:
        percent = max(0, min(100, int(percent)))
        if percent <= self.last:
            return
        self.last = percent
        if self._callback is not None:
            self._callback(percent)


# ── Preprocessor ─────────────────────────────────────────────────────────────


class AudioPreprocessor:
    """Compress uploads into the AudioStore.

    Args:
        engine: Compression engine (FfmpegEngine in production).
        store: Destination store for finished artifacts.
    """

    def __init__(self, engine: CompressionEngine, store: AudioStore) -> None:
        self._engine = engine
        self._store = store

    @asynccontextmanager
    async def workspace(self) -> AsyncIterator[Path]:
        """Scratch directory removed on success, failure, and cancellation."""
        tmp = tempfile.TemporaryDirectory(prefix="scribe-audio-")
        try:
            yield Path(tmp.name)
        finally:
            tmp.cleanup()

    async def probe_duration(self, source: Path) -> float:
        """Duration of ``source`` in seconds, or 0.0 if it cannot be probed."""
        try:
            self._engine.ensure_available()
            return (await self._engine.probe(source)).duration_seconds
        except CompressionError as exc:
            logger.warning("audio_probe_failed", source=source.name, error=exc.message)
            return 0.0

    async def compress(
        self,
        source: Path,
        options: CompressionOptions | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> CompressedAudio:
        """Downmix, resample, and re-encode ``source``, then store the result.

        Raises:
            CompressionError: ffmpeg unavailable, failed, or produced no output.
        """
        options = options or CompressionOptions()
        progress = MonotonicProgress(on_progress)

        self._engine.ensure_available()

        async with self.workspace() as work_dir:
            source_probe = await self._engine.probe(source)
            output = work_dir / "compressed.mp3"
            progress(0)
            await self._engine.transcode(
                source, output, options, source_probe.duration_seconds, progress
            )
            if not output.exists() or output.stat().st_size == 0:
                raise CompressionError("Compression produced an empty file")

            result_probe = await self._engine.probe(output)
            size_bytes = output.stat().st_size
            audio_ref = await self._store.put(output)

        progress(100)
        logger.info(
            "audio_compressed",
            audio_ref=audio_ref,
            source_channels=source_probe.channels,
            source_sample_rate=source_probe.sample_rate,
            channels=result_probe.channels,
            sample_rate=result_probe.sample_rate,
            bitrate_kbps=result_probe.bitrate_kbps,
            size_bytes=size_bytes,
        )
        return CompressedAudio(
            audio_ref=audio_ref,
            channels=result_probe.channels,
            sample_rate=result_probe.sample_rate,
            bitrate_kbps=result_probe.bitrate_kbps,
            duration_seconds=result_probe.duration_seconds or source_probe.duration_seconds,
            size_bytes=size_bytes,
        )
