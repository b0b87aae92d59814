"""
Transcoder — raw PCM capture → compact mono MP3 for the transcription gateway.

Pure transform around an ffmpeg subprocess. No state is kept between calls;
the caller owns both files and deletes them.
"""
from __future__ import annotations

import asyncio
import structlog
from dataclasses import dataclass
from pathlib import Path

from voice.errors import ConversionError

logger = structlog.get_logger()

SAMPLE_WIDTH_BYTES = 2   # s16le


@dataclass
class EncodedAudio:
    path: Path
    duration_seconds: float
    sample_rate: int = 16000
    channels: int = 1


def pcm_duration_seconds(num_bytes: int, sample_rate: int, channels: int = 1) -> float:
    """Duration of an s16le PCM payload."""
    frame_bytes = SAMPLE_WIDTH_BYTES * max(channels, 1)
    if sample_rate <= 0:
        return 0.0
    return (num_bytes // frame_bytes) / float(sample_rate)


class Transcoder:

    def __init__(
        self,
        ffmpeg_path: str = "ffmpeg",
        input_sample_rate: int = 48000,
        input_channels: int = 1,
        output_sample_rate: int = 16000,
        bitrate: str = "64k",
    ):
        self.ffmpeg_path = ffmpeg_path
        self.input_sample_rate = input_sample_rate
        self.input_channels = input_channels
        self.output_sample_rate = output_sample_rate
        self.bitrate = bitrate

    def build_command(self, raw_path: Path, out_path: Path) -> list[str]:
        return [
            self.ffmpeg_path, "-y", "-loglevel", "error",
            "-f", "s16le",
            "-ar", str(self.input_sample_rate),
            "-ac", str(self.input_channels),
            "-i", str(raw_path),
            "-ac", "1",
            "-ar", str(self.output_sample_rate),
            "-codec:a", "libmp3lame",
            "-b:a", self.bitrate,
            str(out_path),
        ]

    async def transcode(self, raw_path: Path) -> EncodedAudio:
        raw_path = Path(raw_path)
        try:
            size = raw_path.stat().st_size
        except OSError:
            size = 0
        if size == 0:
            raise ConversionError(f"empty capture: {raw_path.name}")

        out_path = raw_path.with_suffix(".mp3")
        cmd = self.build_command(raw_path, out_path)
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise ConversionError(f"ffmpeg not found at {self.ffmpeg_path}") from e

        try:
            _, stderr = await proc.communicate()
        except asyncio.CancelledError:
            if proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass                    # exited in between
                await proc.wait()
            out_path.unlink(missing_ok=True)
            logger.info("transcode_cancelled", path=str(raw_path))
            raise

        if proc.returncode != 0:
            out_path.unlink(missing_ok=True)
            detail = (stderr or b"").decode(errors="replace").strip()[:200]
            logger.warning("transcode_failed", path=str(raw_path),
                           returncode=proc.returncode, stderr=detail)
            raise ConversionError(f"ffmpeg exited with {proc.returncode}: {detail}")

        duration = pcm_duration_seconds(size, self.input_sample_rate, self.input_channels)
        logger.debug("transcoded", path=str(out_path), duration_s=round(duration, 2))
        return EncodedAudio(
            path=out_path,
            duration_seconds=duration,
            sample_rate=self.output_sample_rate,
        )
