"""External ffmpeg/ffprobe invocation.

Every call is a blocking subprocess run with a hard timeout, pushed onto a
worker thread so webhook acknowledgement never waits on a transcode.
"""

from __future__ import annotations

import asyncio
import logging
import subprocess
from pathlib import Path
from typing import Protocol

from zapbridge.config import Settings
from zapbridge.errors import TranscodeFailure

logger = logging.getLogger(__name__)

_STDERR_TAIL = 600


class Transcoder(Protocol):
    async def audio_to_mp4(self, source: Path, target: Path) -> None: ...

    async def video_to_mp4(self, source: Path, target: Path) -> None: ...

    async def audio_to_voice_note(self, source: Path, target: Path) -> None: ...

    async def probe_duration(self, source: Path) -> float | None: ...


def _run(args: list[str], *, timeout_s: int) -> subprocess.CompletedProcess[str]:
    try:
        proc = subprocess.run(
            args,
            capture_output=True,
            text=True,
            timeout=max(1, timeout_s),
            check=False,
        )
    except subprocess.TimeoutExpired as exc:
        raise TranscodeFailure("transcode_timeout", detail=f"{args[0]} > {timeout_s}s") from exc
    except FileNotFoundError as exc:
        raise TranscodeFailure("transcoder_unavailable", detail=args[0]) from exc
    except OSError as exc:
        raise TranscodeFailure("transcode_failed", detail=str(exc)) from exc
    return proc


class FfmpegTranscoder:
    def __init__(
        self,
        *,
        ffmpeg_binary: str = "ffmpeg",
        ffprobe_binary: str = "ffprobe",
        timeout_seconds: int = 45,
        voice_note_bitrate: str = "64k",
        voice_note_sample_rate: int = 48000,
        voice_note_channels: int = 1,
    ) -> None:
        self._ffmpeg = ffmpeg_binary
        self._ffprobe = ffprobe_binary
        self._timeout = timeout_seconds
        self._bitrate = voice_note_bitrate
        self._sample_rate = voice_note_sample_rate
        self._channels = voice_note_channels

    @classmethod
    def from_settings(cls, settings: Settings) -> FfmpegTranscoder:
        return cls(
            ffmpeg_binary=settings.ffmpeg_binary,
            ffprobe_binary=settings.ffprobe_binary,
            timeout_seconds=settings.transcode_timeout_seconds,
            voice_note_bitrate=settings.voice_note_bitrate,
            voice_note_sample_rate=settings.voice_note_sample_rate,
            voice_note_channels=settings.voice_note_channels,
        )

    async def _ffmpeg_run(self, source: Path, target: Path, options: list[str]) -> None:
        args = [self._ffmpeg, "-y", "-i", str(source), *options, str(target)]
        proc = await asyncio.to_thread(_run, args, timeout_s=self._timeout)
        if proc.returncode != 0:
            raise TranscodeFailure(
                "transcode_failed",
                detail=(proc.stderr or "")[-_STDERR_TAIL:].strip(),
            )
        if not target.exists() or target.stat().st_size == 0:
            raise TranscodeFailure("transcode_failed", detail="empty output")
        logger.debug("ffmpeg wrote %s from %s", target.name, source.name)

    async def audio_to_mp4(self, source: Path, target: Path) -> None:
        await self._ffmpeg_run(source, target, ["-vn", "-c:a", "aac"])

    async def video_to_mp4(self, source: Path, target: Path) -> None:
        await self._ffmpeg_run(
            source,
            target,
            [
                "-c:v", "libx264",
                "-preset", "fast",
                "-crf", "23",
                "-c:a", "aac",
                "-b:a", "128k",
                "-vf", "format=yuv420p",
                "-movflags", "+faststart",
            ],
        )  # fmt: skip

    async def audio_to_voice_note(self, source: Path, target: Path) -> None:
        await self._ffmpeg_run(
            source,
            target,
            [
                "-vn",
                "-c:a", "libopus",
                "-b:a", self._bitrate,
                "-ar", str(self._sample_rate),
                "-ac", str(self._channels),
                "-f", "ogg",
            ],
        )  # fmt: skip

    async def probe_duration(self, source: Path) -> float | None:
        """Duration in seconds, or None when ffprobe cannot tell."""
        args = [
            self._ffprobe,
            "-v", "error",
            "-show_entries", "format=duration",
            "-of", "default=noprint_wrappers=1:nokey=1",
            str(source),
        ]  # fmt: skip
        try:
            proc = await asyncio.to_thread(_run, args, timeout_s=self._timeout)
        except TranscodeFailure as exc:
            logger.warning("ffprobe failed for %s: %s", source.name, exc.reason)
            return None
        if proc.returncode != 0:
            return None
        try:
            duration = float((proc.stdout or "").strip())
        except ValueError:
            return None
        return duration if duration > 0 else None
