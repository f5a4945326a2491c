import subprocess
from pathlib import Path

import pytest

from zapbridge.channels.wuzapi import transcode
from zapbridge.channels.wuzapi.transcode import FfmpegTranscoder
from zapbridge.errors import TranscodeFailure


def _completed(args, returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(args, returncode, stdout=stdout, stderr=stderr)


@pytest.mark.asyncio
async def test_audio_to_mp4_invokes_ffmpeg(tmp_path: Path, monkeypatch) -> None:
    calls: list[list[str]] = []

    def fake_run(args, **kwargs):
        calls.append(args)
        Path(args[-1]).write_bytes(b"mp4")
        return _completed(args)

    monkeypatch.setattr(transcode.subprocess, "run", fake_run)
    source = tmp_path / "in.ogg"
    source.write_bytes(b"ogg")

    await FfmpegTranscoder(ffmpeg_binary="ffmpeg-test").audio_to_mp4(source, tmp_path / "o.mp4")

    assert calls[0][:4] == ["ffmpeg-test", "-y", "-i", str(source)]
    assert "aac" in calls[0]


@pytest.mark.asyncio
async def test_nonzero_exit_raises_with_stderr_tail(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setattr(
        transcode.subprocess,
        "run",
        lambda args, **kwargs: _completed(args, returncode=1, stderr="Invalid data found"),
    )
    with pytest.raises(TranscodeFailure) as exc:
        await FfmpegTranscoder().video_to_mp4(tmp_path / "in.f4v", tmp_path / "out.mp4")
    assert exc.value.reason == "transcode_failed"
    assert "Invalid data found" in exc.value.detail


@pytest.mark.asyncio
async def test_empty_output_is_a_failure(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setattr(transcode.subprocess, "run", lambda args, **kwargs: _completed(args))
    with pytest.raises(TranscodeFailure) as exc:
        await FfmpegTranscoder().audio_to_voice_note(tmp_path / "in.mp3", tmp_path / "out.ogg")
    assert exc.value.detail == "empty output"


@pytest.mark.asyncio
async def test_timeout_and_missing_binary(tmp_path: Path, monkeypatch) -> None:
    def timeout(args, **kwargs):
        raise subprocess.TimeoutExpired(args, kwargs["timeout"])

    monkeypatch.setattr(transcode.subprocess, "run", timeout)
    with pytest.raises(TranscodeFailure) as exc:
        await FfmpegTranscoder(timeout_seconds=2).audio_to_mp4(tmp_path / "a", tmp_path / "b")
    assert exc.value.reason == "transcode_timeout"

    def missing(args, **kwargs):
        raise FileNotFoundError(args[0])

    monkeypatch.setattr(transcode.subprocess, "run", missing)
    with pytest.raises(TranscodeFailure) as exc:
        await FfmpegTranscoder().audio_to_mp4(tmp_path / "a", tmp_path / "b")
    assert exc.value.reason == "transcoder_unavailable"


@pytest.mark.asyncio
async def test_probe_duration(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setattr(
        transcode.subprocess, "run", lambda args, **kwargs: _completed(args, stdout="3.42\n")
    )
    assert await FfmpegTranscoder().probe_duration(tmp_path / "v.ogg") == pytest.approx(3.42)

    monkeypatch.setattr(
        transcode.subprocess, "run", lambda args, **kwargs: _completed(args, stdout="N/A")
    )
    assert await FfmpegTranscoder().probe_duration(tmp_path / "v.ogg") is None

    def missing(args, **kwargs):
        raise FileNotFoundError(args[0])

    monkeypatch.setattr(transcode.subprocess, "run", missing)
    assert await FfmpegTranscoder().probe_duration(tmp_path / "v.ogg") is None
