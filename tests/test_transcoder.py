from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

from narrator.errors import ExtractionFailed
from narrator.services.transcoder import FfmpegTranscoder, _run_ffmpeg


def test_run_ffmpeg_wraps_missing_binary_error() -> None:
    def _raise_missing(*args: object, **kwargs: object) -> subprocess.CompletedProcess[bytes]:
        raise FileNotFoundError("ffmpeg")

    with pytest.MonkeyPatch.context() as mp:
        mp.setattr(subprocess, "run", _raise_missing)
        with pytest.raises(ExtractionFailed, match="ffmpeg executable was not found"):
            _run_ffmpeg(["ffmpeg", "-version"])


def test_run_ffmpeg_reports_shared_library_issue() -> None:
    def _raise_process_error(*args: object, **kwargs: object) -> subprocess.CompletedProcess[bytes]:
        raise subprocess.CalledProcessError(
            returncode=127,
            cmd=["ffmpeg"],
            output=b"",
            stderr=(
                b"ffmpeg: error while loading shared libraries: "
                b"libSvtAv1Enc.so.4: cannot open shared object file: No such file or directory"
            ),
        )

    with pytest.MonkeyPatch.context() as mp:
        mp.setattr(subprocess, "run", _raise_process_error)
        with pytest.raises(ExtractionFailed, match="failed to start because required shared libraries are missing"):
            _run_ffmpeg(["ffmpeg"])


def test_run_ffmpeg_wraps_other_called_process_error() -> None:
    def _raise_process_error(*args: object, **kwargs: object) -> subprocess.CompletedProcess[bytes]:
        raise subprocess.CalledProcessError(
            returncode=1,
            cmd=["ffmpeg"],
            output=b"",
            stderr=b"invalid data found when processing input\n",
        )

    with pytest.MonkeyPatch.context() as mp:
        mp.setattr(subprocess, "run", _raise_process_error)
        with pytest.raises(ExtractionFailed, match="ffmpeg exited with status 1") as exc_info:
            _run_ffmpeg(["ffmpeg"])

    assert exc_info.value.diagnostic == "invalid data found when processing input"


def test_extract_builds_clip_command(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    captured: list[list[str]] = []
    output_path = tmp_path / "clips" / "segment-0.mp4"

    def _fake_run(command: list[str], **kwargs: object) -> subprocess.CompletedProcess[bytes]:
        captured.append(command)
        output_path.write_bytes(b"clip")
        return subprocess.CompletedProcess(command, 0, stdout=b"", stderr=b"")

    monkeypatch.setattr(subprocess, "run", _fake_run)

    FfmpegTranscoder(preset="veryfast", crf=28).extract(tmp_path / "input.mp4", 12.5, 4.25, output_path)

    command = captured[0]
    assert command[command.index("-ss") + 1] == "12.500"
    assert command[command.index("-t") + 1] == "4.250"
    assert command[command.index("-preset") + 1] == "veryfast"
    assert command[command.index("-crf") + 1] == "28"
    assert command[-1] == str(output_path)


def test_extract_rejects_empty_output(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        subprocess,
        "run",
        lambda command, **_: subprocess.CompletedProcess(command, 0, stdout=b"", stderr=b""),
    )

    with pytest.raises(ExtractionFailed, match="produced no output"):
        FfmpegTranscoder().extract(tmp_path / "input.mp4", 0, 1, tmp_path / "segment-0.mp4")


def test_poster_frame_pipes_clip_through_ffmpeg(monkeypatch: pytest.MonkeyPatch) -> None:
    seen: dict[str, object] = {}

    def _fake_run(command: list[str], **kwargs: object) -> subprocess.CompletedProcess[bytes]:
        seen["input"] = kwargs["input"]
        seen["command"] = command
        return subprocess.CompletedProcess(command, 0, stdout=b"\xff\xd8jpeg", stderr=b"")

    monkeypatch.setattr(subprocess, "run", _fake_run)

    frame = FfmpegTranscoder(binary="/opt/ffmpeg").poster_frame(b"mp4-bytes")

    assert frame == b"\xff\xd8jpeg"
    assert seen["input"] == b"mp4-bytes"
    assert seen["command"][0] == "/opt/ffmpeg"
