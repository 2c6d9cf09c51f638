from __future__ import annotations

import subprocess
from pathlib import Path

from narrator.errors import ExtractionFailed

SHARED_LIBRARY_MARKER = "error while loading shared libraries"


class FfmpegTranscoder:
    """Cuts clips and poster frames with the ffmpeg command-line tool."""

    def __init__(self, binary: str = "ffmpeg", *, preset: str = "fast", crf: int = 23) -> None:
        self.binary = binary
        self.preset = preset
        self.crf = crf

    def extract(self, input_path: Path, start_seconds: float, duration_seconds: float, output_path: Path) -> None:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        _run_ffmpeg(self.build_extract_command(input_path, start_seconds, duration_seconds, output_path))
        if not output_path.exists() or output_path.stat().st_size == 0:
            raise ExtractionFailed(f"ffmpeg produced no output for {output_path.name}")

    def build_extract_command(
        self,
        input_path: Path,
        start_seconds: float,
        duration_seconds: float,
        output_path: Path,
    ) -> list[str]:
        return [
            self.binary,
            "-v",
            "error",
            "-y",
            "-ss",
            f"{max(0.0, start_seconds):.3f}",
            "-i",
            str(input_path),
            "-t",
            f"{duration_seconds:.3f}",
            "-c:v",
            "libx264",
            "-c:a",
            "aac",
            "-preset",
            self.preset,
            "-crf",
            str(self.crf),
            "-movflags",
            "+faststart",
            str(output_path),
        ]

    def poster_frame(self, video_bytes: bytes, *, image_format: str = "mjpeg") -> bytes:
        """Grab the first frame of an in-memory clip as a JPEG."""

        command = [
            self.binary,
            "-v",
            "error",
            "-i",
            "pipe:0",
            "-frames:v",
            "1",
            "-f",
            "image2pipe",
            "-vcodec",
            image_format,
            "pipe:1",
        ]
        return _run_ffmpeg(command, stdin=video_bytes)


def _run_ffmpeg(command: list[str], *, stdin: bytes | None = None) -> bytes:
    try:
        completed = subprocess.run(
            command,
            check=True,
            capture_output=True,
            input=stdin,
        )
    except FileNotFoundError as exc:
        raise ExtractionFailed(
            "ffmpeg executable was not found. Install FFmpeg so ffmpeg is available on PATH."
        ) from exc
    except subprocess.CalledProcessError as exc:
        stderr = _decode(exc.stderr)
        if SHARED_LIBRARY_MARKER in stderr:
            raise ExtractionFailed(
                "ffmpeg is installed but failed to start because required shared libraries are missing.",
                diagnostic=stderr,
            ) from exc
        raise ExtractionFailed(
            f"ffmpeg exited with status {exc.returncode}.",
            diagnostic=stderr,
        ) from exc
    return completed.stdout or b""


def _decode(raw: bytes | str | None) -> str:
    if raw is None:
        return ""
    if isinstance(raw, bytes):
        return raw.decode("utf-8", errors="replace").strip()
    return raw.strip()
