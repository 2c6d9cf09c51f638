from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from narrator.models import RawDetection


@dataclass(slots=True)
class DetectionPage:
    """One page of scene-detection results."""

    status: str
    detections: list[RawDetection] = field(default_factory=list)
    next_token: str | None = None
    status_message: str | None = None


class SceneDetectionService(Protocol):
    def submit(self, location: str) -> str: ...

    def poll(self, job_id: str, next_token: str | None = None) -> DetectionPage: ...


class Transcoder(Protocol):
    def extract(self, input_path: Path, start_seconds: float, duration_seconds: float, output_path: Path) -> None: ...


class VisionAnalysisService(Protocol):
    def invoke(self, prompt: str, media_base64: str, mime_type: str) -> dict[str, Any]: ...


class SpeechSynthesisService(Protocol):
    def synthesize(self, text: str, voice_id: str, output_format: str) -> bytes: ...


class MediaStore(Protocol):
    def fetch(self, location: str, destination: Path) -> Path: ...
