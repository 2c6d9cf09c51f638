from __future__ import annotations

from narrator.errors import DependencyError
from narrator.services.http import request_bytes

SERVICE_NAME = "speech"


class HttpSpeechClient:
    """Client for an OpenAI-compatible `/v1/audio/speech` endpoint."""

    def __init__(
        self,
        *,
        endpoint: str = "http://localhost:8880",
        model: str = "tts-1",
        sample_rate: int = 22050,
        timeout_seconds: float = 60.0,
    ) -> None:
        self.endpoint = endpoint.rstrip("/")
        self.model = model
        self.sample_rate = sample_rate
        self.timeout_seconds = timeout_seconds

    def synthesize(self, text: str, voice_id: str, output_format: str) -> bytes:
        audio = request_bytes(
            f"{self.endpoint}/v1/audio/speech",
            service=SERVICE_NAME,
            payload={
                "model": self.model,
                "input": text,
                "voice": voice_id,
                "response_format": output_format,
                "sample_rate": self.sample_rate,
            },
            timeout_seconds=self.timeout_seconds,
        )
        if not audio:
            raise DependencyError("Speech service returned an empty audio stream.", service=SERVICE_NAME)
        return audio
