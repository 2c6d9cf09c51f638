from __future__ import annotations

import base64
from typing import Any, Callable

from narrator.errors import DependencyError
from narrator.services.http import request_json

SERVICE_NAME = "vision"
DEFAULT_MODEL = "llava:13b"
DEFAULT_ENDPOINT = "http://localhost:11434"


class OllamaVisionClient:
    """Vision-language client for a local Ollama model.

    Ollama only accepts still images, so video clips are reduced to a poster frame
    by `frame_grabber` before the request. The reply is normalised to the
    `{"content": [{"type": "text", "text": ...}]}` envelope the analysis parser
    expects.
    """

    def __init__(
        self,
        *,
        endpoint: str = DEFAULT_ENDPOINT,
        model: str = DEFAULT_MODEL,
        timeout_seconds: float = 120.0,
        frame_grabber: Callable[[bytes], bytes] | None = None,
    ) -> None:
        self.endpoint = endpoint.rstrip("/")
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.frame_grabber = frame_grabber

    def invoke(self, prompt: str, media_base64: str, mime_type: str) -> dict[str, Any]:
        image_base64 = media_base64
        if mime_type.startswith("video/"):
            if self.frame_grabber is None:
                raise DependencyError(
                    "Vision client cannot analyse video without a frame grabber.",
                    service=SERVICE_NAME,
                    retryable=False,
                )
            frame = self.frame_grabber(base64.b64decode(media_base64))
            image_base64 = base64.b64encode(frame).decode("ascii")

        payload = request_json(
            f"{self.endpoint}/api/generate",
            service=SERVICE_NAME,
            payload={
                "model": self.model,
                "prompt": prompt,
                "images": [image_base64],
                "stream": False,
                "format": "json",
            },
            timeout_seconds=self.timeout_seconds,
        )

        text = payload.get("response")
        if not isinstance(text, str):
            return {"content": []}
        return {"content": [{"type": "text", "text": text}]}
