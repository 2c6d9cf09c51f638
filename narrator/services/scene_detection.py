from __future__ import annotations

from typing import Any
from urllib.parse import quote, urlencode

from narrator.errors import DependencyError
from narrator.models import RawDetection
from narrator.services.http import request_json
from narrator.services.protocols import DetectionPage

SERVICE_NAME = "scene-detection"


class HttpSceneDetectionClient:
    """Client for a segment-detection HTTP API with paginated job results."""

    def __init__(self, endpoint: str, *, timeout_seconds: float = 30.0, min_confidence: float = 80.0) -> None:
        self.endpoint = endpoint.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.min_confidence = min_confidence

    def submit(self, location: str) -> str:
        payload = request_json(
            f"{self.endpoint}/jobs",
            service=SERVICE_NAME,
            payload={
                "location": location,
                "segment_types": ["SHOT", "TECHNICAL_CUE"],
                "min_confidence": self.min_confidence,
            },
            timeout_seconds=self.timeout_seconds,
        )
        job_id = payload.get("job_id")
        if not isinstance(job_id, str) or not job_id:
            raise DependencyError("Scene detection did not return a job id.", service=SERVICE_NAME)
        return job_id

    def poll(self, job_id: str, next_token: str | None = None) -> DetectionPage:
        query = f"?{urlencode({'next_token': next_token})}" if next_token else ""
        payload = request_json(
            f"{self.endpoint}/jobs/{quote(job_id, safe='')}{query}",
            service=SERVICE_NAME,
            method="GET",
            timeout_seconds=self.timeout_seconds,
        )
        return _parse_page(payload)


def _parse_page(payload: dict[str, Any]) -> DetectionPage:
    status = payload.get("status")
    if not isinstance(status, str):
        raise DependencyError("Scene detection response is missing 'status'.", service=SERVICE_NAME)

    detections = [
        RawDetection(
            type=str(entry.get("type", "SHOT")),
            start_millis=float(entry.get("start_millis", 0)),
            end_millis=float(entry.get("end_millis", 0)),
            confidence=float(entry.get("confidence", 0)),
        )
        for entry in payload.get("segments") or []
        if isinstance(entry, dict)
    ]
    return DetectionPage(
        status=status,
        detections=detections,
        next_token=payload.get("next_token") or None,
        status_message=payload.get("status_message"),
    )
