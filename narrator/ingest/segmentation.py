from __future__ import annotations

import asyncio
import logging
from pathlib import PurePosixPath
from typing import Callable, Iterable
from urllib.parse import urlparse

from narrator.errors import (
    DetectionFailed,
    InvalidLocation,
    PollingTimeout,
    SegmentationTimeout,
)
from narrator.models import DetectionPoll, RawDetection, Segment
from narrator.polling.cancellation import CancellationToken
from narrator.polling.job_poller import JobPoller, PollStatus
from narrator.resilience.guard import DependencyGuard
from narrator.services.protocols import SceneDetectionService

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE_THRESHOLD = 80.0
DEFAULT_MERGE_GAP_SECONDS = 1.0
DEFAULT_TIMEOUT_SECONDS = 30 * 60
MAX_RESULT_PAGES = 1000
OBJECT_STORE_SCHEMES = {"s3", "gs"}
URL_SCHEMES = {"http", "https"}

IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".webp", ".bmp"}


def validate_location(location: str) -> str:
    """Return the trimmed location or raise `InvalidLocation`."""

    candidate = (location or "").strip()
    if not candidate:
        raise InvalidLocation(location, "location is empty")

    parsed = urlparse(candidate)
    if parsed.scheme in OBJECT_STORE_SCHEMES:
        if not parsed.netloc:
            raise InvalidLocation(location, "bucket name is missing")
        if not parsed.path.strip("/"):
            raise InvalidLocation(location, "object key is missing")
        return candidate
    if parsed.scheme in URL_SCHEMES:
        if not parsed.netloc or not parsed.path.strip("/"):
            raise InvalidLocation(location, "URL must include a host and a file path")
        return candidate
    if parsed.scheme == "file":
        if not parsed.path.startswith("/") or parsed.path.endswith("/"):
            raise InvalidLocation(location, "file URL must name an absolute file path")
        return candidate
    if parsed.scheme:
        raise InvalidLocation(location, f"unsupported scheme '{parsed.scheme}'")
    if not candidate.startswith("/") or candidate.endswith("/"):
        raise InvalidLocation(location, "local paths must be absolute file paths")
    return candidate


def is_image_location(location: str) -> bool:
    return PurePosixPath(urlparse(location).path).suffix.lower() in IMAGE_EXTENSIONS


def filter_and_merge(
    raw_detections: Iterable[RawDetection],
    *,
    confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
    merge_gap_seconds: float = DEFAULT_MERGE_GAP_SECONDS,
) -> list[Segment]:
    """Turn noisy detections into a sorted, per-type merged segment list."""

    candidates = [
        Segment(
            start_time=detection.start_millis / 1000.0,
            end_time=detection.end_millis / 1000.0,
            confidence=max(0.0, min(100.0, float(detection.confidence))),
            type=detection.type,
        )
        for detection in raw_detections
        if detection.confidence >= confidence_threshold and detection.end_millis > detection.start_millis
    ]
    candidates.sort(key=lambda segment: (segment.start_time, segment.end_time))

    merged: list[Segment] = []
    last_by_type: dict[str, int] = {}
    for segment in candidates:
        index = last_by_type.get(segment.type)
        if index is not None:
            previous = merged[index]
            if segment.start_time - previous.end_time <= merge_gap_seconds:
                merged[index] = Segment(
                    start_time=previous.start_time,
                    end_time=max(previous.end_time, segment.end_time),
                    confidence=max(previous.confidence, segment.confidence),
                    type=previous.type,
                )
                continue
        last_by_type[segment.type] = len(merged)
        merged.append(segment)

    merged.sort(key=lambda segment: (segment.start_time, segment.end_time, segment.type))
    return merged


class SegmentationEngine:
    """Detects segments of a video through the external scene-detection service."""

    def __init__(
        self,
        service: SceneDetectionService,
        *,
        guard: DependencyGuard | None = None,
        poller: JobPoller | None = None,
        confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
        merge_gap_seconds: float = DEFAULT_MERGE_GAP_SECONDS,
        poll_interval_seconds: float = 5.0,
    ) -> None:
        self.service = service
        self.guard = guard or DependencyGuard("scene-detection")
        self.poller = poller or JobPoller()
        self.confidence_threshold = confidence_threshold
        self.merge_gap_seconds = merge_gap_seconds
        self.poll_interval_seconds = poll_interval_seconds

    async def start_detection(self, video_location: str, *, cancel_token: CancellationToken | None = None) -> str:
        location = validate_location(video_location)
        job_id = await self.guard.call(
            lambda: asyncio.to_thread(self.service.submit, location),
            label="scene detection submit",
            cancel_token=cancel_token,
        )
        logger.info("Started scene detection job %s for %s", job_id, location)
        return job_id

    async def poll_detection(
        self,
        external_job_id: str,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> DetectionPoll:
        detections: list[RawDetection] = []
        next_token: str | None = None

        for _ in range(MAX_RESULT_PAGES):
            page = await self.guard.call(
                lambda token=next_token: asyncio.to_thread(self.service.poll, external_job_id, token),
                label="scene detection poll",
                cancel_token=cancel_token,
            )
            if page.status == "FAILED":
                raise DetectionFailed(
                    page.status_message or f"Scene detection job {external_job_id} failed",
                    details={"external_job_id": external_job_id},
                )
            if page.status != "SUCCEEDED":
                return DetectionPoll(status="IN_PROGRESS")

            detections.extend(page.detections)
            next_token = page.next_token
            if not next_token:
                break
        else:
            raise DetectionFailed(
                f"Scene detection job {external_job_id} returned more than {MAX_RESULT_PAGES} pages",
                details={"external_job_id": external_job_id},
            )

        segments = filter_and_merge(
            detections,
            confidence_threshold=self.confidence_threshold,
            merge_gap_seconds=self.merge_gap_seconds,
        )
        logger.info(
            "Scene detection job %s produced %d segment(s) from %d detection(s)",
            external_job_id,
            len(segments),
            len(detections),
        )
        return DetectionPoll(status="SUCCEEDED", segments=segments)

    async def run_to_completion(
        self,
        video_location: str,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        cancel_token: CancellationToken | None = None,
        on_progress: Callable[[str, PollStatus], None] | None = None,
    ) -> list[Segment]:
        external_job_id = await self.start_detection(video_location, cancel_token=cancel_token)

        async def check() -> PollStatus:
            polled = await self.poll_detection(external_job_id, cancel_token=cancel_token)
            if polled.status == "SUCCEEDED":
                return PollStatus(status="completed", step="segmenting", payload=polled.segments)
            return PollStatus(status="processing", step="segmenting", message="Scene detection in progress")

        try:
            result = await self.poller.poll(
                external_job_id,
                check,
                interval_seconds=self.poll_interval_seconds,
                timeout_seconds=timeout_seconds,
                on_progress=on_progress,
                cancel_token=cancel_token,
            )
        except PollingTimeout as exc:
            raise SegmentationTimeout(
                f"Scene detection did not finish within {timeout_seconds:g}s",
                details={"external_job_id": external_job_id, "attempts": exc.attempts},
            ) from exc

        return list(result.final_status.payload or [])
