from __future__ import annotations

import asyncio
import logging
from pathlib import Path, PurePosixPath
from typing import Callable
from urllib.parse import urlparse

from narrator.errors import ExtractionFailed, NarratorError
from narrator.ingest.workspace import JobWorkspace
from narrator.models import ExtractedClip, ExtractionResult, ItemError, Segment
from narrator.polling.cancellation import CancellationToken
from narrator.resilience.guard import DependencyGuard
from narrator.services.protocols import MediaStore, Transcoder

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 3

ExtractionProgressFn = Callable[[int, int], None]


def segment_id_for(index: int) -> str:
    return f"segment-{index}"


class ExtractionEngine:
    """Cuts one clip per segment out of a single downloaded copy of the source."""

    def __init__(
        self,
        transcoder: Transcoder,
        media_store: MediaStore,
        *,
        fetch_guard: DependencyGuard | None = None,
        concurrency: int = DEFAULT_CONCURRENCY,
    ) -> None:
        self.transcoder = transcoder
        self.media_store = media_store
        self.fetch_guard = fetch_guard or DependencyGuard("media-store")
        self.concurrency = max(1, concurrency)

    async def fetch_source(
        self,
        video_location: str,
        workspace: JobWorkspace,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> Path:
        suffix = PurePosixPath(urlparse(video_location).path).suffix or ".mp4"
        destination = workspace.path_for(f"input{suffix}")
        return await self.fetch_guard.call(
            lambda: asyncio.to_thread(self.media_store.fetch, video_location, destination),
            label="source download",
            cancel_token=cancel_token,
        )

    async def extract_all(
        self,
        video_location: str,
        segments: list[Segment],
        workspace: JobWorkspace,
        *,
        cancel_token: CancellationToken | None = None,
        on_progress: ExtractionProgressFn | None = None,
    ) -> ExtractionResult:
        result = ExtractionResult()
        if not segments:
            return result

        input_path = await self.fetch_source(video_location, workspace, cancel_token=cancel_token)
        total = len(segments)
        try:
            for batch_start in range(0, total, self.concurrency):
                if cancel_token is not None:
                    cancel_token.raise_if_cancelled()

                batch = list(enumerate(segments[batch_start : batch_start + self.concurrency], start=batch_start))
                outcomes = await asyncio.gather(
                    *(
                        self.extract_one(
                            segment,
                            input_path,
                            workspace.path_for(f"{segment_id_for(index)}.mp4"),
                            segment_id_for(index),
                        )
                        for index, segment in batch
                    ),
                    return_exceptions=True,
                )

                for (index, _segment), outcome in zip(batch, outcomes):
                    segment_id = segment_id_for(index)
                    if isinstance(outcome, ExtractedClip):
                        result.clips.append(outcome)
                        continue
                    if not isinstance(outcome, Exception):
                        raise outcome
                    workspace.release(workspace.path_for(f"{segment_id}.mp4"))
                    result.errors.append(_item_error(segment_id, outcome))
                    logger.warning("Extraction failed for %s: %s", segment_id, outcome)

                if on_progress is not None:
                    on_progress(min(batch_start + self.concurrency, total), total)
        finally:
            workspace.release(input_path)

        logger.info("Extracted %d/%d clip(s) with %d error(s)", len(result.clips), total, len(result.errors))
        return result

    async def extract_one(
        self,
        segment: Segment,
        input_path: Path,
        output_path: Path,
        segment_id: str,
    ) -> ExtractedClip:
        duration = segment.end_time - segment.start_time
        if duration <= 0:
            raise ExtractionFailed(f"{segment_id}: segment has a non-positive duration")

        await asyncio.to_thread(self.transcoder.extract, input_path, segment.start_time, duration, output_path)
        logger.debug("Extracted %s (%.2fs-%.2fs) to %s", segment_id, segment.start_time, segment.end_time, output_path)
        return ExtractedClip(
            segment_id=segment_id,
            local_path=output_path,
            start_time=segment.start_time,
            end_time=segment.end_time,
            duration=duration,
        )


def _item_error(segment_id: str, exc: Exception) -> ItemError:
    if isinstance(exc, NarratorError):
        return ItemError(item_id=segment_id, code=exc.code, message=f"{segment_id}: {exc.message}", details=exc.details or None)
    return ItemError(item_id=segment_id, code="EXTRACTION_FAILED", message=f"{segment_id}: {exc}")
