from __future__ import annotations

import asyncio
import json
import logging
import shutil
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Iterable
from uuid import uuid4

from narrator.describe.analysis import AnalysisEngine, mime_type_for
from narrator.describe.compilation import DEFAULT_MERGE_GAP_SECONDS, compile_descriptions, compile_image_description
from narrator.errors import (
    Cancelled,
    InvalidLocation,
    JobNotFound,
    JobStateError,
    NarratorError,
    ResultNotReady,
    StageExhausted,
    ValidationError,
)
from narrator.ingest.extraction import ExtractionEngine
from narrator.ingest.segmentation import (
    DEFAULT_TIMEOUT_SECONDS,
    SegmentationEngine,
    is_image_location,
    validate_location,
)
from narrator.ingest.workspace import JobWorkspace
from narrator.models import (
    JOB_STEPS,
    AudioOutput,
    BatchImage,
    BatchItemResult,
    BatchResult,
    CompiledDescription,
    ExtractedClip,
    ItemError,
    Job,
    JobResult,
)
from narrator.polling.cancellation import CancellationToken
from narrator.polling.job_poller import JobPoller, PollResult, PollStatus
from narrator.speech.synthesis import SynthesisEngine
from narrator.store import JobStore

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = ("completed", "failed")

# (progress when the step starts, progress when it ends)
STEP_PROGRESS: dict[str, tuple[float, float]] = {
    "pending": (0.0, 0.0),
    "segmenting": (10.0, 30.0),
    "extracting": (30.0, 50.0),
    "analyzing": (50.0, 80.0),
    "compiling": (80.0, 85.0),
    "synthesizing": (85.0, 95.0),
    "completed": (100.0, 100.0),
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _batch_items(images: Iterable[BatchImage | str]) -> list[BatchImage]:
    items = [
        image if isinstance(image, BatchImage) else BatchImage(item_id=f"image-{index}", location=image)
        for index, image in enumerate(images)
    ]
    if not items:
        raise ValidationError("A batch needs at least one image", code="EMPTY_BATCH")
    return items


class Orchestrator:
    """Runs jobs through segmentation, extraction, analysis, compilation and synthesis.

    The orchestrator is the only writer of job records. Every step transition is
    persisted before the stage runs, progress never moves backwards, and a job
    that reached `completed` or `failed` is never touched again.
    """

    def __init__(
        self,
        *,
        store: JobStore,
        segmentation: SegmentationEngine,
        extraction: ExtractionEngine,
        analysis: AnalysisEngine,
        synthesis: SynthesisEngine,
        workspace_root: str | Path,
        output_dir: str | Path,
        segmentation_timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        merge_gap_seconds: float = DEFAULT_MERGE_GAP_SECONDS,
        now: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.store = store
        self.segmentation = segmentation
        self.extraction = extraction
        self.analysis = analysis
        self.synthesis = synthesis
        self.workspace_root = Path(workspace_root)
        self.output_dir = Path(output_dir)
        self.segmentation_timeout_seconds = segmentation_timeout_seconds
        self.merge_gap_seconds = merge_gap_seconds
        self._now = now
        self._tokens: dict[str, CancellationToken] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._workspaces: dict[str, Path] = {}
        self._batch_tasks: set[asyncio.Task[BatchResult]] = set()

    # Job lifecycle

    def create_job(self, video_location: str, options: dict[str, Any] | None = None) -> str:
        location = validate_location(video_location)
        timestamp = self._now().isoformat()
        job = Job(
            id=uuid4().hex,
            video_location=location,
            created_at=timestamp,
            updated_at=timestamp,
            message="Job queued",
            options=dict(options or {}),
        )
        self.store.put(job.id, job.to_record())
        logger.info("Created job %s for %s", job.id, location)
        return job.id

    async def submit_job(self, video_location: str, options: dict[str, Any] | None = None) -> str:
        job_id = self.create_job(video_location, options)
        self.start_job(job_id)
        return job_id

    def start_job(self, job_id: str) -> asyncio.Task[None]:
        if job_id in self._tasks:
            raise JobStateError(f"Job {job_id} is already running")
        self._tokens.setdefault(job_id, CancellationToken())
        task = asyncio.create_task(self._run_in_background(job_id), name=f"narrator-job-{job_id}")
        self._tasks[job_id] = task
        task.add_done_callback(lambda _task: self._tasks.pop(job_id, None))
        return task

    async def run_job(self, job_id: str, *, cancel_token: CancellationToken | None = None) -> JobResult:
        record = self._require(job_id)
        if record["status"] != "pending":
            raise JobStateError(f"Job {job_id} has already been started (status: {record['status']})")

        token = cancel_token or self._tokens.get(job_id) or CancellationToken()
        self._tokens[job_id] = token
        job = Job.from_record(record)

        try:
            workspace = JobWorkspace.create(self.workspace_root, job_id)
            self._workspaces[job_id] = workspace.root
            with workspace:
                return await self._execute(job, workspace, token)
        except NarratorError as exc:
            logger.error("Job %s failed: %s", job_id, exc)
            self._fail(job_id, exc.to_payload())
            raise
        except asyncio.CancelledError:
            self._fail(job_id, Cancelled("Job task was cancelled").to_payload())
            raise
        except Exception as exc:
            logger.exception("Job %s failed unexpectedly", job_id)
            error = NarratorError(
                f"Unexpected error: {exc}",
                code="INTERNAL_ERROR",
                details={"type": type(exc).__name__},
            )
            self._fail(job_id, error.to_payload())
            raise error from exc
        finally:
            self._tokens.pop(job_id, None)
            self._workspaces.pop(job_id, None)

    # Image batches

    async def submit_batch(
        self,
        images: Iterable[BatchImage | str],
        options: dict[str, Any] | None = None,
    ) -> asyncio.Task[BatchResult]:
        items = _batch_items(images)
        task = asyncio.create_task(self.run_batch(items, options), name="narrator-batch")
        self._batch_tasks.add(task)
        task.add_done_callback(self._batch_tasks.discard)
        return task

    async def run_batch(
        self,
        images: Iterable[BatchImage | str],
        options: dict[str, Any] | None = None,
        *,
        batch_id: str | None = None,
    ) -> BatchResult:
        """Narrate images one after another, collecting a result or an error per image.

        One failing image never stops the batch. The aggregate status is
        `completed` when every image succeeded, `failed` when none did, and
        `partial` otherwise.
        """

        items = _batch_items(images)
        batch = BatchResult(batch_id=batch_id or uuid4().hex)
        logger.info("Starting batch %s with %d image(s)", batch.batch_id, len(items))

        for item in items:
            batch.results.append(await self._run_batch_item(item, options))

        logger.info(
            "Batch %s finished %s: %d completed, %d failed",
            batch.batch_id,
            batch.status,
            batch.completed_count,
            batch.failed_count,
        )
        return batch

    async def _run_batch_item(self, item: BatchImage, options: dict[str, Any] | None) -> BatchItemResult:
        try:
            location = validate_location(item.location)
            if not is_image_location(location):
                raise InvalidLocation(location, "batch items must be images")
            job_id = self.create_job(location, options)
        except NarratorError as exc:
            logger.warning("Batch item %s rejected: %s", item.item_id, exc)
            return BatchItemResult(item_id=item.item_id, status="failed", error=exc.to_payload())

        try:
            result = await self.run_job(job_id)
        except NarratorError as exc:
            return BatchItemResult(item_id=item.item_id, status="failed", job_id=job_id, error=exc.to_payload())

        return BatchItemResult(
            item_id=item.item_id,
            status="completed",
            job_id=job_id,
            result={"alt_text": result.alt_text, "detailed_description": result.clean_text, **result.metadata},
        )

    def cancel_job(self, job_id: str, reason: str = "cancelled by caller") -> bool:
        record = self._require(job_id)
        if record["status"] in TERMINAL_STATUSES:
            return False

        token = self._tokens.get(job_id)
        if token is not None:
            logger.info("Cancelling job %s", job_id)
            token.cancel(reason)
            return True

        self._fail(job_id, Cancelled(f"Operation cancelled: {reason}").to_payload())
        return True

    async def shutdown(self) -> None:
        for token in list(self._tokens.values()):
            token.cancel("orchestrator shutting down")
        tasks = [*self._tasks.values(), *self._batch_tasks]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # Queries

    def get_job_status(self, job_id: str) -> dict[str, Any]:
        record = self._require(job_id)
        status = {
            "job_id": job_id,
            "status": record["status"],
            "step": record["step"],
            "progress": record["progress"],
            "message": record["message"],
            "updated_at": record["updated_at"],
        }
        if record.get("error"):
            status["error"] = record["error"]
        if record.get("stage_errors"):
            status["stage_errors"] = record["stage_errors"]
        return status

    def get_result(self, job_id: str) -> JobResult:
        record = self._require(job_id)
        if record["status"] != "completed" or not record.get("result"):
            raise ResultNotReady(
                f"Job {job_id} has no result yet (status: {record['status']})",
                details={"job_id": job_id, "status": record["status"]},
            )

        result = record["result"]
        artifacts = result["artifacts"]
        return JobResult(
            job_id=job_id,
            timestamped_text=Path(artifacts["timestamped_text"]).read_text(encoding="utf-8"),
            clean_text=Path(artifacts["clean_text"]).read_text(encoding="utf-8"),
            audio_bytes=Path(artifacts["audio"]).read_bytes(),
            audio_format=result["audio"]["format"],
            metadata=result,
            alt_text=result.get("alt_text", ""),
        )

    async def wait_for_job(
        self,
        job_id: str,
        poller: JobPoller,
        *,
        interval_seconds: float = 1.0,
        timeout_seconds: float = 3600.0,
        on_progress: Callable[[str, PollStatus], None] | None = None,
    ) -> PollResult:
        self._require(job_id)

        async def check() -> PollStatus:
            record = self._require(job_id)
            status = record["status"] if record["status"] in TERMINAL_STATUSES else "processing"
            return PollStatus(
                status=status,
                step=record["step"],
                progress=record["progress"],
                message=record["message"],
                error=record.get("error"),
            )

        return await poller.poll(
            job_id,
            check,
            interval_seconds=interval_seconds,
            timeout_seconds=timeout_seconds,
            on_progress=on_progress,
        )

    def active_workspaces(self) -> list[Path]:
        return list(self._workspaces.values())

    def cleanup_old_jobs(self, max_age_hours: float = 24.0) -> list[str]:
        """Drop finished jobs (and their artifacts) last updated more than `max_age_hours` ago."""

        cutoff = self._now() - timedelta(hours=max_age_hours)
        removed: list[str] = []
        for job_id in self.store.list_ids():
            record = self.store.get(job_id)
            if record is None or record.get("status") not in TERMINAL_STATUSES:
                continue
            if datetime.fromisoformat(record["updated_at"]) > cutoff:
                continue
            self.store.delete(job_id)
            shutil.rmtree(self.output_dir / job_id, ignore_errors=True)
            removed.append(job_id)

        if removed:
            logger.info("Removed %d finished job(s) older than %.1fh", len(removed), max_age_hours)
        return removed

    # Pipeline

    async def _execute(self, job: Job, workspace: JobWorkspace, token: CancellationToken) -> JobResult:
        is_image = is_image_location(job.video_location)
        if is_image:
            clips = await self._prepare_image(job, workspace, token)
        else:
            clips = await self._prepare_video(job, workspace, token)

        self._advance(job.id, "analyzing", f"Describing {len(clips)} clip(s)")
        analysis = await self.analysis.analyze_all(
            clips,
            cancel_token=token,
            on_progress=self._stage_progress(job.id, "analyzing", "Described"),
            release=workspace.release,
        )
        self._record_stage_errors(job.id, "analyzing", analysis.errors)
        if not analysis.analyses:
            raise StageExhausted(
                "analyzing",
                "Every clip failed analysis",
                errors=[error.to_dict() for error in analysis.errors],
            )

        self._advance(job.id, "compiling", "Compiling narration")
        if is_image:
            compiled = compile_image_description(analysis.analyses[0])
        else:
            compiled = compile_descriptions(analysis.analyses, merge_gap_seconds=self.merge_gap_seconds)

        self._advance(job.id, "synthesizing", "Synthesizing audio")
        audio = await self.synthesis.synthesize(
            compiled,
            voice_id=job.options.get("voice_id"),
            cancel_token=token,
            on_progress=self._stage_progress(job.id, "synthesizing", "Synthesized chunk"),
        )

        result = self._write_artifacts(job.id, compiled, audio)
        self.store.merge(job.id, {"result": result})
        self._advance(job.id, "completed", "Narration ready")
        logger.info("Job %s completed with %d scene(s)", job.id, compiled.metadata.total_scenes)

        return JobResult(
            job_id=job.id,
            timestamped_text=compiled.timestamped_text,
            clean_text=compiled.clean_text,
            audio_bytes=audio.audio_bytes,
            audio_format=audio.metadata.format,
            metadata=result,
            alt_text=compiled.alt_text,
        )

    async def _prepare_video(self, job: Job, workspace: JobWorkspace, token: CancellationToken) -> list[ExtractedClip]:
        self._advance(job.id, "segmenting", "Detecting scenes")
        segments = await self.segmentation.run_to_completion(
            job.video_location,
            timeout_seconds=self.segmentation_timeout_seconds,
            cancel_token=token,
            on_progress=lambda _external_id, status: self._progress(
                job.id, 20.0, status.message or "Detecting scenes"
            ),
        )
        if not segments:
            raise StageExhausted("segmenting", "Scene detection found no usable segments")

        self._advance(job.id, "extracting", f"Extracting {len(segments)} segment(s)")
        extraction = await self.extraction.extract_all(
            job.video_location,
            segments,
            workspace,
            cancel_token=token,
            on_progress=self._stage_progress(job.id, "extracting", "Extracted"),
        )
        self._record_stage_errors(job.id, "extracting", extraction.errors)
        if not extraction.clips:
            raise StageExhausted(
                "extracting",
                "Every segment failed to extract",
                errors=[error.to_dict() for error in extraction.errors],
            )
        return extraction.clips

    async def _prepare_image(self, job: Job, workspace: JobWorkspace, token: CancellationToken) -> list[ExtractedClip]:
        self._advance(job.id, "segmenting", "Image input; scene detection skipped")
        self._advance(job.id, "extracting", "Fetching image")
        path = await self.extraction.fetch_source(job.video_location, workspace, cancel_token=token)
        return [
            ExtractedClip(
                segment_id="image-0",
                local_path=path,
                start_time=0.0,
                end_time=0.0,
                duration=0.0,
                mime_type=mime_type_for(path),
            )
        ]

    def _write_artifacts(self, job_id: str, compiled: CompiledDescription, audio: AudioOutput) -> dict[str, Any]:
        job_dir = self.output_dir / job_id
        job_dir.mkdir(parents=True, exist_ok=True)

        timestamped_path = job_dir / "description_timestamped.txt"
        clean_path = job_dir / "description.txt"
        audio_path = job_dir / f"description.{audio.metadata.format}"
        manifest_path = job_dir / "manifest.json"

        timestamped_path.write_text(compiled.timestamped_text, encoding="utf-8")
        clean_path.write_text(compiled.clean_text, encoding="utf-8")
        audio_path.write_bytes(audio.audio_bytes)

        result = {
            "description": {
                "total_scenes": compiled.metadata.total_scenes,
                "total_duration": compiled.metadata.total_duration,
                "average_confidence": compiled.metadata.average_confidence,
                "word_count": compiled.metadata.word_count,
            },
            "audio": {
                "duration": audio.metadata.duration,
                "format": audio.metadata.format,
                "voice_id": audio.metadata.voice_id,
                "text_length": audio.metadata.text_length,
                "chunk_count": audio.metadata.chunk_count,
                "size_bytes": len(audio.audio_bytes),
            },
            "artifacts": {
                "timestamped_text": str(timestamped_path),
                "clean_text": str(clean_path),
                "audio": str(audio_path),
                "manifest": str(manifest_path),
            },
        }
        if compiled.alt_text:
            alt_text_path = job_dir / "alt_text.txt"
            alt_text_path.write_text(compiled.alt_text, encoding="utf-8")
            result["alt_text"] = compiled.alt_text
            result["artifacts"]["alt_text"] = str(alt_text_path)
        manifest_path.write_text(json.dumps({"job_id": job_id, **result}, indent=2), encoding="utf-8")
        return result

    # Record updates

    def _advance(self, job_id: str, step: str, message: str) -> None:
        record = self._require(job_id)
        if record["status"] in TERMINAL_STATUSES:
            raise JobStateError(f"Job {job_id} is already {record['status']}")
        if JOB_STEPS.index(step) < JOB_STEPS.index(record["step"]):
            raise JobStateError(f"Job {job_id} cannot move from {record['step']} back to {step}")

        progress = max(float(record["progress"]), STEP_PROGRESS[step][0])
        self.store.merge(
            job_id,
            {
                "status": "completed" if step == "completed" else "processing",
                "step": step,
                "progress": progress,
                "message": message,
                "updated_at": self._now().isoformat(),
            },
        )
        logger.info("Job %s -> %s (%.0f%%): %s", job_id, step, progress, message)

    def _progress(self, job_id: str, progress: float, message: str) -> None:
        record = self._require(job_id)
        if record["status"] in TERMINAL_STATUSES:
            return
        self.store.merge(
            job_id,
            {
                "progress": max(float(record["progress"]), round(progress, 1)),
                "message": message,
                "updated_at": self._now().isoformat(),
            },
        )

    def _stage_progress(self, job_id: str, step: str, verb: str) -> Callable[[int, int], None]:
        start, end = STEP_PROGRESS[step]

        def report(done: int, total: int) -> None:
            fraction = done / total if total else 1.0
            self._progress(job_id, start + (end - start) * fraction, f"{verb} {done}/{total}")

        return report

    def _record_stage_errors(self, job_id: str, stage: str, errors: list[ItemError]) -> None:
        if errors:
            self.store.merge(job_id, {"stage_errors": {stage: [error.to_dict() for error in errors]}})

    def _fail(self, job_id: str, error: dict[str, Any]) -> None:
        record = self.store.get(job_id)
        if record is None or record["status"] in TERMINAL_STATUSES:
            return
        self.store.merge(
            job_id,
            {
                "status": "failed",
                "message": error.get("message", "Job failed"),
                "error": error,
                "updated_at": self._now().isoformat(),
            },
        )

    def _require(self, job_id: str) -> dict[str, Any]:
        record = self.store.get(job_id)
        if record is None:
            raise JobNotFound(job_id)
        return record

    async def _run_in_background(self, job_id: str) -> None:
        try:
            await self.run_job(job_id)
        except NarratorError as exc:
            # Already recorded on the job record by run_job.
            logger.debug("Background job %s ended with %s", job_id, exc.code)
