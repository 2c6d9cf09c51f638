from __future__ import annotations

from narrator.config import Settings
from narrator.describe.analysis import AnalysisEngine
from narrator.ingest.extraction import ExtractionEngine
from narrator.ingest.segmentation import SegmentationEngine
from narrator.ingest.workspace import WorkspaceSweeper
from narrator.orchestrator import Orchestrator
from narrator.polling.job_poller import JobPoller
from narrator.resilience.circuit_breaker import CircuitBreaker
from narrator.resilience.guard import DependencyGuard
from narrator.resilience.rate_limiter import TokenBucketRateLimiter
from narrator.resilience.retry import RetryPolicy
from narrator.services.media_store import LocalMediaStore
from narrator.services.scene_detection import HttpSceneDetectionClient
from narrator.services.speech import HttpSpeechClient
from narrator.services.transcoder import FfmpegTranscoder
from narrator.services.vision import OllamaVisionClient
from narrator.speech.synthesis import SynthesisEngine
from narrator.store import JobStore, JsonFileJobStore

VISION_CLIENTS = {"ollama": OllamaVisionClient}


def build_retry_policy(settings: Settings, *, max_attempts: int = 3, base_delay_seconds: float = 1.0) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=max_attempts,
        base_delay_seconds=base_delay_seconds,
        max_delay_seconds=settings.resilience.retry_max_delay_seconds,
        multiplier=settings.resilience.retry_multiplier,
        jitter_ratio=settings.resilience.retry_jitter_ratio,
    )


def build_breaker(settings: Settings, name: str) -> CircuitBreaker:
    return CircuitBreaker(
        name,
        failure_threshold=settings.resilience.breaker_failure_threshold,
        reset_timeout_seconds=settings.resilience.breaker_reset_timeout_seconds,
    )


def build_job_poller(settings: Settings) -> JobPoller:
    return JobPoller(
        check_timeout_seconds=settings.polling.check_timeout_seconds,
        check_retry_policy=build_retry_policy(settings, max_attempts=settings.polling.check_max_attempts),
    )


def build_orchestrator(settings: Settings, *, store: JobStore | None = None) -> Orchestrator:
    """Wire every engine to its service adapter with one guard per dependency."""

    transcoder = FfmpegTranscoder(
        settings.extraction.ffmpeg_binary,
        preset=settings.extraction.preset,
        crf=settings.extraction.crf,
    )
    media_store = LocalMediaStore(
        bucket_root=settings.extraction.bucket_root,
        timeout_seconds=settings.extraction.download_timeout_seconds,
    )

    segmentation = SegmentationEngine(
        HttpSceneDetectionClient(
            settings.scene_detection.endpoint,
            timeout_seconds=settings.scene_detection.timeout_seconds,
            min_confidence=settings.segmentation.confidence_threshold,
        ),
        guard=DependencyGuard(
            "scene-detection",
            policy=build_retry_policy(settings),
            breaker=build_breaker(settings, "scene-detection"),
        ),
        poller=build_job_poller(settings),
        confidence_threshold=settings.segmentation.confidence_threshold,
        merge_gap_seconds=settings.segmentation.merge_gap_seconds,
        poll_interval_seconds=settings.segmentation.poll_interval_seconds,
    )

    extraction = ExtractionEngine(
        transcoder,
        media_store,
        fetch_guard=DependencyGuard("media-store", policy=build_retry_policy(settings)),
        concurrency=settings.extraction.concurrency,
    )

    analysis = AnalysisEngine(
        VISION_CLIENTS[settings.analysis.provider](
            endpoint=settings.analysis.endpoint,
            model=settings.analysis.model,
            timeout_seconds=settings.analysis.timeout_seconds,
            frame_grabber=transcoder.poster_frame,
        ),
        guard=DependencyGuard(
            "vision",
            policy=build_retry_policy(
                settings,
                max_attempts=settings.analysis.max_attempts,
                base_delay_seconds=settings.analysis.retry_base_delay_seconds,
            ),
            breaker=build_breaker(settings, "vision"),
            limiter=TokenBucketRateLimiter.per_minute(settings.analysis.requests_per_minute, name="vision"),
        ),
        inter_call_delay_seconds=settings.analysis.inter_call_delay_ms / 1000,
    )

    synthesis = SynthesisEngine(
        HttpSpeechClient(
            endpoint=settings.synthesis.endpoint,
            model=settings.synthesis.model,
            sample_rate=settings.synthesis.sample_rate,
            timeout_seconds=settings.synthesis.timeout_seconds,
        ),
        guard=DependencyGuard(
            "speech",
            policy=build_retry_policy(
                settings,
                max_attempts=settings.synthesis.max_attempts,
                base_delay_seconds=settings.synthesis.retry_base_delay_seconds,
            ),
            breaker=build_breaker(settings, "speech"),
            limiter=TokenBucketRateLimiter.per_minute(settings.synthesis.requests_per_minute, name="speech"),
        ),
        voice_id=settings.synthesis.voice_id,
        output_format=settings.synthesis.output_format,
        chunk_size=settings.synthesis.chunk_size,
        inter_chunk_delay_seconds=settings.synthesis.inter_chunk_delay_ms / 1000,
    )

    return Orchestrator(
        store=store or JsonFileJobStore(settings.pipeline.store_dir),
        segmentation=segmentation,
        extraction=extraction,
        analysis=analysis,
        synthesis=synthesis,
        workspace_root=settings.pipeline.workspace_dir,
        output_dir=settings.pipeline.output_dir,
        segmentation_timeout_seconds=settings.segmentation.timeout_minutes * 60,
        merge_gap_seconds=settings.compilation.merge_gap_seconds,
    )


def build_workspace_sweeper(settings: Settings, orchestrator: Orchestrator) -> WorkspaceSweeper:
    return WorkspaceSweeper(
        settings.pipeline.workspace_dir,
        max_age_seconds=settings.pipeline.orphan_max_age_hours * 3600,
        interval_seconds=settings.pipeline.sweep_interval_minutes * 60,
        active_workspaces=orchestrator.active_workspaces,
    )
