from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

from narrator.errors import ValidationError

PIPELINES = ("segmented", "direct", "hybrid")
DEFAULT_PIPELINE = "segmented"
DEFAULT_DURATION_SECONDS = 60.0
# Roughly 1.5 Mbit/s, used only when a file size is known but the duration is not.
ASSUMED_BYTES_PER_SECOND = 187_500
DIRECT_MAX_SIZE_BYTES = 25 * 1024 * 1024
DIRECT_MAX_DURATION_SECONDS = 180.0

# (min, max) processing minutes per minute of video.
_TIME_FACTORS = {
    "segmented": (3.0, 5.0),
    "direct": (2.0, 3.0),
    "hybrid": (2.5, 4.0),
}
# (min, max) USD per minute of video.
_COST_FACTORS = {
    "segmented": (0.15, 0.30),
    "direct": (0.50, 1.00),
    "hybrid": (0.30, 0.60),
}
_SEGMENTED_BREAKDOWN = {
    "scene_detection": (0.10, 0.10),
    "analysis": (0.05, 0.05),
    "speech": (0.01, 0.05),
}
_IMAGE_SECONDS = {
    "segmented": (10.0, 15.0),
    "direct": (5.0, 10.0),
    "hybrid": (10.0, 15.0),
}


@dataclass(slots=True)
class PipelineEstimate:
    """Rough time and cost range for processing one input with a pipeline variant."""

    pipeline: str
    duration_seconds: float
    min_minutes: float
    max_minutes: float
    min_cost: float
    max_cost: float
    breakdown: dict[str, tuple[float, float]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class PipelineRecommendation:
    pipeline: str
    reason: str


def resolve_duration(duration_seconds: float | None, file_size_bytes: int | None) -> float:
    if duration_seconds is not None and duration_seconds > 0:
        return float(duration_seconds)
    if file_size_bytes is not None and file_size_bytes > 0:
        return file_size_bytes / ASSUMED_BYTES_PER_SECOND
    return DEFAULT_DURATION_SECONDS


def estimate_pipeline(
    pipeline: str = DEFAULT_PIPELINE,
    *,
    duration_seconds: float | None = None,
    file_size_bytes: int | None = None,
    is_image: bool = False,
) -> PipelineEstimate:
    if pipeline not in PIPELINES:
        raise ValidationError(f"Unknown pipeline '{pipeline}'. Expected one of {', '.join(PIPELINES)}.")

    if is_image:
        low, high = _IMAGE_SECONDS[pipeline]
        return PipelineEstimate(
            pipeline=pipeline,
            duration_seconds=0.0,
            min_minutes=round(low / 60, 2),
            max_minutes=round(high / 60, 2),
            min_cost=0.0,
            max_cost=0.0,
        )

    duration = resolve_duration(duration_seconds, file_size_bytes)
    minutes = duration / 60
    time_low, time_high = _TIME_FACTORS[pipeline]
    cost_low, cost_high = _COST_FACTORS[pipeline]

    breakdown: dict[str, tuple[float, float]] = {}
    if pipeline == "segmented":
        breakdown = {
            name: (round(low * minutes, 4), round(high * minutes, 4))
            for name, (low, high) in _SEGMENTED_BREAKDOWN.items()
        }

    return PipelineEstimate(
        pipeline=pipeline,
        duration_seconds=round(duration, 1),
        min_minutes=round(time_low * minutes, 2),
        max_minutes=round(time_high * minutes, 2),
        min_cost=round(cost_low * minutes, 4),
        max_cost=round(cost_high * minutes, 4),
        breakdown=breakdown,
    )


def recommend_pipeline(
    *,
    duration_seconds: float | None = None,
    file_size_bytes: int | None = None,
    priority: str | None = None,
) -> PipelineRecommendation:
    """Pick a pipeline variant from input size, length and caller priority."""

    if file_size_bytes is not None and file_size_bytes > DIRECT_MAX_SIZE_BYTES:
        direct_reason = f"file size {file_size_bytes / 1024 / 1024:.0f}MB exceeds the direct limit"
    elif duration_seconds is not None and duration_seconds > DIRECT_MAX_DURATION_SECONDS:
        direct_reason = f"duration {duration_seconds:g}s exceeds the direct limit"
    else:
        direct_reason = ""
        if priority == "high":
            return PipelineRecommendation("direct", "high priority requests favour the fastest pipeline")
        if file_size_bytes is not None and file_size_bytes < 10 * 1024 * 1024:
            return PipelineRecommendation("direct", "small files are analysed fastest as a whole")
        if duration_seconds is not None and duration_seconds < 60:
            return PipelineRecommendation("direct", "short videos are analysed fastest as a whole")

    mid_size = file_size_bytes is not None and 20 * 1024 * 1024 <= file_size_bytes <= 100 * 1024 * 1024
    mid_length = duration_seconds is not None and 60 <= duration_seconds <= 300
    if mid_size or mid_length:
        return PipelineRecommendation("hybrid", "medium-sized input balances speed and segment detail")

    return PipelineRecommendation("segmented", direct_reason or "segment-level analysis is the default")


def validate_pipeline_choice(
    pipeline: str,
    *,
    duration_seconds: float | None = None,
    file_size_bytes: int | None = None,
) -> tuple[list[str], list[str]]:
    """Return `(errors, warnings)` for running `pipeline` on the described input."""

    errors: list[str] = []
    warnings: list[str] = []
    if pipeline not in PIPELINES:
        errors.append(f"Unknown pipeline '{pipeline}'")
        return errors, warnings

    if pipeline == "direct":
        if file_size_bytes is not None and file_size_bytes > DIRECT_MAX_SIZE_BYTES:
            errors.append("File is too large for the direct pipeline")
        if duration_seconds is not None and duration_seconds > DIRECT_MAX_DURATION_SECONDS:
            errors.append("Video is too long for the direct pipeline")
    if pipeline == "segmented" and duration_seconds is not None and duration_seconds < 10:
        warnings.append("Very short videos rarely benefit from scene segmentation")
    if pipeline == "hybrid" and file_size_bytes is not None and file_size_bytes < 5 * 1024 * 1024:
        warnings.append("Small files are usually faster with the direct pipeline")
    return errors, warnings
