from __future__ import annotations

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Literal

SegmentType = Literal["SHOT", "TECHNICAL_CUE"]
SEGMENT_TYPES: tuple[str, ...] = ("SHOT", "TECHNICAL_CUE")

JOB_STEPS: tuple[str, ...] = (
    "pending",
    "segmenting",
    "extracting",
    "analyzing",
    "compiling",
    "synthesizing",
    "completed",
)
JOB_STATUSES: tuple[str, ...] = ("pending", "processing", "completed", "failed")


@dataclass(slots=True)
class RawDetection:
    """One detection as reported by the scene-detection service."""

    type: str
    start_millis: float
    end_millis: float
    confidence: float


@dataclass(slots=True)
class Segment:
    """A visually coherent time range of the source video."""

    start_time: float
    end_time: float
    confidence: float
    type: str = "SHOT"

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time


@dataclass(slots=True)
class DetectionPoll:
    """Aggregated view of a scene-detection job across all result pages."""

    status: str
    segments: list[Segment] | None = None


@dataclass(slots=True)
class ExtractedClip:
    """A segment cut out of the source video into the job workspace."""

    segment_id: str
    local_path: Path
    start_time: float
    end_time: float
    duration: float
    mime_type: str = "video/mp4"


@dataclass(slots=True)
class SegmentAnalysis:
    """Natural-language description of one clip."""

    segment_id: str
    description: str
    confidence: float
    visual_elements: list[str]
    actions: list[str]
    context: str
    start_time: float = 0.0
    end_time: float = 0.0
    alt_text: str = ""


@dataclass(frozen=True, slots=True)
class DescriptionMetadata:
    total_scenes: int
    total_duration: float
    average_confidence: float
    word_count: int


@dataclass(frozen=True, slots=True)
class CompiledDescription:
    """Narrative assembled from all segment analyses of a job."""

    timestamped_text: str
    clean_text: str
    metadata: DescriptionMetadata
    alt_text: str = ""


@dataclass(slots=True)
class AudioMetadata:
    duration: float
    format: str
    voice_id: str
    text_length: int
    chunk_count: int


@dataclass(slots=True)
class AudioOutput:
    audio_bytes: bytes
    metadata: AudioMetadata


@dataclass(slots=True)
class ItemError:
    """One failed item of a stage that otherwise kept going."""

    item_id: str
    code: str
    message: str
    details: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        if payload["details"] is None:
            payload.pop("details")
        return payload


@dataclass(slots=True)
class ExtractionResult:
    clips: list[ExtractedClip] = field(default_factory=list)
    errors: list[ItemError] = field(default_factory=list)


@dataclass(slots=True)
class AnalysisResult:
    analyses: list[SegmentAnalysis] = field(default_factory=list)
    errors: list[ItemError] = field(default_factory=list)


@dataclass(slots=True)
class Job:
    """Tracking record for one narration request."""

    id: str
    video_location: str
    created_at: str
    updated_at: str
    status: str = "pending"
    step: str = "pending"
    progress: float = 0.0
    message: str = ""
    error: dict[str, Any] | None = None
    options: dict[str, Any] = field(default_factory=dict)

    def to_record(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> Job:
        names = {name for name in cls.__dataclass_fields__}
        return cls(**{key: value for key, value in record.items() if key in names})


@dataclass(slots=True)
class JobResult:
    job_id: str
    timestamped_text: str
    clean_text: str
    audio_bytes: bytes
    audio_format: str
    metadata: dict[str, Any] = field(default_factory=dict)
    alt_text: str = ""


@dataclass(slots=True)
class BatchImage:
    item_id: str
    location: str


@dataclass(slots=True)
class BatchItemResult:
    """Outcome of one image of a batch; exactly one of `result` and `error` is set."""

    item_id: str
    status: str
    job_id: str | None = None
    result: dict[str, Any] | None = None
    error: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}


@dataclass(slots=True)
class BatchResult:
    """Per-image outcomes of a batch and the aggregate `completed`/`partial`/`failed` status."""

    batch_id: str
    results: list[BatchItemResult] = field(default_factory=list)

    @property
    def total_images(self) -> int:
        return len(self.results)

    @property
    def completed_count(self) -> int:
        return sum(1 for item in self.results if item.status == "completed")

    @property
    def failed_count(self) -> int:
        return sum(1 for item in self.results if item.status == "failed")

    @property
    def status(self) -> str:
        if self.results and self.completed_count == self.total_images:
            return "completed"
        if self.failed_count == self.total_images:
            return "failed"
        return "partial"

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "status": self.status,
            "total_images": self.total_images,
            "completed": self.completed_count,
            "failed": self.failed_count,
            "results": [item.to_dict() for item in self.results],
        }
