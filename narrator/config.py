from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field

DEFAULT_CONFIG_PATH = Path("configs/default.yaml")
ENV_PREFIX = "NARRATOR_"


class PipelineSettings(BaseModel):
    workspace_dir: Path = Path("data/workspaces")
    output_dir: Path = Path("data/outputs")
    store_dir: Path = Path("data/jobs")
    orphan_max_age_hours: float = 24.0
    sweep_interval_minutes: float = 30.0
    job_retention_hours: float = 24.0


class SegmentationSettings(BaseModel):
    confidence_threshold: float = 80.0
    merge_gap_seconds: float = 1.0
    poll_interval_seconds: float = 5.0
    timeout_minutes: float = 30.0


class SceneDetectionSettings(BaseModel):
    endpoint: str = "http://localhost:8090"
    timeout_seconds: float = 30.0


class ExtractionSettings(BaseModel):
    concurrency: int = 3
    ffmpeg_binary: str = "ffmpeg"
    preset: str = "fast"
    crf: int = 23
    bucket_root: Path | None = None
    download_timeout_seconds: float = 300.0


class AnalysisSettings(BaseModel):
    provider: Literal["ollama"] = "ollama"
    model: str = "llava:13b"
    endpoint: str = "http://localhost:11434"
    timeout_seconds: float = 120.0
    inter_call_delay_ms: int = 500
    retry_base_delay_seconds: float = 2.0
    max_attempts: int = 3
    requests_per_minute: float = 60.0


class CompilationSettings(BaseModel):
    merge_gap_seconds: float = 2.0


class SynthesisSettings(BaseModel):
    endpoint: str = "http://localhost:8880"
    model: str = "tts-1"
    voice_id: str = "Joanna"
    output_format: str = "mp3"
    sample_rate: int = 22050
    chunk_size: int = 2500
    inter_chunk_delay_ms: int = 100
    timeout_seconds: float = 60.0
    retry_base_delay_seconds: float = 1.0
    max_attempts: int = 3
    requests_per_minute: float = 120.0


class ResilienceSettings(BaseModel):
    retry_max_delay_seconds: float = 10.0
    retry_multiplier: float = 2.0
    retry_jitter_ratio: float = 0.1
    breaker_failure_threshold: int = 5
    breaker_reset_timeout_seconds: float = 30.0


class PollingSettings(BaseModel):
    check_timeout_seconds: float = 10.0
    check_max_attempts: int = 3
    job_wait_interval_seconds: float = 1.0
    job_wait_timeout_minutes: float = 120.0


class LoggingSettings(BaseModel):
    level: str = "INFO"


class Settings(BaseModel):
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)
    segmentation: SegmentationSettings = Field(default_factory=SegmentationSettings)
    scene_detection: SceneDetectionSettings = Field(default_factory=SceneDetectionSettings)
    extraction: ExtractionSettings = Field(default_factory=ExtractionSettings)
    analysis: AnalysisSettings = Field(default_factory=AnalysisSettings)
    compilation: CompilationSettings = Field(default_factory=CompilationSettings)
    synthesis: SynthesisSettings = Field(default_factory=SynthesisSettings)
    resilience: ResilienceSettings = Field(default_factory=ResilienceSettings)
    polling: PollingSettings = Field(default_factory=PollingSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load typed settings from YAML with environment-variable overrides."""

    resolved_path = Path(
        config_path
        or os.getenv(f"{ENV_PREFIX}CONFIG")
        or DEFAULT_CONFIG_PATH
    )
    raw_config = yaml.safe_load(resolved_path.read_text(encoding="utf-8")) or {}
    data = Settings.model_validate(raw_config).model_dump(mode="python")

    for key, raw_value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue

        suffix = key[len(ENV_PREFIX) :]
        if suffix == "CONFIG":
            continue

        path = [part.lower() for part in suffix.split("__")]
        _apply_override(data, path, raw_value)

    return Settings.model_validate(data)


def _apply_override(data: dict[str, Any], path: list[str], raw_value: str) -> None:
    current: Any = data
    for segment in path[:-1]:
        if not isinstance(current, dict) or segment not in current:
            return
        current = current[segment]

    if not isinstance(current, dict):
        return

    final_key = path[-1]
    if final_key not in current:
        return

    current[final_key] = _coerce_value(raw_value, current[final_key])


def _coerce_value(raw_value: str, existing_value: Any) -> Any:
    if isinstance(existing_value, bool):
        return raw_value.lower() in {"1", "true", "yes", "on"}
    if isinstance(existing_value, int) and not isinstance(existing_value, bool):
        return int(raw_value)
    if isinstance(existing_value, float):
        return float(raw_value)
    if isinstance(existing_value, list | dict):
        return json.loads(raw_value)
    if isinstance(existing_value, Path):
        return Path(raw_value)
    if existing_value is None:
        return raw_value or None
    return raw_value
