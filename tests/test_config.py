from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError as PydanticValidationError

from narrator.config import load_settings
from narrator.pipeline_builder import VISION_CLIENTS
from narrator.services.vision import OllamaVisionClient

REPO_CONFIG = Path(__file__).resolve().parents[1] / "configs" / "default.yaml"


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("NARRATOR_CONFIG", raising=False)


def test_repository_defaults_load() -> None:
    settings = load_settings(REPO_CONFIG)

    assert settings.segmentation.confidence_threshold == 80.0
    assert settings.compilation.merge_gap_seconds == 2.0
    assert settings.synthesis.chunk_size == 2500
    assert settings.synthesis.voice_id == "Joanna"
    assert settings.extraction.bucket_root is None


def test_empty_yaml_uses_model_defaults(tmp_path: Path) -> None:
    config = tmp_path / "empty.yaml"
    config.write_text("", encoding="utf-8")

    settings = load_settings(config)

    assert settings.analysis.model == "llava:13b"
    assert settings.polling.check_timeout_seconds == 10.0


def test_environment_overrides_yaml(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config = tmp_path / "narrator.yaml"
    config.write_text("analysis:\n  model: llava:34b\nextraction:\n  concurrency: 2\n", encoding="utf-8")
    monkeypatch.setenv("NARRATOR_ANALYSIS__MODEL", "bakllava")
    monkeypatch.setenv("NARRATOR_EXTRACTION__CONCURRENCY", "6")
    monkeypatch.setenv("NARRATOR_SEGMENTATION__MERGE_GAP_SECONDS", "0.5")
    monkeypatch.setenv("NARRATOR_EXTRACTION__BUCKET_ROOT", "/srv/buckets")
    monkeypatch.setenv("NARRATOR_UNKNOWN__KEY", "ignored")

    settings = load_settings(config)

    assert settings.analysis.model == "bakllava"
    assert settings.extraction.concurrency == 6
    assert settings.segmentation.merge_gap_seconds == 0.5
    assert settings.extraction.bucket_root == Path("/srv/buckets")


def test_config_path_from_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config = tmp_path / "custom.yaml"
    config.write_text("logging:\n  level: DEBUG\n", encoding="utf-8")
    monkeypatch.setenv("NARRATOR_CONFIG", str(config))

    assert load_settings().logging.level == "DEBUG"


def test_unknown_analysis_provider_is_rejected(tmp_path: Path) -> None:
    config = tmp_path / "narrator.yaml"
    config.write_text("analysis:\n  provider: openai\n", encoding="utf-8")

    with pytest.raises(PydanticValidationError, match="provider"):
        load_settings(config)


def test_analysis_provider_selects_the_vision_client() -> None:
    settings = load_settings(REPO_CONFIG)

    assert settings.analysis.provider == "ollama"
    assert VISION_CLIENTS[settings.analysis.provider] is OllamaVisionClient
