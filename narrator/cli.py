from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from time import perf_counter
from typing import Any

import typer

from narrator.config import Settings, load_settings
from narrator.errors import NarratorError
from narrator.estimates import PIPELINES, estimate_pipeline, recommend_pipeline, validate_pipeline_choice
from narrator.ingest.workspace import sweep_orphaned_workspaces
from narrator.logging_config import configure_logging
from narrator.models import JobResult
from narrator.orchestrator import Orchestrator
from narrator.pipeline_builder import build_job_poller, build_orchestrator, build_workspace_sweeper
from narrator.polling.job_poller import PollStatus

app = typer.Typer(help="Accessibility audio narration pipeline.")
config_app = typer.Typer(help="Configuration commands.")
jobs_app = typer.Typer(help="Job inspection and maintenance commands.")

app.add_typer(config_app, name="config")
app.add_typer(jobs_app, name="jobs")

logger = logging.getLogger(__name__)

STEP_LABELS = {
    "segmenting": "Detect scenes",
    "extracting": "Extract clips",
    "analyzing": "Describe clips",
    "compiling": "Compile narration",
    "synthesizing": "Synthesize audio",
}

CONFIG_OPTION = typer.Option(
    Path("configs/default.yaml"),
    "--config",
    "-c",
    envvar="NARRATOR_CONFIG",
    help="Path to YAML configuration file.",
)


class _StepReporter:
    """Echoes `[i/n] label...` lines to stderr as a polled job changes step."""

    def __init__(self) -> None:
        self.total_steps = len(STEP_LABELS)
        self._current: str | None = None
        self._started_at = 0.0

    def __call__(self, _job_id: str, status: PollStatus) -> None:
        if status.step != self._current and status.step in STEP_LABELS:
            self.finish()
            self._current = status.step
            self._started_at = perf_counter()
            typer.echo(f"[{self._index()}/{self.total_steps}] {STEP_LABELS[status.step]}...", err=True)
        if status.status == "completed":
            self.finish()

    def finish(self, *, failed: bool = False) -> None:
        if self._current is None:
            return
        elapsed = perf_counter() - self._started_at
        label = STEP_LABELS[self._current]
        if failed:
            typer.echo(f"[{self._index()}/{self.total_steps}] {label} failed after {elapsed:.1f}s", err=True)
        else:
            typer.echo(f"[{self._index()}/{self.total_steps}] {label} done in {elapsed:.1f}s", err=True)
        self._current = None

    def _index(self) -> int:
        return list(STEP_LABELS).index(self._current) + 1 if self._current else 0


def _bootstrap(config_path: Path) -> Settings:
    settings = load_settings(config_path)
    configure_logging(settings.logging)
    logger.debug("Loaded runtime settings from %s", config_path)
    return settings


async def _run_job(
    settings: Settings,
    orchestrator: Orchestrator,
    job_id: str,
    reporter: _StepReporter,
) -> JobResult:
    sweeper = build_workspace_sweeper(settings, orchestrator)
    sweeper.start()
    orchestrator.start_job(job_id)
    try:
        await orchestrator.wait_for_job(
            job_id,
            build_job_poller(settings),
            interval_seconds=settings.polling.job_wait_interval_seconds,
            timeout_seconds=settings.polling.job_wait_timeout_minutes * 60,
            on_progress=reporter,
        )
    except NarratorError:
        reporter.finish(failed=True)
        orchestrator.cancel_job(job_id, "caller stopped waiting")
        raise
    finally:
        await orchestrator.shutdown()
        await sweeper.stop()
    reporter.finish()
    return orchestrator.get_result(job_id)


@config_app.command("show")
def show_config(config_path: Path = CONFIG_OPTION) -> None:
    """Print resolved runtime configuration."""

    settings = _bootstrap(config_path)
    typer.echo(json.dumps(settings.model_dump(mode="json"), indent=2))


@app.command("run")
def run_pipeline(
    location: str = typer.Argument(..., help="Video or image location (absolute path, file://, s3://, gs:// or http(s) URL)."),
    voice_id: str | None = typer.Option(None, help="Override the configured synthesis voice."),
    config_path: Path = CONFIG_OPTION,
) -> None:
    """Narrate one video or image end to end and print a JSON summary."""

    settings = _bootstrap(config_path)
    orchestrator = build_orchestrator(settings)
    options: dict[str, Any] = {"voice_id": voice_id} if voice_id else {}

    try:
        job_id = orchestrator.create_job(location, options)
        result = asyncio.run(_run_job(settings, orchestrator, job_id, _StepReporter()))
    except (NarratorError, OSError, ValueError) as exc:
        logger.error("Pipeline failed: %s", exc)
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from exc

    typer.echo(
        json.dumps(
            {
                "status": "ok",
                "job_id": result.job_id,
                "location": location,
                **result.metadata,
            },
            indent=2,
        )
    )


@app.command("batch")
def narrate_batch(
    locations: list[str] = typer.Argument(..., help="Image locations, narrated one after another."),
    voice_id: str | None = typer.Option(None, help="Override the configured synthesis voice."),
    config_path: Path = CONFIG_OPTION,
) -> None:
    """Narrate several images and print the outcome of each one.

    Exits with status 1 only when every image failed.
    """

    settings = _bootstrap(config_path)
    orchestrator = build_orchestrator(settings)
    options: dict[str, Any] = {"voice_id": voice_id} if voice_id else {}

    try:
        batch = asyncio.run(orchestrator.run_batch(locations, options))
    except NarratorError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from exc

    typer.echo(json.dumps(batch.to_dict(), indent=2, ensure_ascii=False))
    if batch.status == "failed":
        raise typer.Exit(code=1)


@jobs_app.command("status")
def job_status(job_id: str, config_path: Path = CONFIG_OPTION) -> None:
    """Print the stored status of a job."""

    settings = _bootstrap(config_path)
    try:
        status = build_orchestrator(settings).get_job_status(job_id)
    except NarratorError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    typer.echo(json.dumps(status, indent=2))


@jobs_app.command("result")
def job_result(job_id: str, config_path: Path = CONFIG_OPTION) -> None:
    """Print the narration texts and audio location of a completed job."""

    settings = _bootstrap(config_path)
    try:
        result = build_orchestrator(settings).get_result(job_id)
    except NarratorError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    payload = {
        "job_id": job_id,
        "timestamped_text": result.timestamped_text,
        "clean_text": result.clean_text,
        "audio_path": result.metadata["artifacts"]["audio"],
        "audio_format": result.audio_format,
    }
    if result.alt_text:
        payload["alt_text"] = result.alt_text
    typer.echo(json.dumps(payload, indent=2, ensure_ascii=False))


@jobs_app.command("sweep")
def sweep(config_path: Path = CONFIG_OPTION) -> None:
    """Remove orphaned workspaces and expired finished jobs."""

    settings = _bootstrap(config_path)
    removed_workspaces = sweep_orphaned_workspaces(
        settings.pipeline.workspace_dir,
        settings.pipeline.orphan_max_age_hours * 3600,
    )
    removed_jobs = build_orchestrator(settings).cleanup_old_jobs(settings.pipeline.job_retention_hours)
    typer.echo(
        json.dumps(
            {
                "removed_workspaces": [str(path) for path in removed_workspaces],
                "removed_jobs": removed_jobs,
            },
            indent=2,
        )
    )


@app.command("estimate")
def estimate(
    duration_seconds: float | None = typer.Option(None, "--duration", help="Video duration in seconds."),
    file_size_bytes: int | None = typer.Option(None, "--file-size", help="Input size in bytes."),
    pipeline: str | None = typer.Option(None, help=f"Pipeline variant: {', '.join(PIPELINES)}. Recommended when omitted."),
    image: bool = typer.Option(False, "--image", help="Estimate a single image instead of a video."),
) -> None:
    """Print time and cost estimates for a pipeline variant."""

    reason = None
    if pipeline is None:
        recommendation = recommend_pipeline(duration_seconds=duration_seconds, file_size_bytes=file_size_bytes)
        pipeline, reason = recommendation.pipeline, recommendation.reason

    try:
        errors, warnings = validate_pipeline_choice(
            pipeline,
            duration_seconds=duration_seconds,
            file_size_bytes=file_size_bytes,
        )
        result = estimate_pipeline(
            pipeline,
            duration_seconds=duration_seconds,
            file_size_bytes=file_size_bytes,
            is_image=image,
        )
    except NarratorError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from exc

    payload = result.to_dict()
    if reason:
        payload["reason"] = reason
    payload["errors"] = errors
    payload["warnings"] = warnings
    typer.echo(json.dumps(payload, indent=2))
