from __future__ import annotations

import asyncio
import base64
import json
import logging
import re
from pathlib import Path
from typing import Any, Callable

from narrator.errors import (
    Cancelled,
    InvalidResponseFormat,
    JSONParseFailed,
    MissingRequiredFields,
    NarratorError,
)
from narrator.models import AnalysisResult, ExtractedClip, ItemError, SegmentAnalysis
from narrator.polling.cancellation import CancellationToken
from narrator.resilience.guard import DependencyGuard
from narrator.resilience.retry import RetryPolicy
from narrator.services.protocols import VisionAnalysisService

logger = logging.getLogger(__name__)

DEFAULT_INTER_CALL_DELAY_SECONDS = 0.5
DEFAULT_ANALYSIS_RETRY_POLICY = RetryPolicy(max_attempts=3, base_delay_seconds=2.0, max_delay_seconds=20.0)
REQUIRED_FIELDS = ("description", "visualElements", "actions", "context", "confidence")
ALT_TEXT_MAX_LENGTH = 125

MIME_TYPES = {
    ".mp4": "video/mp4",
    ".mov": "video/quicktime",
    ".avi": "video/x-msvideo",
    ".mkv": "video/x-matroska",
    ".webm": "video/webm",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".bmp": "image/bmp",
}
DEFAULT_MIME_TYPE = "video/mp4"

_CODE_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)
_WHITESPACE_RE = re.compile(r"\s+")

AnalysisProgressFn = Callable[[int, int], None]


def mime_type_for(path: Path) -> str:
    return MIME_TYPES.get(path.suffix.lower(), DEFAULT_MIME_TYPE)


def build_prompt(clip: ExtractedClip) -> str:
    if clip.mime_type.startswith("image/"):
        subject = "this image"
        timing = ""
        alt_text_key = f' "altText": "concise description under {ALT_TEXT_MAX_LENGTH} characters for an HTML alt attribute",\n'
    else:
        subject = "this video segment"
        timing = (
            f"Segment: {clip.segment_id}\n"
            f"Duration: {clip.duration:.2f} seconds\n"
            f"Time range: {clip.start_time:.2f}s - {clip.end_time:.2f}s\n\n"
        )
        alt_text_key = ""

    return (
        f"You are describing {subject} for a blind or low-vision audience.\n"
        "Describe what is visible and what happens, in plain language suitable for narration.\n\n"
        f"{timing}"
        "Reply with a single JSON object and nothing else, using exactly these keys:\n"
        '{"description": "two or three sentences of narration",\n'
        f"{alt_text_key}"
        ' "visualElements": ["key objects, people and settings"],\n'
        ' "actions": ["movements or events"],\n'
        ' "context": "setting, mood or purpose",\n'
        ' "confidence": 0-100}\n'
    )


def clean_description(text: str) -> str:
    cleaned = _WHITESPACE_RE.sub(" ", text).strip()
    if not cleaned:
        return cleaned
    cleaned = cleaned[0].upper() + cleaned[1:]
    if cleaned[-1] not in ".!?":
        cleaned += "."
    return cleaned


def shorten_alt_text(text: str) -> str:
    cleaned = _WHITESPACE_RE.sub(" ", text).strip()
    if len(cleaned) > ALT_TEXT_MAX_LENGTH:
        cleaned = cleaned[: ALT_TEXT_MAX_LENGTH - 3].rstrip() + "..."
    return cleaned


def parse_response(
    raw: Any,
    *,
    segment_id: str,
    start_time: float = 0.0,
    end_time: float = 0.0,
) -> SegmentAnalysis:
    """Validate a vision-service envelope and turn its JSON text into an analysis."""

    content = raw.get("content") if isinstance(raw, dict) else None
    if not isinstance(content, list) or not content:
        raise InvalidResponseFormat("Analysis response has no content blocks")
    first = content[0]
    text = first.get("text") if isinstance(first, dict) else None
    if not isinstance(text, str) or not text.strip():
        raise InvalidResponseFormat("Analysis response content is empty", code="EMPTY_CONTENT")

    body = text.strip()
    fenced = _CODE_FENCE_RE.match(body)
    if fenced:
        body = fenced.group(1)

    try:
        payload = json.loads(body)
    except json.JSONDecodeError as exc:
        raise JSONParseFailed(f"Analysis response is not valid JSON: {exc.msg}", details={"text": body[:200]}) from exc
    if not isinstance(payload, dict):
        raise JSONParseFailed("Analysis response JSON is not an object")

    missing = [name for name in REQUIRED_FIELDS if payload.get(name) in (None, "")]
    if missing:
        raise MissingRequiredFields(missing)

    try:
        confidence = float(payload["confidence"])
    except (TypeError, ValueError) as exc:
        raise JSONParseFailed("Analysis confidence is not numeric") from exc

    return SegmentAnalysis(
        segment_id=segment_id,
        description=clean_description(str(payload["description"])),
        confidence=max(0.0, min(100.0, confidence)),
        visual_elements=_as_strings(payload["visualElements"]),
        actions=_as_strings(payload["actions"]),
        context=str(payload["context"]).strip(),
        start_time=start_time,
        end_time=end_time,
        alt_text=shorten_alt_text(str(payload.get("altText") or "")),
    )


def _as_strings(value: Any) -> list[str]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if str(item).strip()]


class AnalysisEngine:
    """Describes clips one at a time through the vision-language service."""

    def __init__(
        self,
        service: VisionAnalysisService,
        *,
        guard: DependencyGuard | None = None,
        inter_call_delay_seconds: float = DEFAULT_INTER_CALL_DELAY_SECONDS,
    ) -> None:
        self.service = service
        self.guard = guard or DependencyGuard("vision", policy=DEFAULT_ANALYSIS_RETRY_POLICY)
        self.inter_call_delay_seconds = inter_call_delay_seconds

    async def analyze_all(
        self,
        clips: list[ExtractedClip],
        *,
        cancel_token: CancellationToken | None = None,
        on_progress: AnalysisProgressFn | None = None,
        release: Callable[[Path], None] | None = None,
    ) -> AnalysisResult:
        result = AnalysisResult()
        total = len(clips)

        for index, clip in enumerate(clips):
            if index > 0 and self.inter_call_delay_seconds > 0:
                if cancel_token is not None:
                    await cancel_token.sleep(self.inter_call_delay_seconds)
                else:
                    await asyncio.sleep(self.inter_call_delay_seconds)
            elif cancel_token is not None:
                cancel_token.raise_if_cancelled()

            try:
                analysis = await self.analyze_one(clip, cancel_token=cancel_token)
            except Cancelled:
                raise
            except NarratorError as exc:
                result.errors.append(
                    ItemError(item_id=clip.segment_id, code=exc.code, message=exc.message, details=exc.details or None)
                )
                logger.warning("Analysis failed for %s: %s", clip.segment_id, exc)
            except Exception as exc:
                result.errors.append(ItemError(item_id=clip.segment_id, code="ANALYSIS_FAILED", message=str(exc)))
                logger.warning("Analysis failed for %s: %s", clip.segment_id, exc)
            else:
                result.analyses.append(analysis)
            finally:
                if release is not None:
                    release(clip.local_path)

            if on_progress is not None:
                on_progress(index + 1, total)

        logger.info("Analysed %d/%d clip(s) with %d error(s)", len(result.analyses), total, len(result.errors))
        return result

    async def analyze_one(
        self,
        clip: ExtractedClip,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> SegmentAnalysis:
        media_base64 = base64.b64encode(await asyncio.to_thread(clip.local_path.read_bytes)).decode("ascii")
        prompt = build_prompt(clip)

        raw = await self.guard.call(
            lambda: asyncio.to_thread(self.service.invoke, prompt, media_base64, clip.mime_type),
            label=f"analysis of {clip.segment_id}",
            cancel_token=cancel_token,
        )
        analysis = parse_response(
            raw,
            segment_id=clip.segment_id,
            start_time=clip.start_time,
            end_time=clip.end_time,
        )
        logger.debug("Analysed %s with confidence %.1f", clip.segment_id, analysis.confidence)
        return analysis
