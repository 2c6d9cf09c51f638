from __future__ import annotations

import logging
import re
from typing import Iterable

from narrator.describe.analysis import shorten_alt_text
from narrator.errors import NoAnalyses
from narrator.models import CompiledDescription, DescriptionMetadata, SegmentAnalysis

logger = logging.getLogger(__name__)

DEFAULT_MERGE_GAP_SECONDS = 2.0
MIN_SHARED_CONTEXT_WORDS = 2
MIN_CONTEXT_WORD_LENGTH = 4

SCENE_CONNECTORS = (
    "Next,",
    "Then,",
    "Subsequently,",
    "Following this,",
    "Meanwhile,",
    "At this point,",
    "Continuing,",
    "Later,",
)
MIDPOINT_CONNECTOR = "Midway through,"
FINAL_CONNECTOR = "Finally,"

_FILLER_PATTERNS = (
    re.compile(r"\b(the scene shows|we can see|there is|there are|in this scene|this video shows)\b", re.IGNORECASE),
    re.compile(r"\b(appears to be|seems to|looks like)\b", re.IGNORECASE),
)
_SENTENCE_SPLIT_RE = re.compile(r"[.!?]+")
_WHITESPACE_RE = re.compile(r"\s+")
_WORD_RE = re.compile(r"[a-z0-9']+")
_BRACKETED_RE = re.compile(r"\[.*?\]")
_PUNCTUATION_SPACING_RE = re.compile(r"([.!?])\s*([A-Z])")


def compile_descriptions(
    analyses: Iterable[SegmentAnalysis],
    *,
    merge_gap_seconds: float = DEFAULT_MERGE_GAP_SECONDS,
) -> CompiledDescription:
    """Merge related neighbouring analyses and render transcript, narrative and metadata.

    The output depends only on the input analyses, so compiling the same list
    twice yields identical text.
    """

    ordered = sorted(analyses, key=lambda item: (item.start_time, item.end_time, item.segment_id))
    if not ordered:
        raise NoAnalyses()

    merged = merge_related(ordered, merge_gap_seconds=merge_gap_seconds)
    cleaned = [_with_description(item, clean_description(item.description)) for item in merged]

    compiled = CompiledDescription(
        timestamped_text=render_timestamped(cleaned),
        clean_text=render_narrative(cleaned),
        metadata=calculate_metadata(cleaned),
    )
    logger.info(
        "Compiled %d analyses into %d scene(s), %d words",
        len(ordered),
        compiled.metadata.total_scenes,
        compiled.metadata.word_count,
    )
    return compiled


def compile_image_description(analysis: SegmentAnalysis) -> CompiledDescription:
    """Alt text plus detailed description for a single still image.

    Images have no timeline, so the timestamped transcript is empty and the
    narrative is the cleaned description on its own.
    """

    detailed = clean_description(analysis.description)
    if not detailed:
        raise NoAnalyses("The image analysis produced no description")

    alt_text = shorten_alt_text(analysis.alt_text or generate_alt_text(analysis))
    compiled = CompiledDescription(
        timestamped_text="",
        clean_text=detailed,
        metadata=DescriptionMetadata(
            total_scenes=1,
            total_duration=0.0,
            average_confidence=round(analysis.confidence, 1),
            word_count=len(detailed.split()),
        ),
        alt_text=alt_text,
    )
    logger.info("Compiled image description: %d words, alt text %d chars", compiled.metadata.word_count, len(alt_text))
    return compiled


def generate_alt_text(analysis: SegmentAnalysis) -> str:
    main_elements = ", ".join(analysis.visual_elements[:3])
    alt_text = main_elements or analysis.context or "Image"
    return alt_text[0].upper() + alt_text[1:]


def merge_related(
    ordered: list[SegmentAnalysis],
    *,
    merge_gap_seconds: float = DEFAULT_MERGE_GAP_SECONDS,
) -> list[SegmentAnalysis]:
    merged: list[SegmentAnalysis] = []
    for current in ordered:
        if merged:
            previous = merged[-1]
            gap = current.start_time - previous.end_time
            if gap <= merge_gap_seconds and are_related(previous, current):
                merged[-1] = _combine(previous, current)
                continue
        merged.append(current)
    return merged


def are_related(first: SegmentAnalysis, second: SegmentAnalysis) -> bool:
    first_items = {item.lower() for item in [*first.visual_elements, *first.actions]}
    second_items = {item.lower() for item in [*second.visual_elements, *second.actions]}
    if first_items & second_items:
        return True
    return len(_context_words(first.context) & _context_words(second.context)) >= MIN_SHARED_CONTEXT_WORDS


def merge_descriptions(first: str, second: str) -> str:
    sentences: list[str] = []
    seen: set[str] = set()
    for sentence in _SENTENCE_SPLIT_RE.split(f"{first} {second}"):
        stripped = sentence.strip()
        key = stripped.lower()
        if not stripped or key in seen:
            continue
        seen.add(key)
        sentences.append(stripped)
    return ". ".join(sentences) + "." if sentences else ""


def clean_description(description: str) -> str:
    cleaned = description
    for pattern in _FILLER_PATTERNS:
        cleaned = pattern.sub("", cleaned)
    cleaned = _WHITESPACE_RE.sub(" ", cleaned).strip().strip(",;").strip()
    if not cleaned:
        return cleaned
    cleaned = cleaned[0].upper() + cleaned[1:]
    if cleaned[-1] not in ".!?":
        cleaned += "."
    return cleaned


def format_timestamp(seconds: float) -> str:
    total_centiseconds = int(round(max(0.0, seconds) * 100))
    minutes, remainder = divmod(total_centiseconds, 6000)
    whole_seconds, centiseconds = divmod(remainder, 100)
    return f"{minutes:02d}:{whole_seconds:02d}.{centiseconds:02d}"


def render_timestamped(analyses: list[SegmentAnalysis]) -> str:
    return "\n".join(
        f"[{format_timestamp(item.start_time)} - {format_timestamp(item.end_time)}] {item.description}"
        for item in analyses
    )


def scene_connector(index: int, total: int) -> str:
    if index == total // 2:
        return MIDPOINT_CONNECTOR
    if index == total - 1:
        return FINAL_CONNECTOR
    return SCENE_CONNECTORS[index % len(SCENE_CONNECTORS)]


def render_narrative(analyses: list[SegmentAnalysis]) -> str:
    described = [item for item in analyses if item.description]
    parts: list[str] = []
    total = len(described)
    for index, item in enumerate(described):
        if index == 0:
            parts.append(item.description)
        else:
            parts.append(f"{scene_connector(index, total)} {item.description}")
    return " ".join(parts)


def calculate_metadata(analyses: list[SegmentAnalysis]) -> DescriptionMetadata:
    total_duration = sum(item.end_time - item.start_time for item in analyses)
    average_confidence = sum(item.confidence for item in analyses) / len(analyses)
    word_count = len(" ".join(item.description for item in analyses).split())
    return DescriptionMetadata(
        total_scenes=len(analyses),
        total_duration=round(total_duration, 1),
        average_confidence=round(average_confidence, 1),
        word_count=word_count,
    )


def format_for_speech(compiled: CompiledDescription) -> str:
    """Narrative text with any leftover bracketed markup removed.

    An image description is read as its alt text followed by the detail.
    """

    text = compiled.clean_text
    if compiled.alt_text:
        alt_text = compiled.alt_text if compiled.alt_text[-1] in ".!?" else f"{compiled.alt_text}."
        text = f"{alt_text} In more detail: {text}"
    text = _BRACKETED_RE.sub("", text)
    text = _WHITESPACE_RE.sub(" ", text)
    return _PUNCTUATION_SPACING_RE.sub(r"\1 \2", text).strip()


def _combine(previous: SegmentAnalysis, current: SegmentAnalysis) -> SegmentAnalysis:
    if previous.context.strip().lower() == current.context.strip().lower():
        context = previous.context
    else:
        context = "; ".join(part for part in (previous.context, current.context) if part)

    return SegmentAnalysis(
        segment_id=f"{previous.segment_id}-{current.segment_id}",
        description=merge_descriptions(previous.description, current.description),
        confidence=max(previous.confidence, current.confidence),
        visual_elements=_ordered_union(previous.visual_elements, current.visual_elements),
        actions=_ordered_union(previous.actions, current.actions),
        context=context,
        start_time=previous.start_time,
        end_time=max(previous.end_time, current.end_time),
    )


def _ordered_union(first: list[str], second: list[str]) -> list[str]:
    seen: set[str] = set()
    union: list[str] = []
    for item in [*first, *second]:
        if item.lower() not in seen:
            seen.add(item.lower())
            union.append(item)
    return union


def _context_words(context: str) -> set[str]:
    return {word for word in _WORD_RE.findall(context.lower()) if len(word) >= MIN_CONTEXT_WORD_LENGTH}


def _with_description(item: SegmentAnalysis, description: str) -> SegmentAnalysis:
    return SegmentAnalysis(
        segment_id=item.segment_id,
        description=description,
        confidence=item.confidence,
        visual_elements=list(item.visual_elements),
        actions=list(item.actions),
        context=item.context,
        start_time=item.start_time,
        end_time=item.end_time,
        alt_text=item.alt_text,
    )
