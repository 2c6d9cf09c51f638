from __future__ import annotations

import asyncio
import logging
import re
from typing import Callable

from narrator.describe.compilation import format_for_speech
from narrator.errors import Cancelled, ChunkSynthesisFailed, ValidationError
from narrator.models import AudioMetadata, AudioOutput, CompiledDescription
from narrator.polling.cancellation import CancellationToken
from narrator.resilience.guard import DependencyGuard
from narrator.resilience.retry import RetryPolicy
from narrator.services.protocols import SpeechSynthesisService

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 2500
DEFAULT_VOICE_ID = "Joanna"
DEFAULT_OUTPUT_FORMAT = "mp3"
DEFAULT_INTER_CHUNK_DELAY_SECONDS = 0.1
DEFAULT_SYNTHESIS_RETRY_POLICY = RetryPolicy(max_attempts=3, base_delay_seconds=1.0, max_delay_seconds=10.0)
WORDS_PER_MINUTE = 150

# The trailing period of an abbreviation only survives at the very end of the text.
_ABBREVIATIONS = (
    (re.compile(r"\bU\.S\.(?:A\b\.?)?$"), "United States."),
    (re.compile(r"\bU\.S\.(?:A\b\.?)?"), "United States"),
    (re.compile(r"\bUK\b"), "United Kingdom"),
    (re.compile(r"\b(?i:e\.g\.)"), "for example"),
    (re.compile(r"\b(?i:i\.e\.)"), "that is"),
    (re.compile(r"\b(?i:etc)\.$"), "etcetera."),
    (re.compile(r"\b(?i:etc)\."), "etcetera"),
)
_MARKUP_RE = re.compile(r"[\[\]{}<>]")
_WHITESPACE_RE = re.compile(r"\s+")
_SPACE_BEFORE_PUNCTUATION_RE = re.compile(r"\s+([.!?,;:])")
_SPACE_AFTER_PUNCTUATION_RE = re.compile(r"([.!?,;:])(?=[A-Z])")
_SENTENCE_BOUNDARY_RE = re.compile(r"(?<=[.!?])\s+")

SynthesisProgressFn = Callable[[int, int], None]


def prepare_text_for_speech(text: str) -> str:
    prepared = _MARKUP_RE.sub("", text)
    prepared = _WHITESPACE_RE.sub(" ", prepared).strip()
    for pattern, replacement in _ABBREVIATIONS:
        prepared = pattern.sub(replacement, prepared)
    prepared = _SPACE_BEFORE_PUNCTUATION_RE.sub(r"\1", prepared)
    prepared = _SPACE_AFTER_PUNCTUATION_RE.sub(r"\1 ", prepared)
    return _WHITESPACE_RE.sub(" ", prepared).strip()


def split_into_chunks(text: str, limit: int = DEFAULT_CHUNK_SIZE) -> list[str]:
    """Pack whole sentences into chunks of at most `limit` characters.

    A sentence longer than `limit` is split on word boundaries, and a single word
    longer than `limit` is cut into fixed-size pieces.
    """

    if limit <= 0:
        raise ValueError("limit must be positive")
    text = text.strip()
    if not text:
        return []
    if len(text) <= limit:
        return [text]

    chunks: list[str] = []
    current = ""
    for sentence in _SENTENCE_BOUNDARY_RE.split(text):
        sentence = sentence.strip()
        if not sentence:
            continue
        if len(sentence) > limit:
            if current:
                chunks.append(current)
                current = ""
            chunks.extend(_split_on_words(sentence, limit))
            continue
        if current and len(current) + 1 + len(sentence) > limit:
            chunks.append(current)
            current = sentence
        else:
            current = f"{current} {sentence}" if current else sentence

    if current:
        chunks.append(current)
    return chunks


def _split_on_words(sentence: str, limit: int) -> list[str]:
    pieces: list[str] = []
    current = ""
    for word in sentence.split(" "):
        while len(word) > limit:
            if current:
                pieces.append(current)
                current = ""
            pieces.append(word[:limit])
            word = word[limit:]
        if not word:
            continue
        if current and len(current) + 1 + len(word) > limit:
            pieces.append(current)
            current = word
        else:
            current = f"{current} {word}" if current else word
    if current:
        pieces.append(current)
    return pieces


def estimate_duration_seconds(text: str) -> float:
    words = len(text.split())
    return round(words / WORDS_PER_MINUTE * 60, 1)


class SynthesisEngine:
    """Turns a compiled narrative into one concatenated audio stream."""

    def __init__(
        self,
        service: SpeechSynthesisService,
        *,
        guard: DependencyGuard | None = None,
        voice_id: str = DEFAULT_VOICE_ID,
        output_format: str = DEFAULT_OUTPUT_FORMAT,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        inter_chunk_delay_seconds: float = DEFAULT_INTER_CHUNK_DELAY_SECONDS,
    ) -> None:
        self.service = service
        self.guard = guard or DependencyGuard("speech", policy=DEFAULT_SYNTHESIS_RETRY_POLICY)
        self.voice_id = voice_id
        self.output_format = output_format
        self.chunk_size = chunk_size
        self.inter_chunk_delay_seconds = inter_chunk_delay_seconds

    async def synthesize(
        self,
        compiled: CompiledDescription | str,
        *,
        voice_id: str | None = None,
        cancel_token: CancellationToken | None = None,
        on_progress: SynthesisProgressFn | None = None,
    ) -> AudioOutput:
        source = format_for_speech(compiled) if isinstance(compiled, CompiledDescription) else compiled
        text = prepare_text_for_speech(source)
        if not text:
            raise ValidationError("There is no narration text to synthesize", code="EMPTY_NARRATION")

        voice = voice_id or self.voice_id
        chunks = split_into_chunks(text, self.chunk_size)
        logger.info("Synthesizing %d character(s) in %d chunk(s) with voice %s", len(text), len(chunks), voice)

        audio_parts: list[bytes] = []
        for index, chunk in enumerate(chunks):
            if index > 0 and self.inter_chunk_delay_seconds > 0:
                if cancel_token is not None:
                    await cancel_token.sleep(self.inter_chunk_delay_seconds)
                else:
                    await asyncio.sleep(self.inter_chunk_delay_seconds)

            try:
                audio = await self.guard.call(
                    lambda chunk=chunk: asyncio.to_thread(self.service.synthesize, chunk, voice, self.output_format),
                    label=f"speech chunk {index + 1}/{len(chunks)}",
                    cancel_token=cancel_token,
                )
            except Cancelled:
                raise
            except Exception as exc:
                logger.error("Speech synthesis failed on chunk %d/%d: %s", index + 1, len(chunks), exc)
                raise ChunkSynthesisFailed(index, len(chunks), exc) from exc

            audio_parts.append(audio)
            if on_progress is not None:
                on_progress(index + 1, len(chunks))

        return AudioOutput(
            audio_bytes=b"".join(audio_parts),
            metadata=AudioMetadata(
                duration=estimate_duration_seconds(text),
                format=self.output_format,
                voice_id=voice,
                text_length=len(text),
                chunk_count=len(chunks),
            ),
        )
