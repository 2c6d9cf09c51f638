from __future__ import annotations

import pytest

from narrator.describe.compilation import compile_descriptions
from narrator.errors import ChunkSynthesisFailed, ValidationError
from narrator.models import SegmentAnalysis
from narrator.resilience.guard import DependencyGuard
from narrator.resilience.retry import RetryPolicy
from narrator.speech.synthesis import (
    SynthesisEngine,
    estimate_duration_seconds,
    prepare_text_for_speech,
    split_into_chunks,
)
from tests.fakes import FakeSpeech


def _long_narration(sentences: int = 60) -> str:
    # every sentence is 99 characters; joined with single spaces
    return " ".join(f"Scene {i:02d} " + "narration " * 8 + "ends here." for i in range(sentences))


def _engine(service: FakeSpeech, **kwargs) -> SynthesisEngine:
    guard = DependencyGuard("speech", RetryPolicy(max_attempts=2, base_delay_seconds=0.01, jitter_ratio=0.0))
    return SynthesisEngine(service, guard=guard, inter_chunk_delay_seconds=0, **kwargs)


def test_long_narration_is_packed_into_three_chunks() -> None:
    text = _long_narration()

    chunks = split_into_chunks(text, 2500)

    assert len(chunks) == 3
    assert all(len(chunk) <= 2500 for chunk in chunks)
    assert all(chunk.endswith("ends here.") for chunk in chunks)
    assert " ".join(chunks) == text


def test_short_text_is_a_single_chunk_and_empty_text_none() -> None:
    assert split_into_chunks("Hello there.", 2500) == ["Hello there."]
    assert split_into_chunks("   ", 2500) == []


def test_overlong_sentence_falls_back_to_words() -> None:
    chunks = split_into_chunks("a" * 30 + " bb bb", 10)

    assert chunks == ["a" * 10, "a" * 10, "a" * 10, "bb bb"]
    assert all(len(chunk) <= 10 for chunk in chunks)


def test_prepare_text_expands_abbreviations_and_strips_markup() -> None:
    prepared = prepare_text_for_speech("Made in the U.S. Today, e.g. cars etc. and [more]   text .")

    assert prepared == "Made in the United States Today, for example cars etcetera and more text."


def test_prepare_text_keeps_sentence_end_after_abbreviation() -> None:
    assert prepare_text_for_speech("They export tea, coffee, etc.") == "They export tea, coffee, etcetera."
    assert prepare_text_for_speech("Ships to the U.S.A.") == "Ships to the United States."
    assert prepare_text_for_speech("Filmed in the UK.Next scene") == "Filmed in the United Kingdom. Next scene"


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("A U.S. Army truck drives past. Soldiers wave.", "A United States Army truck drives past. Soldiers wave."),
        ("Bikes, cars etc. and more text.", "Bikes, cars etcetera and more text."),
        ("Bikes, cars ETC. Then a bus.", "Bikes, cars etcetera Then a bus."),
    ],
)
def test_prepare_text_never_adds_a_period_inside_a_sentence(text: str, expected: str) -> None:
    assert prepare_text_for_speech(text) == expected


def test_duration_estimate_grows_with_text() -> None:
    assert estimate_duration_seconds("") == 0.0
    assert estimate_duration_seconds("word " * 150) == 60.0
    assert estimate_duration_seconds("word " * 10) < estimate_duration_seconds("word " * 11)


@pytest.mark.asyncio
async def test_synthesize_concatenates_chunk_audio_in_order() -> None:
    service = FakeSpeech()
    progress: list[tuple[int, int]] = []

    audio = await _engine(service).synthesize(
        _long_narration(),
        voice_id="Matthew",
        on_progress=lambda done, total: progress.append((done, total)),
    )

    assert audio.audio_bytes == b"<audio:1><audio:2><audio:3>"
    assert audio.metadata.chunk_count == 3
    assert audio.metadata.voice_id == "Matthew"
    assert audio.metadata.format == "mp3"
    assert audio.metadata.duration == 288.0
    assert audio.metadata.text_length == len(_long_narration())
    assert progress == [(1, 3), (2, 3), (3, 3)]
    assert {call[1] for call in service.calls} == {"Matthew"}


@pytest.mark.asyncio
async def test_synthesize_accepts_compiled_description() -> None:
    compiled = compile_descriptions(
        [
            SegmentAnalysis("segment-0", "A cat sleeps.", 90, ["cat"], [], "Living room", 0, 4),
            SegmentAnalysis("segment-1", "A bird sings.", 80, ["bird"], [], "Garden", 10, 12),
        ]
    )
    service = FakeSpeech()

    audio = await _engine(service, voice_id="Amy", output_format="ogg_vorbis").synthesize(compiled)

    assert service.calls == [("A cat sleeps. Midway through, A bird sings.", "Amy", "ogg_vorbis")]
    assert audio.metadata.chunk_count == 1
    assert audio.metadata.format == "ogg_vorbis"


@pytest.mark.asyncio
async def test_failed_chunk_aborts_synthesis() -> None:
    service = FakeSpeech(fail_on_call=2)

    with pytest.raises(ChunkSynthesisFailed) as exc_info:
        await _engine(service).synthesize(_long_narration())

    assert exc_info.value.chunk_index == 1
    assert exc_info.value.details == {"chunk_index": 1, "chunk_count": 3}
    assert len(service.calls) == 2


@pytest.mark.asyncio
async def test_empty_narration_is_rejected() -> None:
    with pytest.raises(ValidationError) as exc_info:
        await _engine(FakeSpeech()).synthesize("[ ]")

    assert exc_info.value.code == "EMPTY_NARRATION"
