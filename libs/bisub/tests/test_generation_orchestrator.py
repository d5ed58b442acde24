from __future__ import annotations

import json
from typing import Any

import pytest

from bisub.exceptions import PipelineCancelledError, ProviderError, StageExecutionError
from bisub.models.subtitle import ChunkStage, ChunkState, ChunkStatus, GlossaryItem, SubtitleItem
from bisub.pipeline.orchestrator import GenerationOrchestrator, flatten_in_order, resequence
from bisub.providers.asr.base import ASRProvider, ASRSegment
from bisub.providers.llm.base import LLMCompletionResult, LLMProvider
from bisub.utils.audio import AudioSource


class _FakeASR(ASRProvider):
    name = "fake_asr"

    def __init__(self, *, fail_shorter_than: float | None = None) -> None:
        self.fail_shorter_than = fail_shorter_than
        self.calls = 0

    async def transcribe(self, audio_wav: bytes, language: str | None = None) -> list[ASRSegment]:
        self.calls += 1
        duration = AudioSource.from_wav_bytes(audio_wav).duration
        if self.fail_shorter_than is not None and duration < self.fail_shorter_than:
            raise ProviderError("fake_asr", "unsupported audio", status_code=400)
        return [
            ASRSegment(text="hello", start=1.0, end=3.0),
            ASRSegment(text="[Music]", start=4.0, end=6.0),
            ASRSegment(text="world", start=10.0, end=12.0),
        ]


class _RoutedLLM(LLMProvider):
    provider = "fake"
    model = "fake-model"

    def __init__(self) -> None:
        self.systems: list[str] = []

    async def complete_with_usage(self, messages, temperature=0.3, max_tokens=None, response_schema=None):  # noqa: ANN001
        system = messages[0].content
        user = messages[-1].content
        self.systems.append(system)
        data: Any
        if system.startswith("TERMINOLOGY EXTRACTION TASK"):
            data = [{"term": "Foo", "translation": "富"}]
        elif user.startswith("TRANSCRIPTION REFINEMENT TASK"):
            payload = json.loads(user.split("Raw Transcription:\n", 1)[1])
            data = [{"start": p["start"], "end": p["end"], "text": p["text"].capitalize()} for p in payload]
            data.append({"start": "00:00:20,000", "end": "00:00:21,000", "text": "um"})
        elif user.startswith("TRANSLATION BATCH TASK"):
            payload = json.loads(user.split("Input JSON:\n", 1)[1])
            data = [{"id": p["id"], "text_translated": f"T({p['text']})"} for p in payload]
        else:
            raise AssertionError(f"unexpected prompt: {user[:80]!r}")
        return LLMCompletionResult(text=json.dumps(data, ensure_ascii=False), finish_reason="STOP")


def _audio() -> AudioSource:
    return AudioSource.silence(720.0, sample_rate=1000)


def test_resequence_and_flatten() -> None:
    per_chunk = {
        2: [SubtitleItem(id=1, start=300.0, end=301.0)],
        1: [SubtitleItem(id=1, start=0.0, end=1.0), SubtitleItem(id=2, start=5.0, end=6.0)],
    }
    flat = flatten_in_order(per_chunk)
    assert [(s.id, s.start) for s in flat] == [(1, 0.0), (2, 5.0), (3, 300.0)]
    assert [s.id for s in resequence(flat[::-1])] == [1, 2, 3]


@pytest.mark.asyncio
async def test_generation_end_to_end_three_chunks(settings) -> None:
    settings.generation.chunk_duration_s = 300.0
    llm = _RoutedLLM()
    statuses: list[ChunkStatus] = []
    snapshots: list[list[SubtitleItem]] = []
    orchestrator = GenerationOrchestrator(settings, asr=_FakeASR(), llm_fast=llm, llm_power=llm)

    result = await orchestrator.run(_audio(), on_chunk_status=statuses.append, on_intermediate=snapshots.append)

    assert [(c.start, c.end) for c in result.chunks] == [(0.0, 300.0), (300.0, 600.0), (600.0, 720.0)]
    subs = result.subtitles
    assert [s.id for s in subs] == [1, 2, 3, 4, 5, 6]
    assert [s.start for s in subs] == pytest.approx([1.0, 10.0, 301.0, 310.0, 601.0, 610.0])
    assert [s.original for s in subs] == ["Hello", "World"] * 3
    assert all(s.translated == f"T({s.original})" for s in subs)
    assert result.glossary == [GlossaryItem(term="Foo", translation="富")]
    assert result.failed_chunks == []

    # Translation prompts were built after the glossary resolved.
    translation_systems = [s for s in llm.systems if s.startswith("You are a professional translator")]
    assert translation_systems and all("- Foo: 富" in s for s in translation_systems)

    assert [len(s) for s in snapshots] == [2, 4, 6]
    done = [s for s in statuses if s.status == ChunkState.COMPLETED]
    assert sorted(s.id for s in done) == [1, 2, 3]
    assert all(s.stage == ChunkStage.DONE for s in done)
    assert {s.stage for s in statuses} >= {ChunkStage.TRANSCRIBING, ChunkStage.REFINING, ChunkStage.TRANSLATING}


@pytest.mark.asyncio
async def test_generation_without_glossary_uses_user_terms(settings) -> None:
    settings.generation.enable_glossary = False
    llm = _RoutedLLM()
    orchestrator = GenerationOrchestrator(settings, asr=_FakeASR(), llm_fast=llm, llm_power=llm)
    user = [GlossaryItem(term="Bar", translation="吧")]

    result = await orchestrator.run(AudioSource.silence(60.0, sample_rate=1000), glossary=user)

    assert result.glossary == user
    assert not any(s.startswith("TERMINOLOGY EXTRACTION TASK") for s in llm.systems)
    assert len(result.subtitles) == 2


@pytest.mark.asyncio
async def test_generation_aborts_on_chunk_failure(settings) -> None:
    settings.generation.chunk_duration_s = 300.0
    llm = _RoutedLLM()
    orchestrator = GenerationOrchestrator(
        settings, asr=_FakeASR(fail_shorter_than=200.0), llm_fast=llm, llm_power=llm
    )
    statuses: list[ChunkStatus] = []

    with pytest.raises(StageExecutionError) as exc_info:
        await orchestrator.run(_audio(), on_chunk_status=statuses.append)
    assert exc_info.value.chunk_index == 3
    assert any(s.id == 3 and s.status == ChunkState.ERROR for s in statuses)


@pytest.mark.asyncio
async def test_generation_skip_policy_keeps_other_chunks(settings) -> None:
    settings.generation.chunk_duration_s = 300.0
    settings.generation.chunk_failure_policy = "skip"
    llm = _RoutedLLM()
    orchestrator = GenerationOrchestrator(
        settings, asr=_FakeASR(fail_shorter_than=200.0), llm_fast=llm, llm_power=llm
    )

    result = await orchestrator.run(_audio())

    assert result.failed_chunks == [3]
    assert [s.id for s in result.subtitles] == [1, 2, 3, 4]
    assert result.subtitles[-1].start == pytest.approx(310.0)


@pytest.mark.asyncio
async def test_generation_cancelled(settings) -> None:
    llm = _RoutedLLM()
    orchestrator = GenerationOrchestrator(settings, asr=_FakeASR(), llm_fast=llm, llm_power=llm)
    with pytest.raises(PipelineCancelledError):
        await orchestrator.run(_audio(), cancel_check=lambda: True)
