from __future__ import annotations

import json
from typing import Any

import pytest

from bisub.exceptions import ProviderError
from bisub.models.subtitle import Chunk, SubtitleItem
from bisub.pipeline.context import PipelineContext
from bisub.providers.asr.base import ASRProvider, ASRSegment
from bisub.providers.llm.base import LLMCompletionResult, LLMProvider
from bisub.stages.base_llm import BaseLLMStage
from bisub.stages.refinement import RefinementInput, RefinementStage
from bisub.stages.transcription import TranscriptionStage
from bisub.stages.translation import TranslationInput, TranslationStage
from bisub.utils.audio import AudioSource


class _TranslatorLLM(LLMProvider):
    """Translates ids listed in `answer_ids` per call (all ids when None)."""

    provider = "fake"
    model = "fake-model"

    def __init__(self, answer_ids: list[set[int] | None] | None = None, *, fail: bool = False) -> None:
        self.answer_ids = list(answer_ids or [])
        self.fail = fail
        self.payloads: list[list[dict[str, Any]]] = []

    async def complete_with_usage(self, messages, temperature=0.3, max_tokens=None, response_schema=None):  # noqa: ANN001
        if self.fail:
            raise ProviderError("fake", "bad request", status_code=400)
        payload = json.loads(messages[-1].content.split("Input JSON:\n", 1)[1])
        self.payloads.append(payload)
        wanted = self.answer_ids.pop(0) if self.answer_ids else None
        data = [
            {"id": p["id"], "text_translated": f"T({p['text']})"}
            for p in payload
            if wanted is None or p["id"] in wanted
        ]
        return LLMCompletionResult(text=json.dumps(data), finish_reason="STOP")


class _StaticLLM(LLMProvider):
    provider = "fake"
    model = "fake-model"

    def __init__(self, text: str) -> None:
        self.text = text

    async def complete_with_usage(self, messages, temperature=0.3, max_tokens=None, response_schema=None):  # noqa: ANN001
        return LLMCompletionResult(text=self.text, finish_reason="STOP")


class _StaticASR(ASRProvider):
    async def transcribe(self, audio_wav: bytes, language: str | None = None) -> list[ASRSegment]:
        return [
            ASRSegment(text="(laughter)", start=0.0, end=1.0),
            ASRSegment(text="fine", start=3.0, end=3.2),
            ASRSegment(text="good", start=8.0, end=5.0),
        ]


class _DummyLLMStage(BaseLLMStage):
    name = "dummy_llm"

    async def execute(self, data, context):  # noqa: ANN001
        return data


def _items(n: int) -> list[SubtitleItem]:
    return [SubtitleItem(id=i, start=float(i), end=float(i) + 1.0, original=f"s{i}") for i in range(1, n + 1)]


def _context() -> PipelineContext[None]:
    return PipelineContext(data=None, audio=AudioSource.silence(30.0, sample_rate=1000))


def test_base_llm_stage_concurrency_limit_and_service_follow_tier(settings) -> None:
    settings.concurrency.llm_fast = 11
    settings.concurrency.llm_power = 3
    stage = _DummyLLMStage(settings, llm=_StaticLLM("[]"), tier="power")
    assert stage.get_concurrency_limit() == 3
    assert stage.service == "llm_power"
    stage = _DummyLLMStage(settings, llm=_StaticLLM("[]"))
    assert stage.get_concurrency_limit() == 11
    assert stage.service == "llm_fast"


@pytest.mark.asyncio
async def test_transcription_cleans_and_sanitizes(settings) -> None:
    stage = TranscriptionStage(settings, provider=_StaticASR())
    out = (await stage.execute(Chunk(index=1, start=0.0, end=30.0), _context())).output
    assert [(s.id, s.original) for s in out] == [(1, "fine"), (2, "good")]
    assert out[0].end == pytest.approx(4.5)
    assert (out[1].start, out[1].end) == (5.0, 8.0)


@pytest.mark.asyncio
async def test_translation_batches_and_requests_missing_ids_once(settings) -> None:
    settings.generation.translation_batch_size = 3
    settings.concurrency.llm_fast = 1
    llm = _TranslatorLLM([{1, 3}, None, None])
    stage = TranslationStage(settings, llm=llm)

    out = (await stage.execute(TranslationInput(items=_items(5)), _context())).output

    assert [s.translated for s in out] == ["T(s1)", "T(s2)", "T(s3)", "T(s4)", "T(s5)"]
    assert [s.id for s in out] == [1, 2, 3, 4, 5]
    assert llm.payloads[0] == [{"id": 1, "text": "s1"}, {"id": 2, "text": "s2"}, {"id": 3, "text": "s3"}]
    assert llm.payloads[1] == [{"id": 2, "text": "s2"}]
    assert llm.payloads[2] == [{"id": 1, "text": "s4"}, {"id": 2, "text": "s5"}]


@pytest.mark.asyncio
async def test_translation_echoes_source_when_still_missing(settings) -> None:
    settings.generation.translation_batch_size = 10
    stage = TranslationStage(settings, llm=_TranslatorLLM([{1}, set()]))
    result = await stage.execute(TranslationInput(items=_items(2)), _context())
    assert [s.translated for s in result.output] == ["T(s1)", "s2"]
    assert result.metadata["echoed"] == 1


@pytest.mark.asyncio
async def test_translation_failure_echoes_whole_batch(settings) -> None:
    stage = TranslationStage(settings, llm=_TranslatorLLM(fail=True))
    out = (await stage.execute(TranslationInput(items=_items(2)), _context())).output
    assert [s.translated for s in out] == ["s1", "s2"]


@pytest.mark.asyncio
async def test_refinement_falls_back_to_raw_on_failure(settings) -> None:
    raw = _items(2)
    failing = _TranslatorLLM(fail=True)
    stage = RefinementStage(settings, llm=failing)
    result = await stage.execute(RefinementInput(Chunk(index=1, start=0.0, end=30.0), raw), _context())
    assert result.output == raw
    assert result.metadata["fallback"] is True


@pytest.mark.asyncio
async def test_refinement_drops_fillers_and_reassigns_ids(settings) -> None:
    reply = json.dumps(
        [
            {"start": "00:00:01,000", "end": "00:00:02,000", "text": "Uh, um"},
            {"start": "00:00:02,000", "end": "00:00:04,000", "text": "First part"},
            {"start": "00:00:04,000", "end": "00:00:06,000", "text": "second part"},
        ]
    )
    stage = RefinementStage(settings, llm=_StaticLLM(reply))
    out = (await stage.execute(RefinementInput(Chunk(index=2, start=30.0, end=60.0), _items(1)), _context())).output
    assert [(s.id, s.original) for s in out] == [(1, "First part"), (2, "second part")]
    assert out[0].start == pytest.approx(2.0)


@pytest.mark.asyncio
async def test_refinement_empty_answer_keeps_raw(settings) -> None:
    raw = _items(1)
    stage = RefinementStage(settings, llm=_StaticLLM("[]"))
    assert (await stage.execute(RefinementInput(Chunk(index=1, start=0.0, end=30.0), raw), _context())).output == raw
