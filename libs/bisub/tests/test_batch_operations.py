from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

import pytest

from bisub.exceptions import ProviderError
from bisub.models.subtitle import ChunkState, ChunkStatus, SubtitleItem
from bisub.pipeline.batch import BatchOperationExecutor, group_batches, merge_batch_comments
from bisub.providers.llm.base import LLMCompletionResult, LLMProvider
from bisub.stages.batch_edit import apply_offset_heuristic, build_instructions
from bisub.utils.audio import AudioSource
from bisub.utils.timestamps import format_timestamp, parse_timestamp

EditFn = Callable[[list[dict[str, Any]]], list[dict[str, Any]]]


def _reply(data: Any) -> LLMCompletionResult:
    return LLMCompletionResult(text=json.dumps(data, ensure_ascii=False), finish_reason="STOP")


def _shift(ts: str, delta: float) -> str:
    return format_timestamp(parse_timestamp(ts) + delta)


class _BatchLLM(LLMProvider):
    provider = "fake"
    model = "fake-model"

    def __init__(self, edit: EditFn) -> None:
        self.edit = edit
        self.messages: list[list] = []

    async def complete_with_usage(self, messages, temperature=0.3, max_tokens=None, response_schema=None):  # noqa: ANN001
        self.messages.append(list(messages))
        user = messages[-1].content
        if user.startswith("TRANSLATION BATCH TASK"):
            payload = json.loads(user.split("Input JSON:\n", 1)[1])
            return _reply([{"id": p["id"], "text_translated": f"T({p['text']})"} for p in payload])
        payload = json.loads(user.split("Current Subtitles JSON:\n", 1)[1])
        return _reply(self.edit(payload))


def _subtitles(n: int) -> list[SubtitleItem]:
    return [
        SubtitleItem(
            id=i,
            start=100.0 + 10 * (i - 1),
            end=102.0 + 10 * (i - 1),
            original=f"line {i}",
            translated=f"行 {i}",
        )
        for i in range(1, n + 1)
    ]


def _audio() -> AudioSource:
    return AudioSource.silence(200.0, sample_rate=1000)


def test_group_batches_merges_contiguous_selection() -> None:
    assert group_batches([0, 1, 2, 5], 6) == [[0, 1, 2], [5]]
    assert group_batches([5, 0, 2, 1], 6) == [[0, 1, 2], [5]]


def test_group_batches_all_selected_stay_singletons() -> None:
    assert group_batches(list(range(6)), 6) == [[i] for i in range(6)]


def test_group_batches_ignores_out_of_range() -> None:
    assert group_batches([7, -1], 6) == []
    assert group_batches([3, 9], 6) == [[3]]


def test_offset_heuristic_shifts_relative_answers_only() -> None:
    relative = [SubtitleItem(id=1, start=parse_timestamp("00:00:02,000"), end=4.0)]
    absolute = [SubtitleItem(id=1, start=parse_timestamp("00:01:42,000"), end=104.0)]
    assert apply_offset_heuristic(relative, 100.0, 102.0)[0].start == pytest.approx(102.0)
    assert apply_offset_heuristic(absolute, 100.0, 102.0)[0].start == pytest.approx(102.0)
    assert apply_offset_heuristic(relative, 0.0, 102.0) is relative


def test_merge_batch_comments() -> None:
    subs = _subtitles(6)
    assert merge_batch_comments([1], {1: "be formal"}, subs, 2) == "be formal"
    assert merge_batch_comments([0, 1, 2], {0: "A", 2: "C", 1: "  "}, subs, 2) == "[IDs 1-2]: A\n[IDs 5-6]: C"
    assert merge_batch_comments([0, 1], {}, subs, 2) == ""


def test_build_instructions_cases() -> None:
    line_only = build_instructions("proofread", "", has_line_comments=True)
    assert 'Only lines with a "comment" field need changes' in line_only
    both = build_instructions("proofread", "use honorifics", has_line_comments=True)
    assert "use honorifics" in both and "line-specific" in both
    batch_only = build_instructions("fix_timestamps", "tighten", has_line_comments=False)
    assert batch_only.startswith("USER INSTRUCTION FOR THIS BATCH")
    assert "NEVER modify 'text_translated'" in batch_only


@pytest.mark.asyncio
async def test_proofread_keeps_timestamps_and_failed_group_original(settings) -> None:
    settings.generation.proofread_batch_size = 2
    settings.retry.attempts = 1

    def _edit(payload: list[dict[str, Any]]) -> list[dict[str, Any]]:
        if any(p["id"] == 5 for p in payload):
            raise ProviderError("fake", "bad request", status_code=400)
        return [
            {
                **p,
                "start": _shift(p["start"], 1.0),
                "end": _shift(p["end"], 1.0),
                "text_translated": f"P-{p['text_translated']}",
            }
            for p in payload
        ]

    llm = _BatchLLM(_edit)
    subs = _subtitles(6)
    subs[0].comment = "check this"
    statuses: list[ChunkStatus] = []
    executor = BatchOperationExecutor(settings, llm_fast=llm, llm_power=llm)
    result = await executor.run(
        subs, "proofread", selected_batches=[0, 2], audio=_audio(), on_status=statuses.append
    )

    out = result.subtitles
    assert [s.id for s in out] == [1, 2, 3, 4, 5, 6]
    assert [s.translated for s in out] == ["P-行 1", "P-行 2", "行 3", "行 4", "行 5", "行 6"]
    assert [(s.start, s.end) for s in out] == [(s.start, s.end) for s in subs]
    assert out[0].comment is None
    assert result.failed_groups == ["3"]
    assert result.processed_groups == 1
    assert any(s.status == ChunkState.ERROR and s.id == "3" for s in statuses)
    # The batch with a line comment was sent with it, and with audio context.
    first_call = next(m for m in llm.messages if "check this" in m[-1].content)
    assert first_call[-1].audio is not None


@pytest.mark.asyncio
async def test_fix_timestamps_restores_translation_and_auto_translates_new_lines(settings) -> None:
    settings.generation.proofread_batch_size = 2

    def _edit(payload: list[dict[str, Any]]) -> list[dict[str, Any]]:
        first, second = payload
        return [
            {**first, "start": "00:00:05,500", "text_translated": "CHANGED"},
            {"id": 3, "start": "00:00:09,000", "end": "00:00:11,000", "text_original": "missed", "text_translated": ""},
            second,
        ]

    llm = _BatchLLM(_edit)
    executor = BatchOperationExecutor(settings, llm_fast=llm, llm_power=llm)
    result = await executor.run(_subtitles(2), "fix_timestamps", audio=_audio())

    out = result.subtitles
    assert [s.id for s in out] == [1, 2, 3]
    assert out[0].start == pytest.approx(100.5)
    assert out[0].translated == "行 1"
    assert out[1].original == "missed"
    assert out[1].start == pytest.approx(104.0)
    assert out[1].translated == "T(missed)"
    assert out[2].translated == "行 2"
    assert result.auto_translated == 1


@pytest.mark.asyncio
async def test_retranslate_sends_no_audio(settings) -> None:
    settings.generation.proofread_batch_size = 10

    def _edit(payload: list[dict[str, Any]]) -> list[dict[str, Any]]:
        return [{**p, "text_translated": "新"} for p in payload]

    llm = _BatchLLM(_edit)
    executor = BatchOperationExecutor(settings, llm_fast=llm, llm_power=llm)
    result = await executor.run(_subtitles(3), "retranslate", audio=_audio(), batch_comments={0: "more casual"})

    assert [s.translated for s in result.subtitles] == ["新", "新", "新"]
    assert len(llm.messages) == 1
    assert llm.messages[0][-1].audio is None
    assert "more casual" in llm.messages[0][-1].content


@pytest.mark.asyncio
async def test_empty_selection_returns_input(settings) -> None:
    llm = _BatchLLM(lambda payload: payload)
    executor = BatchOperationExecutor(settings, llm_fast=llm, llm_power=llm)
    subs = _subtitles(3)
    result = await executor.run(subs, "proofread", selected_batches=[])
    assert result.subtitles == subs
    assert llm.messages == []


@pytest.mark.asyncio
async def test_unexpected_group_error_keeps_original_and_siblings(settings) -> None:
    settings.generation.proofread_batch_size = 1
    settings.retry.attempts = 1

    def _edit(payload: list[dict[str, Any]]) -> list[dict[str, Any]]:
        if payload[0]["id"] == 1:
            raise RuntimeError("sdk blew up")
        return [{**p, "text_translated": "新"} for p in payload]

    llm = _BatchLLM(_edit)
    executor = BatchOperationExecutor(settings, llm_fast=llm, llm_power=llm)
    subs = _subtitles(3)
    result = await executor.run(subs, "retranslate", selected_batches=[0, 2])

    assert [s.translated for s in result.subtitles] == ["行 1", "行 2", "新"]
    assert result.failed_groups == ["1"]
    assert result.processed_groups == 1
