from __future__ import annotations

import pytest

from bisub.config import RetryConfig
from bisub.exceptions import ResponseParseError
from bisub.providers.llm.base import LLMCompletionResult, LLMProvider
from bisub.utils.llm_json import CONTINUE_PROMPT, LLMJSONHelper, parse_llm_json, parse_llm_json_array
from bisub.utils.subtitle_parser import (
    clean_non_speech_annotations,
    is_filler_only,
    items_from_json,
    parse_subtitle_response,
)


class _SequenceLLM(LLMProvider):
    provider = "fake"
    model = "fake-model"

    def __init__(self, replies: list[tuple[str, str | None]]) -> None:
        self.replies = list(replies)
        self.calls: list[list] = []

    async def complete_with_usage(self, messages, temperature=0.3, max_tokens=None, response_schema=None):  # noqa: ANN001
        self.calls.append(list(messages))
        text, finish_reason = self.replies.pop(0)
        return LLMCompletionResult(text=text, finish_reason=finish_reason)


def _helper(llm: LLMProvider, max_continuations: int = 3) -> LLMJSONHelper:
    return LLMJSONHelper(
        llm,
        max_continuations=max_continuations,
        retry=RetryConfig(attempts=1, base_delay_s=0.0, max_jitter_s=0.0),
    )


def test_parse_llm_json_accepts_fenced_and_prose_wrapped() -> None:
    assert parse_llm_json('```json\n[{"id": 1}]\n```') == [{"id": 1}]
    assert parse_llm_json('Sure! Here you go: {"items": []} Hope it helps.') == {"items": []}
    assert parse_llm_json('<think>plan [x]</think>\n[1, 2]') == [1, 2]


def test_parse_llm_json_array_unwraps_known_keys() -> None:
    assert parse_llm_json_array('{"items": [{"id": 1}]}') == [{"id": 1}]
    assert parse_llm_json_array('{"subtitles": [{"id": 2}]}') == [{"id": 2}]
    assert parse_llm_json_array('[{"id": 3}]') == [{"id": 3}]


def test_parse_llm_json_array_rejects_unknown_shapes() -> None:
    with pytest.raises(ResponseParseError):
        parse_llm_json_array('{"result": [1]}')
    with pytest.raises(ResponseParseError):
        parse_llm_json("no json here")


@pytest.mark.asyncio
async def test_helper_continues_truncated_answer() -> None:
    llm = _SequenceLLM(
        [
            ('```json\n[{"id": 1, "text": "a"}, {"id": 2,', "MAX_TOKENS"),
            (' "text": "b"}]\n```', "STOP"),
        ]
    )
    result = await _helper(llm).complete_json([], label="t")
    assert result.success is True
    assert result.continuations == 1
    assert result.data == [{"id": 1, "text": "a"}, {"id": 2, "text": "b"}]
    follow_up = llm.calls[1]
    assert follow_up[-2].role == "assistant"
    assert follow_up[-1].content == CONTINUE_PROMPT


def test_parse_llm_json_never_returns_object_nested_in_unclosed_array() -> None:
    with pytest.raises(ResponseParseError, match="unterminated"):
        parse_llm_json('[{"id": 1, "text": "a"}, {"id": 2,')
    assert parse_llm_json('see [note] then {"items": [1]}') == {"items": [1]}


@pytest.mark.asyncio
async def test_helper_continues_on_parse_failure_without_finish_reason() -> None:
    head, tail = '[{"id": 1, "text": "a"}, {"id": 2,', ' "text": "b"}]'
    llm = _SequenceLLM([(head, None), (tail, None)])
    out = await _helper(llm).complete_json_array([], label="t")
    assert out == parse_llm_json_array(head + tail)
    assert out == [{"id": 1, "text": "a"}, {"id": 2, "text": "b"}]
    assert len(llm.calls) == 2
    assert llm.calls[1][-1].content == CONTINUE_PROMPT


@pytest.mark.asyncio
async def test_helper_returns_empty_list_after_continuation_budget() -> None:
    llm = _SequenceLLM([('[{"id": 1,', "MAX_TOKENS"), (' "text"', "MAX_TOKENS")])
    helper = _helper(llm, max_continuations=1)
    assert await helper.complete_json_array([], label="t") == []
    assert len(llm.calls) == 2


@pytest.mark.asyncio
async def test_helper_without_budget_fails_on_unparseable_answer() -> None:
    llm = _SequenceLLM([("sorry, I cannot help", "STOP")])
    result = await _helper(llm, max_continuations=0).complete_json([], label="t")
    assert result.success is False
    assert result.data is None
    assert result.last_error


def test_items_from_json_normalizes_and_drops_invalid_entries() -> None:
    items = items_from_json(
        [
            {"id": 1, "start": "00:00:01,000", "end": "00:00:03,000", "text_original": "hi", "text_translated": "你好"},
            {"id": 2, "start": "00:00:05,000", "text_original": "no end"},
            {"id": 3, "start": "00:00:06,000", "end": "00:00:07,000", "text_original": "", "text_translated": ""},
            {"id": 4, "start": "00:01:15,000", "end": "00:01:16,000", "text_original": "beyond"},
            {"id": 5, "start": "00:01:05,000", "end": "00:01:05,200", "original": "tolerated"},
            "garbage",
        ],
        media_duration=60.0,
    )
    assert [s.id for s in items] == [1, 5]
    assert items[0].translated == "你好"
    assert items[1].original == "tolerated"
    assert items[1].end == pytest.approx(65.0 + 1.5)


def test_parse_subtitle_response_is_empty_on_garbage() -> None:
    assert parse_subtitle_response("not json") == []
    out = parse_subtitle_response('{"subtitles": [{"start": "0:1", "end": "0:3", "text": "x"}]}')
    assert len(out) == 1
    assert out[0].id == 1
    assert out[0].start == pytest.approx(1.0)


def test_clean_non_speech_annotations() -> None:
    assert clean_non_speech_annotations("[Music] Hello (laughter) there *cough*") == "Hello there"
    assert clean_non_speech_annotations("(拍手)") == ""
    assert clean_non_speech_annotations("[Tanaka] hello") == "[Tanaka] hello"


def test_is_filler_only() -> None:
    assert is_filler_only("Um, uh...")
    assert is_filler_only("えーと")
    assert not is_filler_only("um, I think so")
