from __future__ import annotations

import json

import httpx
import pytest

from bisub.exceptions import ConfigurationError, ProviderError, RetryableProviderError
from bisub.providers import get_llm_provider
from bisub.providers.asr.openai_whisper import OpenAIWhisperProvider
from bisub.providers.llm.base import Message
from bisub.providers.llm.openai_compat import OpenAICompatProvider


def _sse(*events: dict) -> bytes:
    body = "".join(f"data: {json.dumps(e)}\n\n" for e in events) + "data: [DONE]\n\n"
    return body.encode("utf-8")


@pytest.mark.asyncio
async def test_openai_compat_streams_text_usage_and_finish_reason() -> None:
    seen: list[dict] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(
            200,
            content=_sse(
                {"choices": [{"delta": {"content": '[{"id": 1,'}}]},
                {"choices": [{"delta": {"content": ' "text": "a"}'}, "finish_reason": "length"}]},
                {"choices": [], "usage": {"prompt_tokens": 5, "completion_tokens": 7, "total_tokens": 12}},
            ),
        )

    provider = OpenAICompatProvider(api_key="k", model="m", base_url="http://llm.test/v1")
    provider._client = httpx.AsyncClient(transport=httpx.MockTransport(_handler))
    result = await provider.complete_with_usage(
        [Message(role="user", content="hi", audio=b"RIFF")], response_schema={"type": "array"}
    )
    await provider.close()

    assert result.text == '[{"id": 1, "text": "a"}'
    assert result.truncated is True
    assert result.usage is not None and result.usage.total_tokens == 12
    body = seen[0]
    assert body["model"] == "m"
    assert body["response_format"]["type"] == "json_schema"
    assert body["messages"][0]["content"][0]["type"] == "input_audio"


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [429, 503])
async def test_openai_compat_transient_statuses(status: int) -> None:
    provider = OpenAICompatProvider(api_key="k", model="m", base_url="http://llm.test/v1")
    provider._client = httpx.AsyncClient(
        transport=httpx.MockTransport(lambda request: httpx.Response(status, text="slow down"))
    )
    with pytest.raises(RetryableProviderError) as exc_info:
        await provider.complete_with_usage([Message(role="user", content="hi")])
    assert exc_info.value.status_code == status
    await provider.close()


@pytest.mark.asyncio
async def test_openai_compat_client_error_is_permanent() -> None:
    provider = OpenAICompatProvider(api_key="k", model="m", base_url="http://llm.test/v1")
    provider._client = httpx.AsyncClient(
        transport=httpx.MockTransport(lambda request: httpx.Response(400, text="bad schema"))
    )
    with pytest.raises(ProviderError) as exc_info:
        await provider.complete_with_usage([Message(role="user", content="hi")])
    assert not isinstance(exc_info.value, RetryableProviderError)
    assert "bad schema" in str(exc_info.value)
    await provider.close()


@pytest.mark.asyncio
async def test_whisper_parses_verbose_segments() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path.endswith("/audio/transcriptions")
        return httpx.Response(
            200,
            json={"segments": [{"start": 0.5, "end": 2.0, "text": " hello "}, {"start": "x", "end": 1}, "junk"]},
        )

    provider = OpenAIWhisperProvider(base_url="http://asr.test/v1")
    provider._client = httpx.AsyncClient(transport=httpx.MockTransport(_handler))
    segments = await provider.transcribe(b"RIFF", language="ja")
    await provider.close()

    assert [(s.text, s.start, s.end) for s in segments] == [("hello", 0.5, 2.0)]


def test_whisper_text_only_response_becomes_one_segment() -> None:
    segments = OpenAIWhisperProvider._parse_segments({"text": "hi there", "duration": 3.5})
    assert [(s.text, s.start, s.end) for s in segments] == [("hi there", 0.0, 3.5)]


def test_registry_rejects_unknown_or_incomplete_providers() -> None:
    with pytest.raises(ConfigurationError):
        get_llm_provider({"provider": "nope"})
    with pytest.raises(ConfigurationError):
        get_llm_provider({"provider": "gemini", "api_key": "", "model": "gemini-2.5-flash"})
    assert isinstance(get_llm_provider({"provider": "openai", "api_key": "k"}), OpenAICompatProvider)
