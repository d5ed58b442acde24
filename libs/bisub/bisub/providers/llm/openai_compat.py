"""OpenAI-compatible chat provider (streaming, audio input, JSON schema answers)."""

from __future__ import annotations

import base64
import json
import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

import httpx

from bisub.error_codes import ErrorCode
from bisub.exceptions import ProviderError, RetryableProviderError, http_status_error
from bisub.providers.llm.base import LLMCompletionResult, LLMProvider, LLMUsage, Message

logger = logging.getLogger(__name__)

DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"
_ERROR_BODY_LIMIT = 2000


async def iter_sse_events(response: httpx.Response) -> AsyncIterator[str]:
    """Yield the `data:` payload of each server-sent event."""
    pending: list[str] = []
    async for line in response.aiter_lines():
        if line.startswith("data:"):
            pending.append(line[5:].lstrip())
        elif not line and pending:
            yield "\n".join(pending)
            pending = []
    if pending:
        yield "\n".join(pending)


def _int_or_none(value: Any) -> int | None:
    return int(value) if isinstance(value, int) else None


def usage_from_event(event: dict[str, Any]) -> LLMUsage | None:
    usage = event.get("usage")
    if not isinstance(usage, dict):
        return None
    parsed = LLMUsage(
        prompt_tokens=_int_or_none(usage.get("prompt_tokens")),
        completion_tokens=_int_or_none(usage.get("completion_tokens")),
        total_tokens=_int_or_none(usage.get("total_tokens")),
    )
    if parsed.prompt_tokens is None and parsed.completion_tokens is None and parsed.total_tokens is None:
        return None
    return parsed


def to_chat_message(m: Message) -> dict[str, Any]:
    """Audio-bearing messages become multi-part content with inline base64 WAV."""
    if not m.audio:
        return {"role": m.role, "content": m.content}
    encoded = base64.b64encode(m.audio).decode("ascii")
    return {
        "role": m.role,
        "content": [
            {"type": "input_audio", "input_audio": {"data": encoded, "format": "wav"}},
            {"type": "text", "text": m.content},
        ],
    }


@dataclass
class _StreamAccumulator:
    provider: str
    chunks: list[str] = field(default_factory=list)
    usage: LLMUsage | None = None
    finish_reason: str | None = None

    def feed(self, event: dict[str, Any]) -> None:
        error = event.get("error")
        if isinstance(error, dict):
            raise ProviderError(
                self.provider,
                str(error.get("message") or error),
                error_code=ErrorCode.LLM_FAILED,
            )
        self.usage = usage_from_event(event) or self.usage
        choices = event.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            return
        choice = choices[0]
        if choice.get("finish_reason"):
            self.finish_reason = str(choice["finish_reason"])
        delta = choice.get("delta")
        if isinstance(delta, dict) and isinstance(delta.get("content"), str):
            self.chunks.append(delta["content"])

    def result(self) -> LLMCompletionResult:
        return LLMCompletionResult(text="".join(self.chunks), usage=self.usage, finish_reason=self.finish_reason)


class OpenAICompatProvider(LLMProvider):
    """Chat-completions provider for OpenAI and compatible servers (vLLM, gateways)."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o",
        base_url: str | None = None,
        provider: str = "openai",
        timeout: float = 600.0,
    ) -> None:
        self.provider = provider
        self.base_url = (str(base_url or "").strip() or DEFAULT_OPENAI_BASE_URL).rstrip("/")
        self.api_key = api_key
        self.model = model
        self.timeout = float(timeout)
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._client = httpx.AsyncClient(timeout=self.timeout, headers=headers)
        return self._client

    def _build_payload(
        self,
        messages: list[Message],
        temperature: float,
        max_tokens: int | None,
        response_schema: dict[str, Any] | None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [to_chat_message(m) for m in messages],
            "temperature": temperature,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens
        if response_schema is not None:
            payload["response_format"] = {
                "type": "json_schema",
                "json_schema": {"name": "response", "schema": response_schema},
            }
        return payload

    async def _raise_for_status(self, response: httpx.Response) -> None:
        if response.status_code < 400:
            return
        body = (await response.aread()).decode("utf-8", errors="replace").strip()
        if len(body) > _ERROR_BODY_LIMIT:
            body = body[:_ERROR_BODY_LIMIT] + "..."
        message = f"HTTP {response.status_code} {response.reason_phrase}"
        if body:
            message = f"{message}: {body}"
        raise http_status_error(
            self.provider,
            response.status_code,
            message,
            error_code=ErrorCode.LLM_FAILED,
            rate_limited_code=ErrorCode.LLM_RATE_LIMITED,
        )

    async def complete_with_usage(
        self,
        messages: list[Message],
        temperature: float = 0.3,
        max_tokens: int | None = None,
        response_schema: dict[str, Any] | None = None,
    ) -> LLMCompletionResult:
        payload = self._build_payload(messages, temperature, max_tokens, response_schema)
        client = await self._get_client()
        acc = _StreamAccumulator(provider=self.provider)
        started = time.perf_counter()
        try:
            async with client.stream("POST", f"{self.base_url}/chat/completions", json=payload) as response:
                await self._raise_for_status(response)
                async for data in iter_sse_events(response):
                    if data.strip() == "[DONE]":
                        break
                    try:
                        event = json.loads(data)
                    except json.JSONDecodeError:
                        logger.debug("llm stream non-json data: %r", data[:200])
                        continue
                    if isinstance(event, dict):
                        acc.feed(event)
        except httpx.TimeoutException as exc:
            logger.warning("llm request timeout (provider=%s, model=%s): %s", self.provider, self.model, exc)
            raise RetryableProviderError(self.provider, str(exc), error_code=ErrorCode.LLM_TIMEOUT) from exc
        except httpx.TransportError as exc:
            logger.warning("llm transport error (provider=%s, model=%s): %s", self.provider, self.model, exc)
            raise RetryableProviderError(self.provider, str(exc), error_code=ErrorCode.LLM_FAILED) from exc

        result = acc.result()
        usage = result.usage
        logger.info(
            "llm call (provider=%s, model=%s, latency_ms=%s, prompt_tokens=%s, completion_tokens=%s, finish_reason=%s, chars=%d)",
            self.provider,
            self.model,
            int((time.perf_counter() - started) * 1000),
            usage.prompt_tokens if usage else None,
            usage.completion_tokens if usage else None,
            result.finish_reason,
            len(result.text),
        )
        return result

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "OpenAICompatProvider":
        await self._get_client()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()
