"""Gemini chat provider on the google-generativeai SDK (blocking calls run in threads)."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import Any

from bisub.error_codes import ErrorCode
from bisub.exceptions import ConfigurationError, ProviderError, RetryableProviderError
from bisub.providers.llm.base import LLMCompletionResult, LLMProvider, LLMUsage, Message

logger = logging.getLogger(__name__)

# `genai.configure` mutates module state shared by every provider instance.
_CONFIGURE_LOCK = threading.Lock()

# Subtitle content often trips default filters (violence in films, slang).
_SAFETY_SETTINGS = [
    {"category": category, "threshold": "BLOCK_NONE"}
    for category in (
        "HARM_CATEGORY_HARASSMENT",
        "HARM_CATEGORY_HATE_SPEECH",
        "HARM_CATEGORY_SEXUALLY_EXPLICIT",
        "HARM_CATEGORY_DANGEROUS_CONTENT",
    )
]

_USAGE_FIELDS = {
    "prompt_tokens": "prompt_token_count",
    "completion_tokens": "candidates_token_count",
    "total_tokens": "total_token_count",
}


def _read(obj: object, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def _parse_usage_metadata(response: object) -> LLMUsage | None:
    meta = _read(response, "usage_metadata")
    if meta is None:
        return None
    counts: dict[str, int | None] = {}
    for ours, theirs in _USAGE_FIELDS.items():
        raw = _read(meta, theirs)
        if isinstance(raw, str) and raw.isdigit():
            raw = int(raw)
        counts[ours] = raw if isinstance(raw, int) else None
    if all(v is None for v in counts.values()):
        return None
    return LLMUsage(**counts)


def _finish_reason(response: object) -> str | None:
    candidates = getattr(response, "candidates", None)
    if not candidates:
        return None
    raw = getattr(candidates[0], "finish_reason", None)
    if raw is None:
        return None
    # Proto enums expose `.name`; plain ints/strings pass through.
    return str(getattr(raw, "name", raw))


def _split_system_instruction(messages: list[Message]) -> tuple[str | None, list[Message]]:
    """Gemini takes system prompts out-of-band; join them and keep the rest."""
    system = [m.content for m in messages if m.role.strip().lower() == "system" and m.content]
    rest = [m for m in messages if m.role.strip().lower() != "system"]
    return ("\n\n".join(system).strip() or None), rest


def _to_gemini_contents(messages: list[Message]) -> list[dict[str, Any]]:
    contents: list[dict[str, Any]] = []
    for m in messages:
        role = str(m.role or "").strip().lower()
        role = "model" if role in {"assistant", "model"} else "user"
        parts: list[dict[str, Any]] = []
        if m.audio:
            parts.append({"inline_data": {"mime_type": "audio/wav", "data": m.audio}})
        parts.append({"text": str(m.content)})
        contents.append({"role": role, "parts": parts})
    return contents


def _map_sdk_error(exc: Exception) -> ProviderError:
    """Translate google-api-core errors into provider errors with HTTP status."""
    from google.api_core import exceptions as gexc  # type: ignore[import-not-found]

    status = getattr(exc, "code", None)
    status_code = int(status) if isinstance(status, int) else None
    if isinstance(exc, gexc.ResourceExhausted):
        return RetryableProviderError(
            "gemini",
            str(exc),
            status_code=status_code or 429,
            rate_limited=True,
            error_code=ErrorCode.LLM_RATE_LIMITED,
        )
    if isinstance(exc, gexc.DeadlineExceeded):
        return RetryableProviderError(
            "gemini", str(exc), status_code=status_code, error_code=ErrorCode.LLM_TIMEOUT
        )
    if isinstance(exc, (gexc.ServiceUnavailable, gexc.InternalServerError, gexc.BadGateway)):
        return RetryableProviderError(
            "gemini", str(exc), status_code=status_code, error_code=ErrorCode.LLM_FAILED
        )
    return ProviderError("gemini", str(exc), status_code=status_code, error_code=ErrorCode.LLM_FAILED)


def _response_text(response: object) -> str:
    # `response.text` raises when the candidate has no text part (e.g. blocked).
    try:
        text = str(getattr(response, "text", "") or "").strip()
    except ValueError:
        text = ""
    if text:
        return text
    candidates = getattr(response, "candidates", None) or []
    parts = getattr(getattr(candidates[0], "content", None), "parts", None) if candidates else None
    return "".join(str(getattr(p, "text", "") or "") for p in parts or []).strip()


def build_generation_config(
    temperature: float,
    max_tokens: int | None,
    response_schema: dict[str, Any] | None,
) -> dict[str, Any]:
    cfg: dict[str, Any] = {"temperature": float(temperature)}
    if max_tokens is not None:
        cfg["max_output_tokens"] = int(max_tokens)
    if response_schema is not None:
        cfg.update(response_mime_type="application/json", response_schema=response_schema)
    return cfg


class GeminiProvider(LLMProvider):
    """Gemini models via Google AI Studio (or a compatible `api_endpoint`)."""

    provider = "gemini"

    def __init__(self, api_key: str, model: str, base_url: str | None = None) -> None:
        self.api_key = str(api_key or "")
        self.model = str(model or "").strip()
        self.base_url = str(base_url or "").strip() or None
        if not self.api_key or not self.model:
            raise ConfigurationError("GeminiProvider requires api_key and model")

    def _generate_sync(
        self,
        contents: list[dict[str, Any]],
        system_instruction: str | None,
        generation_config: dict[str, Any],
    ) -> object:
        import google.generativeai as genai  # type: ignore[import-not-found]

        client_options = {"api_endpoint": self.base_url} if self.base_url else None
        with _CONFIGURE_LOCK:
            genai.configure(api_key=self.api_key, client_options=client_options)
            model = genai.GenerativeModel(model_name=self.model, system_instruction=system_instruction)
        return model.generate_content(
            contents,
            generation_config=generation_config,
            safety_settings=_SAFETY_SETTINGS,
        )

    async def complete_with_usage(
        self,
        messages: list[Message],
        temperature: float = 0.3,
        max_tokens: int | None = None,
        response_schema: dict[str, Any] | None = None,
    ) -> LLMCompletionResult:
        system_instruction, rest = _split_system_instruction(messages)
        started = time.perf_counter()
        try:
            response = await asyncio.to_thread(
                self._generate_sync,
                _to_gemini_contents(rest),
                system_instruction,
                build_generation_config(temperature, max_tokens, response_schema),
            )
        except Exception as exc:
            logger.warning("llm request failed (provider=gemini, model=%s): %s", self.model, exc)
            raise _map_sdk_error(exc) from exc

        result = LLMCompletionResult(
            text=_response_text(response),
            usage=_parse_usage_metadata(response),
            finish_reason=_finish_reason(response),
        )
        usage = result.usage
        logger.info(
            "llm call (provider=gemini, model=%s, latency_ms=%s, prompt_tokens=%s, completion_tokens=%s, finish_reason=%s, chars=%d)",
            self.model,
            int((time.perf_counter() - started) * 1000),
            usage.prompt_tokens if usage else None,
            usage.completion_tokens if usage else None,
            result.finish_reason,
            len(result.text),
        )
        return result
