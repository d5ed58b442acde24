"""LLM JSON parsing utilities with Markdown code block support and truncation continuation."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

from bisub.config import RetryConfig
from bisub.exceptions import ResponseParseError
from bisub.providers._retry import with_retry
from bisub.providers.llm.base import LLMCompletionResult, LLMProvider, Message

logger = logging.getLogger(__name__)

_THINK_BLOCK_RE = re.compile(r"^\s*<think>[\s\S]*?</think>\s*", re.IGNORECASE)
_THINK_TAG_RE = re.compile(r"</?think>\s*", re.IGNORECASE)
_FENCE_RE = re.compile(r"```(?:json|JSON)?")
_OPENER_RE = re.compile(r"[\[{]")

CONTINUE_PROMPT = "The response was truncated. Please continue exactly where you left off."

DEFAULT_ARRAY_KEYS = ("items", "subtitles")

JSONData = dict[str, Any] | list[Any]


def strip_markdown(text: str) -> str:
    """Remove reasoning blocks and every Markdown fence marker."""
    text = (text or "").strip()
    text = _THINK_BLOCK_RE.sub("", text).strip()
    text = _THINK_TAG_RE.sub("", text).strip()
    # Fences are removed everywhere (not only around the payload) so a
    # continuation that reopens or closes a fence still concatenates cleanly.
    return _FENCE_RE.sub("", text).strip()


def extract_balanced(text: str, opener: str) -> str | None:
    """Return the first balanced `[...]` / `{...}` span, string-aware."""
    closer = "]" if opener == "[" else "}"
    start = text.find(opener)
    if start == -1:
        return None
    depth = 0
    in_string = False
    escape = False
    for i in range(start, len(text)):
        ch = text[i]
        if escape:
            escape = False
            continue
        if ch == "\\":
            escape = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch == opener:
            depth += 1
        elif ch == closer:
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    return None


def parse_llm_json(text: str) -> JSONData:
    """Parse JSON from LLM output.

    Handles:
    - Plain JSON
    - ```json ... ``` / ``` ... ``` code blocks
    - A JSON payload followed or preceded by prose

    Raises:
        ResponseParseError: If no JSON object/array can be decoded.
    """
    raw = text or ""
    cleaned = strip_markdown(raw)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        first_error: json.JSONDecodeError | None = exc
    else:
        if isinstance(data, (dict, list)):
            return data
        first_error = None

    # Only top-level spans are candidates. An unclosed outer bracket means the
    # answer was cut off; an object nested inside it is never the payload.
    pos = 0
    while (match := _OPENER_RE.search(cleaned, pos)) is not None:
        candidate = extract_balanced(cleaned[match.start() :], match.group())
        if candidate is None:
            raise ResponseParseError(
                f"unterminated JSON {match.group()!r} at {match.start()} in model output (truncated?)",
                raw_text=raw,
            )
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            pos = match.start() + len(candidate)
            continue
        if isinstance(data, (dict, list)):
            return data
        pos = match.start() + len(candidate)

    detail = f"{first_error.msg} at {first_error.pos}" if first_error else "not a JSON object/array"
    raise ResponseParseError(f"invalid JSON in model output ({detail})", raw_text=raw)


def unwrap_json_array(data: JSONData, keys: Sequence[str] = DEFAULT_ARRAY_KEYS) -> list[Any]:
    """Decode the accepted answer shapes into a plain list.

    Accepted: a bare array, or an object carrying the array under one of `keys`.
    """
    match data:
        case list():
            return data
        case dict():
            for key in keys:
                match data.get(key):
                    case list() as items:
                        return items
            raise ResponseParseError(f"JSON object has no array under {list(keys)}")
        case _:
            raise ResponseParseError(f"unexpected JSON type: {type(data).__name__}")


def parse_llm_json_array(text: str, keys: Sequence[str] = DEFAULT_ARRAY_KEYS) -> list[Any]:
    return unwrap_json_array(parse_llm_json(text), keys)


class ContinuationState(str, Enum):
    GENERATING = "generating"
    CHECKING_PARSE = "checking_parse"
    CONTINUING = "continuing"
    DONE = "done"
    FAILED = "failed"


@dataclass
class JSONRetryResult:
    """Result of a JSON completion with continuation."""

    data: JSONData | None
    success: bool
    continuations: int
    text: str = ""
    last_error: str | None = None


class LLMJSONHelper:
    """Runs a JSON completion, continuing truncated answers.

    Transitions: GENERATING -> CHECKING_PARSE -> (DONE | CONTINUING | FAILED),
    CONTINUING -> CHECKING_PARSE. Each model call goes through the shared
    retry policy; the number of CONTINUING transitions is bounded.
    """

    def __init__(
        self,
        llm: LLMProvider,
        *,
        max_continuations: int = 3,
        retry: RetryConfig | None = None,
        temperature: float = 0.3,
        max_tokens: int | None = None,
    ) -> None:
        self.llm = llm
        self.max_continuations = max(0, int(max_continuations))
        self.retry = retry or RetryConfig()
        self.temperature = float(temperature)
        self.max_tokens = max_tokens

    async def _call(
        self,
        messages: list[Message],
        response_schema: dict[str, Any] | None,
        label: str,
    ) -> LLMCompletionResult:
        return await with_retry(
            lambda: self.llm.complete_with_usage(
                messages,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                response_schema=response_schema,
            ),
            attempts=self.retry.attempts,
            base_delay_s=self.retry.base_delay_s,
            max_jitter_s=self.retry.max_jitter_s,
            label=label,
            logger=logger,
        )

    async def complete_json(
        self,
        messages: list[Message],
        *,
        response_schema: dict[str, Any] | None = None,
        label: str = "llm",
    ) -> JSONRetryResult:
        history = list(messages)
        state = ContinuationState.GENERATING
        full_text = ""
        last = LLMCompletionResult(text="")
        continuations = 0
        last_error: str | None = None
        data: JSONData | None = None

        while True:
            match state:
                case ContinuationState.GENERATING | ContinuationState.CONTINUING:
                    last = await self._call(history, response_schema, label)
                    full_text += last.text
                    state = ContinuationState.CHECKING_PARSE

                case ContinuationState.CHECKING_PARSE:
                    exhausted = continuations >= self.max_continuations
                    if not last.truncated or exhausted:
                        try:
                            data = parse_llm_json(full_text)
                        except ResponseParseError as exc:
                            last_error = str(exc)
                        else:
                            state = ContinuationState.DONE
                            continue
                    else:
                        last_error = f"finish_reason={last.finish_reason}"
                    if exhausted:
                        state = ContinuationState.FAILED
                        continue
                    continuations += 1
                    logger.warning(
                        "llm response truncated, continuing (call=%s, attempt=%d, finish_reason=%s, chars=%d, error=%s)",
                        label,
                        continuations,
                        last.finish_reason,
                        len(full_text),
                        last_error,
                    )
                    history = history + [
                        Message(role="assistant", content=last.text),
                        Message(role="user", content=CONTINUE_PROMPT),
                    ]
                    state = ContinuationState.CONTINUING

                case ContinuationState.DONE:
                    return JSONRetryResult(
                        data=data, success=True, continuations=continuations, text=full_text
                    )

                case ContinuationState.FAILED:
                    logger.error(
                        "llm json failed after continuations (call=%s, continuations=%d, chars=%d, error=%s, tail=%r)",
                        label,
                        continuations,
                        len(full_text),
                        last_error,
                        full_text[-300:],
                    )
                    return JSONRetryResult(
                        data=None,
                        success=False,
                        continuations=continuations,
                        text=full_text,
                        last_error=last_error,
                    )

    async def complete_json_array(
        self,
        messages: list[Message],
        *,
        response_schema: dict[str, Any] | None = None,
        keys: Sequence[str] = DEFAULT_ARRAY_KEYS,
        label: str = "llm",
    ) -> list[Any]:
        """Like `complete_json` but always returns a list (empty on failure)."""
        result = await self.complete_json(messages, response_schema=response_schema, label=label)
        if not result.success or result.data is None:
            return []
        try:
            return unwrap_json_array(result.data, keys)
        except ResponseParseError as exc:
            logger.warning("llm json has unexpected shape (call=%s): %s", label, exc)
            return []
