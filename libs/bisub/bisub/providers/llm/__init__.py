"""LLM Provider implementations."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from bisub.providers.llm.base import LLMCompletionResult, LLMProvider, LLMUsage, Message

if TYPE_CHECKING:
    from bisub.providers.llm.gemini import GeminiProvider
    from bisub.providers.llm.openai_compat import OpenAICompatProvider

__all__ = [
    "GeminiProvider",
    "LLMCompletionResult",
    "LLMProvider",
    "LLMUsage",
    "Message",
    "OpenAICompatProvider",
]


def __getattr__(name: str) -> Any:
    if name == "GeminiProvider":
        from bisub.providers.llm.gemini import GeminiProvider

        return GeminiProvider
    if name == "OpenAICompatProvider":
        from bisub.providers.llm.openai_compat import OpenAICompatProvider

        return OpenAICompatProvider
    raise AttributeError(name)
