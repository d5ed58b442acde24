"""LLM Provider base class."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

TRUNCATED_FINISH_REASONS = frozenset({"MAX_TOKENS", "LENGTH"})


@dataclass
class Message:
    """A chat message, optionally carrying inline WAV audio."""

    role: str  # "system" | "user" | "assistant"
    content: str
    audio: bytes | None = None


@dataclass
class LLMUsage:
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None


@dataclass
class LLMCompletionResult:
    text: str
    usage: LLMUsage | None = None
    finish_reason: str | None = None

    @property
    def truncated(self) -> bool:
        return str(self.finish_reason or "").strip().upper() in TRUNCATED_FINISH_REASONS


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    provider: str = "llm"
    model: str = ""

    @abstractmethod
    async def complete_with_usage(
        self,
        messages: list[Message],
        temperature: float = 0.3,
        max_tokens: int | None = None,
        response_schema: dict[str, Any] | None = None,
    ) -> LLMCompletionResult:
        """Generate a completion.

        Args:
            messages: List of chat messages.
            temperature: Sampling temperature.
            max_tokens: Maximum tokens to generate.
            response_schema: Optional JSON schema the answer must follow.

        Returns:
            Generated text with usage and finish reason.
        """
        ...

    async def complete(
        self,
        messages: list[Message],
        temperature: float = 0.3,
        max_tokens: int | None = None,
        response_schema: dict[str, Any] | None = None,
    ) -> str:
        result = await self.complete_with_usage(
            messages,
            temperature=temperature,
            max_tokens=max_tokens,
            response_schema=response_schema,
        )
        return result.text

    async def close(self) -> None:
        """Close any underlying resources (optional)."""
        return None
