"""Shared base class for LLM-powered stages."""

from __future__ import annotations

from typing import Any

from bisub.config import ModelTier, Settings
from bisub.pipeline.concurrency import ConcurrencyTracker, ServiceType
from bisub.providers import get_llm_provider
from bisub.providers.llm.base import LLMProvider, Message
from bisub.services.usage import UsageTracker, UsageTrackingLLMProvider
from bisub.stages.base import I, O, Stage
from bisub.utils.llm_json import JSONRetryResult, LLMJSONHelper
from bisub.utils.timestamps import TimestampRules

SUBTITLE_ARRAY_SCHEMA: dict[str, Any] = {
    "type": "array",
    "items": {
        "type": "object",
        "properties": {
            "id": {"type": "integer"},
            "start": {"type": "string"},
            "end": {"type": "string"},
            "text_original": {"type": "string"},
            "text_translated": {"type": "string"},
        },
        "required": ["start", "end", "text_original", "text_translated"],
    },
}


class BaseLLMStage(Stage[I, O]):
    """Base class for LLM-powered stages."""

    default_tier: ModelTier = "fast"

    def __init__(
        self,
        settings: Settings,
        *,
        llm: LLMProvider | None = None,
        tier: ModelTier | None = None,
        tracker: ConcurrencyTracker | None = None,
        usage: UsageTracker | None = None,
    ) -> None:
        self.settings = settings
        self.tier: ModelTier = tier or self.default_tier
        inner = llm if llm is not None else get_llm_provider(settings.llm_config_for(self.tier))
        self.usage = usage if usage is not None else UsageTracker()
        self.llm = (
            inner
            if isinstance(inner, UsageTrackingLLMProvider)
            else UsageTrackingLLMProvider(inner, tracker=self.usage, tier=self.tier)
        )
        self.tracker = tracker if tracker is not None else ConcurrencyTracker.from_settings(settings)
        self.json_helper = LLMJSONHelper(
            self.llm,
            max_continuations=int(settings.llm_limits.max_continuations),
            retry=settings.retry,
            temperature=float(settings.llm_limits.temperature),
            max_tokens=int(settings.llm_limits.max_output_tokens),
        )

    @property
    def service(self) -> ServiceType:
        return "llm_power" if self.tier == "power" else "llm_fast"

    @property
    def timestamp_rules(self) -> TimestampRules:
        return TimestampRules(
            unit_shift_buffer_s=float(self.settings.timestamps.unit_shift_buffer_s),
            unit_shift_ms_scale=int(self.settings.timestamps.unit_shift_ms_scale),
        )

    def get_concurrency_limit(self) -> int:
        """Return concurrency limit for the current model tier."""
        return self.settings.concurrency_for(self.tier)

    async def complete_json(
        self,
        messages: list[Message],
        *,
        response_schema: dict[str, Any] | None = None,
        label: str,
    ) -> JSONRetryResult:
        async with self.tracker.acquire(self.service):
            return await self.json_helper.complete_json(messages, response_schema=response_schema, label=label)

    async def complete_json_array(
        self,
        messages: list[Message],
        *,
        response_schema: dict[str, Any] | None = None,
        label: str,
    ) -> list[Any]:
        async with self.tracker.acquire(self.service):
            return await self.json_helper.complete_json_array(
                messages, response_schema=response_schema, label=label
            )

    async def close(self) -> None:
        await self.llm.close()
