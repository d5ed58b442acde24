"""Token usage accounting across every LLM call of a job."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any

from bisub.providers.llm.base import LLMCompletionResult, LLMProvider, Message

logger = logging.getLogger(__name__)


@dataclass
class UsageBucket:
    calls: int = 0
    errors: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    latency_ms: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class UsageTracker:
    """Accumulates usage per (tier, model)."""

    def __init__(self) -> None:
        self._buckets: dict[tuple[str, str], UsageBucket] = {}

    def _bucket(self, tier: str, model: str) -> UsageBucket:
        key = (str(tier or "fast"), str(model or "unknown"))
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = self._buckets[key] = UsageBucket()
        return bucket

    def record(
        self,
        *,
        tier: str,
        model: str,
        result: LLMCompletionResult | None,
        latency_ms: int,
        error: bool = False,
    ) -> None:
        bucket = self._bucket(tier, model)
        bucket.calls += 1
        bucket.latency_ms += int(latency_ms)
        if error:
            bucket.errors += 1
        usage = result.usage if result is not None else None
        if usage is not None:
            bucket.prompt_tokens += int(usage.prompt_tokens or 0)
            bucket.completion_tokens += int(usage.completion_tokens or 0)

    def snapshot(self) -> dict[tuple[str, str], UsageBucket]:
        return {k: UsageBucket(**vars(v)) for k, v in self._buckets.items()}

    @property
    def total_tokens(self) -> int:
        return sum(b.total_tokens for b in self._buckets.values())

    def log_report(self, job: str = "job") -> None:
        if not self._buckets:
            logger.info("token usage (job=%s, calls=0)", job)
            return
        for (tier, model), bucket in sorted(self._buckets.items()):
            logger.info(
                "token usage (job=%s, tier=%s, model=%s, calls=%d, errors=%d, prompt_tokens=%d, completion_tokens=%d, avg_latency_ms=%d)",
                job,
                tier,
                model,
                bucket.calls,
                bucket.errors,
                bucket.prompt_tokens,
                bucket.completion_tokens,
                bucket.latency_ms // max(1, bucket.calls),
            )
        logger.info("token usage total (job=%s, total_tokens=%d)", job, self.total_tokens)


class UsageTrackingLLMProvider(LLMProvider):
    """LLMProvider wrapper that reports every call to a UsageTracker."""

    def __init__(self, inner: LLMProvider, *, tracker: UsageTracker, tier: str) -> None:
        self._inner = inner
        self._tracker = tracker
        self.tier = str(tier or "fast")
        self.provider = str(getattr(inner, "provider", "") or "unknown")
        self.model = str(getattr(inner, "model", "") or "unknown")

    async def complete_with_usage(
        self,
        messages: list[Message],
        temperature: float = 0.3,
        max_tokens: int | None = None,
        response_schema: dict[str, Any] | None = None,
    ) -> LLMCompletionResult:
        started = time.perf_counter()
        try:
            out = await self._inner.complete_with_usage(
                messages,
                temperature=temperature,
                max_tokens=max_tokens,
                response_schema=response_schema,
            )
        except Exception:
            self._tracker.record(
                tier=self.tier,
                model=self.model,
                result=None,
                latency_ms=int((time.perf_counter() - started) * 1000),
                error=True,
            )
            raise
        self._tracker.record(
            tier=self.tier,
            model=self.model,
            result=out,
            latency_ms=int((time.perf_counter() - started) * 1000),
        )
        return out

    async def close(self) -> None:
        await self._inner.close()
