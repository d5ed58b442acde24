"""Shared retry utilities for provider calls."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from bisub.exceptions import (
    ConfigurationError,
    PipelineCancelledError,
    ProviderError,
    RetryableProviderError,
)

T = TypeVar("T")

_logger = logging.getLogger(__name__)


def is_retryable_error(exc: BaseException) -> bool:
    """Classify an exception as transient (retry) or permanent (surface now)."""
    if not isinstance(exc, Exception):
        return False
    if isinstance(exc, (ConfigurationError, PipelineCancelledError)):
        return False
    if isinstance(exc, RetryableProviderError):
        return True
    if isinstance(exc, ProviderError):
        status = exc.status_code
        if status is None:
            return True
        return status in {408, 429} or status >= 500
    # Network, parse and unknown failures get the same bounded retry.
    return True


def log_retry(logger: logging.Logger, label: str) -> Callable[[RetryCallState], None]:
    def _log(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        wait_s = state.next_action.sleep if state.next_action else None
        logger.warning(
            "retrying (call=%s, attempt=%s, wait_s=%s, error=%s)",
            label,
            state.attempt_number,
            round(wait_s, 3) if wait_s is not None else None,
            exc,
        )

    return _log


def build_retrying(
    *,
    attempts: int = 3,
    base_delay_s: float = 2.0,
    max_jitter_s: float = 1.0,
    label: str = "llm",
    logger: logging.Logger | None = None,
) -> AsyncRetrying:
    """Exponential backoff (base, 2*base, 4*base...) plus uniform jitter."""
    return AsyncRetrying(
        retry=retry_if_exception(is_retryable_error),
        stop=stop_after_attempt(max(1, int(attempts))),
        wait=wait_exponential(multiplier=base_delay_s, min=0) + wait_random(0, max_jitter_s),
        before_sleep=log_retry(logger or _logger, label),
        reraise=True,
    )


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    base_delay_s: float = 2.0,
    max_jitter_s: float = 1.0,
    label: str = "llm",
    logger: logging.Logger | None = None,
) -> T:
    retrying = build_retrying(
        attempts=attempts,
        base_delay_s=base_delay_s,
        max_jitter_s=max_jitter_s,
        label=label,
        logger=logger,
    )
    # tenacity dispatches on `iscoroutinefunction`; callers often pass lambdas.
    async def _attempt() -> T:
        return await fn()

    return await retrying(_attempt)
