"""bisub exception hierarchy."""

from __future__ import annotations

from bisub.error_codes import ErrorCode


class BisubError(Exception):
    """Base error for bisub."""


class ConfigurationError(BisubError):
    """Raised when configuration or inputs are invalid."""


class ProviderError(BisubError):
    """Raised when an external provider call fails."""

    def __init__(
        self,
        provider: str,
        message: str,
        *,
        status_code: int | None = None,
        error_code: ErrorCode | str | None = None,
    ) -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.message = message
        self.status_code = status_code
        self.error_code = error_code


class RetryableProviderError(ProviderError):
    """Transient provider failure (rate limit, overload, network)."""

    def __init__(
        self,
        provider: str,
        message: str,
        *,
        status_code: int | None = None,
        rate_limited: bool = False,
        error_code: ErrorCode | str | None = None,
    ) -> None:
        super().__init__(provider, message, status_code=status_code, error_code=error_code)
        self.rate_limited = bool(rate_limited)


def http_status_error(
    provider: str,
    status: int,
    message: str,
    *,
    error_code: ErrorCode,
    rate_limited_code: ErrorCode | None = None,
) -> ProviderError:
    """Map an HTTP error status onto the retryable / permanent split.

    408, 429 and 5xx are transient; any other 4xx surfaces immediately.
    """
    if status in (408, 429) or status >= 500:
        return RetryableProviderError(
            provider,
            message,
            status_code=status,
            rate_limited=status == 429,
            error_code=(rate_limited_code or error_code) if status == 429 else error_code,
        )
    return ProviderError(provider, message, status_code=status, error_code=error_code)


class ResponseParseError(BisubError):
    """Raised when model output cannot be decoded into the expected shape."""

    def __init__(self, message: str, *, raw_text: str = "") -> None:
        super().__init__(message)
        self.raw_text = raw_text


class PipelineCancelledError(BisubError):
    """Raised when a job is cancelled at a stage boundary."""


class StageExecutionError(BisubError):
    """Raised when a pipeline stage fails."""

    def __init__(
        self,
        stage: str,
        message: str,
        *,
        chunk_index: int | None = None,
        error_code: ErrorCode | str | None = None,
    ) -> None:
        prefix = f"{stage}"
        if chunk_index is not None:
            prefix = f"{prefix} (chunk={chunk_index})"
        super().__init__(f"{prefix}: {message}")
        self.stage = stage
        self.chunk_index = chunk_index
        self.message = message
        self.error_code = error_code
