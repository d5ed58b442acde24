"""Job-level services."""

from bisub.services.usage import UsageTracker, UsageTrackingLLMProvider

__all__ = ["UsageTracker", "UsageTrackingLLMProvider"]
