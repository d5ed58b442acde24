"""ASR Provider implementations."""

from bisub.providers.asr.base import ASRProvider, ASRSegment

__all__ = ["ASRProvider", "ASRSegment"]
