"""Data models."""

from bisub.models.subtitle import (
    Chunk,
    ChunkStage,
    ChunkState,
    ChunkStatus,
    GlossaryChunkResult,
    GlossaryExtractionResult,
    GlossaryItem,
    SubtitleIssue,
    SubtitleItem,
)

__all__ = [
    "Chunk",
    "ChunkStage",
    "ChunkState",
    "ChunkStatus",
    "GlossaryChunkResult",
    "GlossaryExtractionResult",
    "GlossaryItem",
    "SubtitleIssue",
    "SubtitleItem",
]
