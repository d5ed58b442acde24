"""Pipeline context and progress typing."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Generic, Literal, Protocol, TypeVar

from bisub.models.subtitle import ChunkStatus, GlossaryExtractionResult, GlossaryItem, SubtitleIssue, SubtitleItem
from bisub.utils.audio import AudioSource

T = TypeVar("T")

IterationDecision = Literal["continue", "accept", "cancel"]


class ProgressReporter(Protocol):
    async def report(self, progress: int, message: str) -> None: ...


# Callbacks are plain callables; they run inline on the event loop and must not block.
ChunkProgressCallback = Callable[[ChunkStatus], None]
IntermediateResultCallback = Callable[[list[SubtitleItem]], None]
StageProgressCallback = Callable[[str, float, str], None]
CancelCheck = Callable[[], bool]

GlossaryConfirmHook = Callable[[GlossaryExtractionResult], Awaitable[list[GlossaryItem]]]
QCIterationHook = Callable[[int, list[SubtitleIssue], list[SubtitleItem]], Awaitable[IterationDecision]]


@dataclass
class PipelineContext(Generic[T]):
    """State owned by exactly one pipeline run."""

    data: T
    audio: AudioSource | None = None
    iteration: int = 0
    max_iterations: int = 1
    metadata: dict[str, Any] = field(default_factory=dict)
