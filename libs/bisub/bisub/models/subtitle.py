"""Subtitle, chunk and glossary models."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Literal


@dataclass
class SubtitleItem:
    """One bilingual subtitle line (times in seconds, absolute to the media)."""

    id: int
    start: float
    end: float
    original: str = ""
    translated: str = ""
    comment: str | None = None

    @property
    def duration(self) -> float:
        return float(self.end) - float(self.start)


@dataclass(frozen=True)
class Chunk:
    """A time range of the source media processed as one pipeline unit."""

    index: int
    start: float
    end: float

    @property
    def duration(self) -> float:
        return self.end - self.start


class ChunkState(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class ChunkStage(str, Enum):
    TRANSCRIBING = "transcribing"
    WAITING_GLOSSARY = "waiting_glossary"
    REFINING = "refining"
    TRANSLATING = "translating"
    DONE = "done"


@dataclass
class ChunkStatus:
    """Ephemeral progress record emitted on every stage transition."""

    id: int | str
    total: int
    status: ChunkState
    stage: ChunkStage | None = None
    message: str = ""


@dataclass
class GlossaryItem:
    term: str
    translation: str
    notes: str | None = None


GlossaryConfidence = Literal["high", "low"]


@dataclass
class GlossaryChunkResult:
    chunk_index: int
    terms: list[GlossaryItem] = field(default_factory=list)
    confidence: GlossaryConfidence = "high"

    @property
    def failed(self) -> bool:
        return self.confidence == "low" and not self.terms


@dataclass
class GlossaryExtractionResult:
    results: list[GlossaryChunkResult] = field(default_factory=list)
    total_terms: int = 0
    has_failures: bool = False

    def all_terms(self) -> list[GlossaryItem]:
        return [t for r in self.results for t in r.terms]


IssueSeverity = Literal["high", "medium", "low"]


@dataclass
class SubtitleIssue:
    """A problem found by a QC review round."""

    id: str
    type: str
    segment_id: int
    timestamp: str
    description: str
    severity: IssueSeverity = "medium"
    round_identified: int = 1
    suggestion: str | None = None
