"""Quality-control round state and acceptance analysis."""

from __future__ import annotations

from dataclasses import dataclass, field

from bisub.config import AcceptanceCriteria, QualityControlConfig
from bisub.models.subtitle import GlossaryItem, SubtitleIssue, SubtitleItem


@dataclass
class IssueAnalysis:
    high: int
    medium_low: int
    per_minute: float
    passed: bool


def analyze_issues(
    issues: list[SubtitleIssue],
    duration_minutes: float,
    criteria: AcceptanceCriteria,
) -> IssueAnalysis:
    """Accept when high <= max_high and (medium+low)/minutes <= max_rate.

    A zero-length range uses the raw medium/low count as the rate.
    """
    high = sum(1 for i in issues if i.severity == "high")
    medium_low = sum(1 for i in issues if i.severity in ("medium", "low"))
    rate = medium_low / duration_minutes if duration_minutes > 0 else float(medium_low)
    passed = (
        high <= criteria.max_high_severity_issues
        and rate <= criteria.max_medium_low_issues_per_minute
    )
    return IssueAnalysis(high=high, medium_low=medium_low, per_minute=rate, passed=passed)


@dataclass
class QCJob:
    """Per-run inputs shared by the Review, Fix and Validate stages."""

    config: QualityControlConfig
    offset: float = 0.0
    end: float = 0.0
    glossary: list[GlossaryItem] = field(default_factory=list)

    @property
    def duration_minutes(self) -> float:
        return max(0.0, self.end - self.offset) / 60.0


@dataclass
class QCState:
    """Value flowing Review -> Fix -> Validate, and into the next round."""

    subtitles: list[SubtitleItem]
    issues: list[SubtitleIssue] = field(default_factory=list)
    new_issues: list[SubtitleIssue] = field(default_factory=list)
    changed_ids: list[int] = field(default_factory=list)
    analysis: IssueAnalysis | None = None

    @property
    def passed(self) -> bool:
        return self.analysis is not None and self.analysis.passed
