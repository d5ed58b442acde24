"""Rule-based consistency checks on translated text (local, no model calls)."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal

from bisub.models.subtitle import SubtitleItem

ConsistencyIssueType = Literal["punctuation", "spacing", "length", "brackets", "ai_consistency", "other"]

MAX_LINE_CHARS = 35

_HAS_CHINESE_RE = re.compile(r"[一-龥]")
_HALF_COMMA_RE = re.compile(r",(?!\d)")
_HALF_PERIOD_RE = re.compile(r"\.(?!\d)")
_MISSING_SPACE_RE = re.compile(r"[一-龥][a-zA-Z0-9]|[a-zA-Z0-9][一-龥]")
_OPEN_BRACKETS_RE = re.compile(r"[（【《]")
_CLOSE_BRACKETS_RE = re.compile(r"[）】》]")


@dataclass
class ConsistencyIssue:
    type: ConsistencyIssueType
    segment_id: int
    description: str
    severity: Literal["high", "medium", "low"]


class ConsistencyValidator:
    """Flags style problems in Chinese translations."""

    @staticmethod
    def validate(subtitles: list[SubtitleItem]) -> list[ConsistencyIssue]:
        issues: list[ConsistencyIssue] = []
        for sub in subtitles:
            text = sub.translated
            if not text:
                continue

            if _HAS_CHINESE_RE.search(text):
                if _HALF_COMMA_RE.search(text):
                    issues.append(
                        ConsistencyIssue(
                            "punctuation", sub.id, "Possible half-width comma used in Chinese text", "low"
                        )
                    )
                # "..." is an accepted ellipsis.
                if _HALF_PERIOD_RE.search(text) and "..." not in text:
                    issues.append(
                        ConsistencyIssue(
                            "punctuation", sub.id, "Possible half-width period used in Chinese text", "low"
                        )
                    )

            if _MISSING_SPACE_RE.search(text):
                issues.append(
                    ConsistencyIssue(
                        "spacing", sub.id, "Missing space between Chinese and English/Number", "low"
                    )
                )

            if len(text) > MAX_LINE_CHARS:
                issues.append(
                    ConsistencyIssue(
                        "length",
                        sub.id,
                        f"Line is very long (>{MAX_LINE_CHARS} chars), consider splitting",
                        "medium",
                    )
                )

            if len(_OPEN_BRACKETS_RE.findall(text)) != len(_CLOSE_BRACKETS_RE.findall(text)):
                issues.append(ConsistencyIssue("brackets", sub.id, "Mismatched brackets detected", "medium"))
        return issues
