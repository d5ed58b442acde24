"""QC Review: rule checks, AI consistency pass and audio-grounded review."""

from __future__ import annotations

import logging
import time
from typing import Any

from bisub.config import Settings
from bisub.exceptions import ProviderError
from bisub.models.quality import QCJob, QCState
from bisub.models.serializers import coerce_severity, subtitles_to_payload
from bisub.models.subtitle import SubtitleIssue, SubtitleItem
from bisub.pipeline.context import PipelineContext
from bisub.providers.llm.base import Message
from bisub.stages.base import StageResult
from bisub.stages.base_llm import BaseLLMStage
from bisub.stages.prompts import ai_consistency_prompt, dump_payload, glossary_block, qc_review_prompt
from bisub.utils.consistency import ConsistencyValidator
from bisub.utils.timestamps import format_timestamp, parse_timestamp

logger = logging.getLogger(__name__)

ISSUE_ARRAY_SCHEMA: dict[str, Any] = {
    "type": "array",
    "items": {
        "type": "object",
        "properties": {
            "type": {"type": "string"},
            "segmentId": {"type": "integer"},
            "timestamp": {"type": "string"},
            "description": {"type": "string"},
            "severity": {"type": "string", "enum": ["high", "medium", "low"]},
        },
        "required": ["type", "description", "severity"],
    },
}

AI_CONSISTENCY_SAMPLE_THRESHOLD = 500


def _coerce_segment_id(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def issues_from_json(
    raw_items: list[Any],
    *,
    round_identified: int,
    id_prefix: str,
    offset: float,
    subtitles: list[SubtitleItem],
) -> list[SubtitleIssue]:
    """Decode model issues; timestamps come back relative and leave absolute."""
    starts = {s.id: s.start for s in subtitles}
    out: list[SubtitleIssue] = []
    for idx, entry in enumerate(raw_items, start=1):
        if not isinstance(entry, dict):
            continue
        description = str(entry.get("description") or "").strip()
        if not description:
            continue
        segment_id = _coerce_segment_id(entry.get("segmentId", entry.get("segment_id")))
        raw_ts = entry.get("timestamp")
        if raw_ts:
            timestamp = format_timestamp(parse_timestamp(raw_ts) + offset)
        else:
            timestamp = format_timestamp(starts.get(segment_id, offset))
        suggestion = entry.get("suggestion")
        out.append(
            SubtitleIssue(
                id=f"{id_prefix}-{round_identified}-{idx}",
                type=str(entry.get("type") or "other"),
                segment_id=segment_id,
                timestamp=timestamp,
                description=description,
                severity=coerce_severity(entry.get("severity")),  # type: ignore[arg-type]
                round_identified=round_identified,
                suggestion=str(suggestion) if suggestion else None,
            )
        )
    return out


def sample_for_consistency(subtitles: list[SubtitleItem]) -> list[SubtitleItem]:
    """First 200, middle 100 and last 100 lines of long files."""
    if len(subtitles) <= AI_CONSISTENCY_SAMPLE_THRESHOLD:
        return list(subtitles)
    mid = len(subtitles) // 2
    return [*subtitles[:200], *subtitles[mid - 50 : mid + 50], *subtitles[-100:]]


class QCReviewStage(BaseLLMStage[QCState, QCState]):
    """Collects every issue of the current working subtitles into one list."""

    name = "qc_review"
    default_tier = "power"

    def __init__(self, settings: Settings, *, validator: ConsistencyValidator | None = None, **kwargs: Any) -> None:
        super().__init__(settings, **kwargs)
        self.validator = validator or ConsistencyValidator()

    def validate_input(self, data: QCState, context: PipelineContext[Any]) -> bool:
        return bool(data.subtitles)

    def _rule_issues(self, subtitles: list[SubtitleItem], round_identified: int) -> list[SubtitleIssue]:
        starts = {s.id: s.start for s in subtitles}
        out: list[SubtitleIssue] = []
        used: set[str] = set()
        for found in self.validator.validate(subtitles):
            issue_id = f"consistency-{round_identified}-{found.segment_id}"
            n = 1
            while issue_id in used:
                n += 1
                issue_id = f"consistency-{round_identified}-{found.segment_id}-{n}"
            used.add(issue_id)
            out.append(
                SubtitleIssue(
                    id=issue_id,
                    type="other",
                    segment_id=found.segment_id,
                    timestamp=format_timestamp(starts.get(found.segment_id, 0.0)),
                    description=f"[Consistency] {found.description}",
                    severity=found.severity,
                    round_identified=round_identified,
                )
            )
        return out

    async def _ai_consistency(self, subtitles: list[SubtitleItem], round_identified: int) -> list[SubtitleIssue]:
        sample = sample_for_consistency(subtitles)
        payload = [{"id": s.id, "text_original": s.original, "text_translated": s.translated} for s in sample]
        messages = [
            Message(role="user", content=ai_consistency_prompt(payload, genre=self.settings.generation.genre)),
        ]
        try:
            raw = await self.complete_json_array(messages, label=f"qc ai consistency round {round_identified}")
        except ProviderError as exc:
            logger.warning("ai consistency check failed, skipping (round=%d): %s", round_identified, exc)
            return []
        issues = issues_from_json(
            [{**e, "type": "consistency"} for e in raw if isinstance(e, dict)],
            round_identified=round_identified,
            id_prefix="consistency-ai",
            offset=0.0,
            subtitles=subtitles,
        )
        for issue in issues:
            issue.description = f"[AI Consistency] {issue.description}"
        return issues

    async def _audio_review(
        self, subtitles: list[SubtitleItem], context: PipelineContext[QCJob]
    ) -> list[SubtitleIssue]:
        job = context.data
        audio = context.audio.slice_wav(job.offset, job.end) if context.audio is not None else None
        payload = subtitles_to_payload(subtitles, offset=job.offset)
        messages = [
            Message(
                role="system",
                content=qc_review_prompt(self.settings.generation.genre) + glossary_block(job.glossary),
            ),
            Message(role="user", content=f"Subtitles:\n{dump_payload(payload)}", audio=audio),
        ]
        raw = await self.complete_json_array(
            messages, response_schema=ISSUE_ARRAY_SCHEMA, label=f"qc review round {context.iteration}"
        )
        return issues_from_json(
            raw,
            round_identified=context.iteration,
            id_prefix="issue",
            offset=job.offset,
            subtitles=subtitles,
        )

    async def execute(self, data: QCState, context: PipelineContext[QCJob]) -> StageResult[QCState]:
        started = time.monotonic()
        round_identified = context.iteration
        rule_issues = self._rule_issues(data.subtitles, round_identified)
        ai_issues: list[SubtitleIssue] = []
        if context.data.config.run_ai_consistency_check:
            ai_issues = await self._ai_consistency(data.subtitles, round_identified)
        review_issues = await self._audio_review(data.subtitles, context)
        issues = [*rule_issues, *ai_issues, *review_issues]
        logger.info(
            "qc review done (round=%d, rule=%d, ai=%d, review=%d, elapsed_s=%.2f)",
            round_identified,
            len(rule_issues),
            len(ai_issues),
            len(review_issues),
            time.monotonic() - started,
        )
        return StageResult(
            output=QCState(subtitles=list(data.subtitles), issues=issues),
            metadata={"rule": len(rule_issues), "ai": len(ai_issues), "review": len(review_issues)},
        )
