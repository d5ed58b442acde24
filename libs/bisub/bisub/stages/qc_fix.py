"""QC Fix: apply corrections for the reviewed issues."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any

from bisub.models.quality import QCJob, QCState
from bisub.models.serializers import subtitles_to_payload
from bisub.models.subtitle import SubtitleIssue, SubtitleItem
from bisub.pipeline.context import PipelineContext
from bisub.providers.llm.base import Message
from bisub.stages.base import StageResult
from bisub.stages.base_llm import SUBTITLE_ARRAY_SCHEMA, BaseLLMStage
from bisub.stages.prompts import dump_payload, glossary_block, qc_fix_prompt
from bisub.utils.subtitle_parser import items_from_json
from bisub.utils.timestamps import format_timestamp, parse_timestamp

logger = logging.getLogger(__name__)

_TIME_EPSILON_S = 0.0005


def changed_ids(before: list[SubtitleItem], after: list[SubtitleItem]) -> list[int]:
    """Ids whose translation or timing differ, plus ids that did not exist."""
    previous = {s.id: s for s in before}
    out: list[int] = []
    for item in after:
        old = previous.get(item.id)
        if (
            old is None
            or old.translated != item.translated
            or abs(old.start - item.start) > _TIME_EPSILON_S
            or abs(old.end - item.end) > _TIME_EPSILON_S
        ):
            out.append(item.id)
    return out


def relative_issue(issue: SubtitleIssue, offset: float) -> SubtitleIssue:
    if not issue.timestamp:
        return issue
    return replace(issue, timestamp=format_timestamp(max(0.0, parse_timestamp(issue.timestamp) - offset)))


class QCFixStage(BaseLLMStage[QCState, QCState]):
    """Ask the model for corrected subtitles.

    Resolution is not checked here; Validate does that. Changed ids are
    recorded for auditing only.
    """

    name = "qc_fix"
    default_tier = "power"

    async def execute(self, data: QCState, context: PipelineContext[QCJob]) -> StageResult[QCState]:
        if not data.issues:
            logger.info("qc fix skipped (round=%d, no issues)", context.iteration)
            return StageResult(output=replace(data, changed_ids=[]), metadata={"skipped": True})

        job = context.data
        gen = self.settings.generation
        issues = [relative_issue(i, job.offset) for i in data.issues]
        audio = context.audio.slice_wav(job.offset, job.end) if context.audio is not None else None
        messages = [
            Message(
                role="system",
                content=qc_fix_prompt(gen.genre, issues, target_language=gen.target_language)
                + glossary_block(job.glossary),
            ),
            Message(
                role="user",
                content=f"Subtitles:\n{dump_payload(subtitles_to_payload(data.subtitles, offset=job.offset))}",
                audio=audio,
            ),
        ]
        raw = await self.complete_json_array(
            messages, response_schema=SUBTITLE_ARRAY_SCHEMA, label=f"qc fix round {context.iteration}"
        )
        fixed = items_from_json(
            raw,
            media_duration=max(0.0, job.end - job.offset),
            rules=self.timestamp_rules,
            drop_beyond_media_s=float(self.settings.timestamps.drop_beyond_media_s),
        )
        if not fixed:
            logger.warning("qc fix returned nothing usable, keeping subtitles (round=%d)", context.iteration)
            return StageResult(output=replace(data, changed_ids=[]), metadata={"fallback": True})

        working = [replace(s, start=s.start + job.offset, end=s.end + job.offset) for s in fixed]
        changed = changed_ids(data.subtitles, working)
        logger.info(
            "qc fix done (round=%d, issues=%d, subtitles=%d->%d, changed=%d)",
            context.iteration,
            len(data.issues),
            len(data.subtitles),
            len(working),
            len(changed),
        )
        return StageResult(
            output=QCState(subtitles=working, issues=list(data.issues), changed_ids=changed),
            metadata={"changed_ids": changed},
        )
