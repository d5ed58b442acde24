"""QC Validate: classify previous issues and evaluate acceptance."""

from __future__ import annotations

import logging
from typing import Any

from bisub.models.quality import QCJob, QCState, analyze_issues
from bisub.models.serializers import subtitles_to_payload
from bisub.models.subtitle import SubtitleIssue
from bisub.pipeline.context import PipelineContext
from bisub.providers.llm.base import Message
from bisub.stages.base import StageResult
from bisub.stages.base_llm import BaseLLMStage
from bisub.stages.prompts import dump_payload, qc_validate_prompt
from bisub.stages.qc_fix import relative_issue
from bisub.stages.qc_review import issues_from_json

logger = logging.getLogger(__name__)

VALIDATION_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "resolvedIssueIds": {"type": "array", "items": {"type": "string"}},
        "unresolvedIssueIds": {"type": "array", "items": {"type": "string"}},
        "newIssues": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "type": {"type": "string"},
                    "segmentId": {"type": "integer"},
                    "timestamp": {"type": "string"},
                    "description": {"type": "string"},
                    "severity": {"type": "string"},
                },
            },
        },
    },
}


def _id_list(value: Any) -> set[str]:
    if not isinstance(value, list):
        return set()
    return {str(v) for v in value if v is not None}


class QCValidateStage(BaseLLMStage[QCState, QCState]):
    """Remaining issues = previous issues reported unresolved + new issues."""

    name = "qc_validate"
    default_tier = "power"

    async def execute(self, data: QCState, context: PipelineContext[QCJob]) -> StageResult[QCState]:
        job = context.data
        previous = list(data.issues)
        new_issues: list[SubtitleIssue] = []
        unresolved: set[str] = set()

        if previous:
            audio = context.audio.slice_wav(job.offset, job.end) if context.audio is not None else None
            messages = [
                Message(
                    role="system",
                    content=qc_validate_prompt(
                        self.settings.generation.genre, [relative_issue(i, job.offset) for i in previous]
                    ),
                ),
                Message(
                    role="user",
                    content=f"Fixed subtitles:\n{dump_payload(subtitles_to_payload(data.subtitles, offset=job.offset))}",
                    audio=audio,
                ),
            ]
            result = await self.complete_json(
                messages, response_schema=VALIDATION_SCHEMA, label=f"qc validate round {context.iteration}"
            )
            if result.success and isinstance(result.data, dict):
                unresolved = _id_list(result.data.get("unresolvedIssueIds"))
                raw_new = result.data.get("newIssues")
                new_issues = issues_from_json(
                    raw_new if isinstance(raw_new, list) else [],
                    round_identified=context.iteration,
                    id_prefix="issue-new",
                    offset=job.offset,
                    subtitles=data.subtitles,
                )
            else:
                logger.warning(
                    "qc validation unparseable, treating all issues as unresolved (round=%d)", context.iteration
                )
                unresolved = {i.id for i in previous}

        remaining = [i for i in previous if i.id in unresolved] + new_issues
        analysis = analyze_issues(remaining, job.duration_minutes, job.config.acceptance_criteria)
        logger.info(
            "qc validate done (round=%d, previous=%d, unresolved=%d, new=%d, high=%d, rate_per_min=%.2f, passed=%s)",
            context.iteration,
            len(previous),
            len(remaining) - len(new_issues),
            len(new_issues),
            analysis.high,
            analysis.per_minute,
            analysis.passed,
        )
        return StageResult(
            output=QCState(
                subtitles=list(data.subtitles),
                issues=remaining,
                new_issues=new_issues,
                changed_ids=list(data.changed_ids),
                analysis=analysis,
            ),
            metadata={"remaining": len(remaining), "passed": analysis.passed},
        )
