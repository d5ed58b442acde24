"""Quality-control loop over a subtitle range: Review -> Fix -> Validate."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace

from bisub.config import QualityControlConfig, Settings
from bisub.models.quality import IssueAnalysis, QCJob, QCState
from bisub.models.subtitle import GlossaryItem, SubtitleIssue, SubtitleItem
from bisub.pipeline.concurrency import ConcurrencyTracker
from bisub.pipeline.context import CancelCheck, IterationDecision, PipelineContext, QCIterationHook, StageProgressCallback
from bisub.pipeline.executor import IterationHistory, PipelineConfig, TerminationReason, execute_pipeline
from bisub.providers import get_llm_provider
from bisub.providers.llm.base import LLMProvider
from bisub.services.usage import UsageTracker
from bisub.stages.qc_fix import QCFixStage
from bisub.stages.qc_review import QCReviewStage
from bisub.stages.qc_validate import QCValidateStage
from bisub.utils.audio import AudioSource

logger = logging.getLogger(__name__)


@dataclass
class QualityControlResult:
    subtitles: list[SubtitleItem]
    issues: list[SubtitleIssue]
    iterations: int
    success: bool
    passed: bool
    termination_reason: TerminationReason
    analysis: IssueAnalysis | None = None
    history: list[IterationHistory] = field(default_factory=list)
    error: str | None = None


def splice_range(
    subtitles: list[SubtitleItem],
    working: list[SubtitleItem],
    selected_indices: list[int] | None,
) -> list[SubtitleItem]:
    """Replace `[min(selected), max(selected)]` with `working`, then re-id 1..N.

    Without a selection the whole list is replaced.
    """
    if selected_indices:
        lo, hi = min(selected_indices), max(selected_indices)
        merged = [*subtitles[:lo], *working, *subtitles[hi + 1 :]]
    else:
        merged = list(working)
    return [replace(s, id=i) for i, s in enumerate(merged, start=1)]


async def run_quality_control(
    settings: Settings,
    subtitles: list[SubtitleItem],
    audio: AudioSource | None,
    config: QualityControlConfig,
    *,
    selected_indices: list[int] | None = None,
    glossary: list[GlossaryItem] | None = None,
    llm: dict[str, LLMProvider] | None = None,
    on_iteration_complete: QCIterationHook | None = None,
    on_progress: StageProgressCallback | None = None,
    cancel_check: CancelCheck | None = None,
) -> QualityControlResult:
    """Run QC rounds over the selected subtitles (all when no selection).

    `llm` maps a model tier to a provider; missing tiers are built from
    settings. Model timestamps are relative to the audio slice
    `[first.start, last.end]` and shifted back on return.
    """
    if selected_indices:
        picked = sorted({i for i in selected_indices if 0 <= i < len(subtitles)})
        working = [subtitles[i] for i in range(picked[0], picked[-1] + 1)] if picked else []
    else:
        picked = []
        working = list(subtitles)
    if not working:
        return QualityControlResult(
            subtitles=list(subtitles),
            issues=[],
            iterations=0,
            success=True,
            passed=True,
            termination_reason="completed",
        )

    offset = float(working[0].start)
    end = float(max(s.end for s in working))
    job = QCJob(config=config, offset=offset, end=end, glossary=list(glossary or []))
    context: PipelineContext[QCJob] = PipelineContext(data=job, audio=audio, max_iterations=config.max_iterations)

    providers = dict(llm or {})
    owned: list[LLMProvider] = []

    def _provider(tier: str) -> LLMProvider:
        if tier not in providers:
            providers[tier] = get_llm_provider(settings.llm_config_for(tier))
            owned.append(providers[tier])
        return providers[tier]

    usage = UsageTracker()
    tracker = ConcurrencyTracker.from_settings(settings)
    stages = [
        QCReviewStage(settings, llm=_provider(config.review_tier), tier=config.review_tier, tracker=tracker, usage=usage),
        QCFixStage(settings, llm=_provider(config.fix_tier), tier=config.fix_tier, tracker=tracker, usage=usage),
        QCValidateStage(
            settings, llm=_provider(config.validate_tier), tier=config.validate_tier, tracker=tracker, usage=usage
        ),
    ]

    def _should_continue(state: QCState, iteration: int) -> bool:
        return not state.passed and iteration < config.max_iterations

    async def _hook(iteration: int, state: QCState) -> IterationDecision:
        assert on_iteration_complete is not None
        return await on_iteration_complete(iteration, list(state.new_issues), list(state.subtitles))

    logger.info(
        "qc start (subtitles=%d, offset_s=%.2f, end_s=%.2f, max_iterations=%d)",
        len(working),
        offset,
        end,
        config.max_iterations,
    )
    try:
        result = await execute_pipeline(
            PipelineConfig(
                name="quality_control",
                stages=stages,
                max_iterations=config.max_iterations,
                should_continue=_should_continue,
                on_iteration_complete=_hook if on_iteration_complete is not None else None,
                on_progress=on_progress,
                cancel_check=cancel_check,
            ),
            QCState(subtitles=working),
            context,
        )
    finally:
        for provider in owned:
            await provider.close()
        usage.log_report("quality_control")

    state = result.output
    final = splice_range(subtitles, state.subtitles, picked or None)
    logger.info(
        "qc done (iterations=%d, reason=%s, passed=%s, remaining_issues=%d, subtitles=%d)",
        result.iterations,
        result.termination_reason,
        state.passed,
        len(state.issues),
        len(final),
    )
    return QualityControlResult(
        subtitles=final,
        issues=list(state.issues),
        iterations=result.iterations,
        success=result.success,
        passed=state.passed,
        termination_reason=result.termination_reason,
        analysis=state.analysis,
        history=result.history,
        error=result.error,
    )
