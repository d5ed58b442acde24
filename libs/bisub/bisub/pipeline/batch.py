"""Batch operations over an existing subtitle list."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace

from bisub.config import ModelTier, Settings
from bisub.exceptions import PipelineCancelledError
from bisub.models.subtitle import ChunkState, ChunkStatus, GlossaryItem, SubtitleItem
from bisub.pipeline.concurrency import ConcurrencyTracker, map_in_parallel
from bisub.pipeline.context import CancelCheck, ChunkProgressCallback, PipelineContext
from bisub.providers import get_llm_provider
from bisub.providers.llm.base import LLMProvider
from bisub.services.usage import UsageTracker
from bisub.stages.batch_edit import MODE_TIERS, BatchEditStage, BatchMode, BatchRequest
from bisub.stages.translation import TranslationInput, TranslationStage
from bisub.utils.audio import AudioSource
from bisub.utils.timestamps import format_timestamp

logger = logging.getLogger(__name__)


def group_batches(selected: list[int], total_batches: int) -> list[list[int]]:
    """Merge consecutive selected batch indices into groups.

    When every batch is selected each batch stays its own group so the work
    still fans out.
    """
    picked = sorted({i for i in selected if 0 <= i < total_batches})
    if not picked:
        return []
    if len(picked) == total_batches:
        return [[i] for i in picked]
    groups: list[list[int]] = [[picked[0]]]
    for index in picked[1:]:
        if index == groups[-1][-1] + 1:
            groups[-1].append(index)
        else:
            groups.append([index])
    return groups


def merge_batch_comments(
    group: list[int], batch_comments: dict[int, str], subtitles: list[SubtitleItem], batch_size: int
) -> str:
    comments = [(i, batch_comments[i].strip()) for i in group if (batch_comments.get(i) or "").strip()]
    if len(group) == 1:
        return comments[0][1] if comments else ""
    lines = []
    for index, text in comments:
        first = subtitles[index * batch_size].id
        last = subtitles[min(len(subtitles), (index + 1) * batch_size) - 1].id
        lines.append(f"[IDs {first}-{last}]: {text}")
    return "\n".join(lines)


@dataclass
class BatchOperationResult:
    subtitles: list[SubtitleItem]
    processed_groups: int = 0
    failed_groups: list[str] = field(default_factory=list)
    auto_translated: int = 0
    usage: UsageTracker = field(default_factory=UsageTracker)


class BatchOperationExecutor:
    """Apply one batch mode to user-selected batches of an existing list.

    Batches are `proofread_batch_size` items wide; consecutive selections
    are merged into one request. A failing group keeps its original lines.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        llm_fast: LLMProvider | None = None,
        llm_power: LLMProvider | None = None,
    ) -> None:
        self.settings = settings
        self._owned: list[LLMProvider] = []
        self.llm: dict[ModelTier, LLMProvider] = {}
        for tier, provider in (("fast", llm_fast), ("power", llm_power)):
            if provider is None:
                provider = get_llm_provider(settings.llm_config_for(tier))
                self._owned.append(provider)
            self.llm[tier] = provider

    @property
    def batch_size(self) -> int:
        return max(1, int(self.settings.generation.proofread_batch_size))

    def total_batches(self, subtitles: list[SubtitleItem]) -> int:
        return (len(subtitles) + self.batch_size - 1) // self.batch_size

    async def _auto_translate(
        self,
        subtitles: list[SubtitleItem],
        glossary: list[GlossaryItem],
        tracker: ConcurrencyTracker,
        usage: UsageTracker,
        context: PipelineContext[None],
    ) -> tuple[list[SubtitleItem], int]:
        positions = [i for i, s in enumerate(subtitles) if s.original.strip() and not s.translated.strip()]
        if not positions:
            return subtitles, 0
        stage = TranslationStage(self.settings, llm=self.llm["fast"], tracker=tracker, usage=usage)
        try:
            result = await stage.execute(
                TranslationInput(items=[subtitles[i] for i in positions], glossary=glossary, label="auto-translate"),
                context,
            )
        except PipelineCancelledError:
            raise
        except Exception as exc:
            logger.warning("auto-translate after timestamp fix failed (items=%d): %s", len(positions), exc)
            return subtitles, 0
        out = list(subtitles)
        for position, item in zip(positions, result.output):
            out[position] = replace(out[position], translated=item.translated)
        logger.info("auto-translated new lines (items=%d)", len(positions))
        return out, len(positions)

    async def run(
        self,
        subtitles: list[SubtitleItem],
        mode: BatchMode,
        *,
        selected_batches: list[int] | None = None,
        audio: AudioSource | None = None,
        batch_comments: dict[int, str] | None = None,
        glossary: list[GlossaryItem] | None = None,
        on_status: ChunkProgressCallback | None = None,
        cancel_check: CancelCheck | None = None,
    ) -> BatchOperationResult:
        size = self.batch_size
        total = self.total_batches(subtitles)
        selected = list(range(total)) if selected_batches is None else selected_batches
        groups = group_batches(selected, total)
        comments = dict(batch_comments or {})
        terms = list(glossary or [])
        usage = UsageTracker()
        if not groups:
            return BatchOperationResult(subtitles=list(subtitles), usage=usage)

        tier = MODE_TIERS[mode]
        tracker = ConcurrencyTracker.from_settings(self.settings)
        stage = BatchEditStage(self.settings, llm=self.llm[tier], tier=tier, tracker=tracker, usage=usage)
        context: PipelineContext[None] = PipelineContext(data=None, audio=audio)
        failed: list[str] = []

        def _emit(label: str, state: ChunkState, message: str = "") -> None:
            if on_status is not None:
                on_status(ChunkStatus(id=label, total=len(groups), status=state, message=message))

        async def _run_group(group: list[int], _index: int) -> list[SubtitleItem] | None:
            if cancel_check is not None and cancel_check():
                raise PipelineCancelledError(f"{mode} cancelled")
            lo = group[0] * size
            hi = min(len(subtitles), (group[-1] + 1) * size)
            label = f"{group[0] + 1}" if len(group) == 1 else f"{group[0] + 1}-{group[-1] + 1}"
            request = BatchRequest(
                mode=mode,
                items=subtitles[lo:hi],
                label=label,
                batch_comment=merge_batch_comments(group, comments, subtitles, size),
                last_end_time=subtitles[lo - 1].end if lo > 0 else None,
                glossary=terms,
            )
            _emit(label, ChunkState.PROCESSING, f"{mode} {format_timestamp(request.items[0].start)}")
            try:
                result = await stage.execute(request, context)
            except PipelineCancelledError:
                raise
            except Exception as exc:
                logger.error("batch group failed, keeping original (mode=%s, batches=%s): %s", mode, label, exc)
                failed.append(label)
                _emit(label, ChunkState.ERROR, str(exc))
                return None
            if not result.output:
                logger.warning("batch group returned nothing, keeping original (mode=%s, batches=%s)", mode, label)
                failed.append(label)
                _emit(label, ChunkState.ERROR, "empty response")
                return None
            _emit(label, ChunkState.COMPLETED)
            return result.output

        logger.info(
            "batch start (mode=%s, tier=%s, groups=%d, selected_batches=%d, total_batches=%d)",
            mode,
            tier,
            len(groups),
            sum(len(g) for g in groups),
            total,
        )
        try:
            replacements = await map_in_parallel(groups, self.settings.concurrency_for(tier), _run_group)

            merged: list[SubtitleItem] = []
            cursor = 0
            for group, replacement in zip(groups, replacements):
                lo = group[0] * size
                hi = min(len(subtitles), (group[-1] + 1) * size)
                merged.extend(subtitles[cursor:lo])
                merged.extend(replacement if replacement is not None else subtitles[lo:hi])
                cursor = hi
            merged.extend(subtitles[cursor:])
            out = [replace(s, id=i) for i, s in enumerate(merged, start=1)]

            auto_translated = 0
            if mode == "fix_timestamps":
                out, auto_translated = await self._auto_translate(out, terms, tracker, usage, context)
        finally:
            usage.log_report("batch")

        logger.info(
            "batch done (mode=%s, groups=%d, failed=%d, subtitles=%d, auto_translated=%d)",
            mode,
            len(groups),
            len(failed),
            len(out),
            auto_translated,
        )
        return BatchOperationResult(
            subtitles=out,
            processed_groups=len(groups) - len(failed),
            failed_groups=failed,
            auto_translated=auto_translated,
            usage=usage,
        )

    async def close(self) -> None:
        for provider in self._owned:
            await provider.close()
        self._owned = []
