"""One batch-edit request (fix timestamps, retranslate or proofread)."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Literal

from bisub.config import ModelTier
from bisub.models.serializers import subtitles_to_payload
from bisub.models.subtitle import GlossaryItem, SubtitleItem
from bisub.pipeline.context import PipelineContext
from bisub.providers.llm.base import Message
from bisub.stages.base import StageResult
from bisub.stages.base_llm import SUBTITLE_ARRAY_SCHEMA, BaseLLMStage
from bisub.stages.prompts import InstructionMode, batch_prompt, system_instruction
from bisub.utils.subtitle_parser import items_from_json

logger = logging.getLogger(__name__)

BatchMode = Literal["fix_timestamps", "retranslate", "proofread"]

MODE_TIERS: dict[BatchMode, ModelTier] = {
    "fix_timestamps": "fast",
    "retranslate": "fast",
    "proofread": "power",
}

_INSTRUCTION_MODES: dict[BatchMode, InstructionMode] = {
    "fix_timestamps": "fix_timestamps",
    "retranslate": "translation",
    "proofread": "proofread",
}

_MODE_RULES: dict[BatchMode, str] = {
    "fix_timestamps": (
        "MODE RULES: fix timing and segmentation only. NEVER modify 'text_translated'. "
        "Newly inserted lines may leave 'text_translated' empty."
    ),
    "proofread": (
        "MODE RULES: improve translation quality. NEVER modify the timestamps of existing lines; "
        "only newly inserted lines for missed speech get new timestamps."
    ),
    "retranslate": (
        "MODE RULES: translate 'text_original' again from scratch into 'text_translated'. "
        "Keep ids, timestamps and 'text_original' unchanged. No audio is provided."
    ),
}


def build_instructions(mode: BatchMode, batch_comment: str, *, has_line_comments: bool) -> str:
    comment = batch_comment.strip()
    parts: list[str] = []
    if comment and has_line_comments:
        parts.append(
            f"USER INSTRUCTION FOR THIS BATCH (applies to every line):\n{comment}\n\n"
            'Lines with a "comment" field carry additional line-specific instructions; follow those too.'
        )
    elif comment:
        parts.append(f"USER INSTRUCTION FOR THIS BATCH (applies to every line):\n{comment}")
    elif has_line_comments:
        parts.append(
            'Only lines with a "comment" field need changes. Return every other line exactly as given '
            "(same id, timing and text)."
        )
    parts.append(_MODE_RULES[mode])
    return "\n\n".join(parts)


def apply_offset_heuristic(items: list[SubtitleItem], offset: float, expected_start: float) -> list[SubtitleItem]:
    """Shift items by `offset` when the model answered in slice-relative time.

    The first returned start is compared with 0 (relative) and with the
    expected absolute start; the shift only happens when 0 is closer.
    """
    if not items or offset == 0:
        return items
    first = items[0].start
    if abs(first) < abs(first - expected_start):
        return [replace(s, start=s.start + offset, end=s.end + offset) for s in items]
    return items


def enforce_mode_rules(mode: BatchMode, before: list[SubtitleItem], after: list[SubtitleItem]) -> list[SubtitleItem]:
    """Restore the fields a mode must not touch on lines that already existed."""
    previous = {s.id: s for s in before}
    out: list[SubtitleItem] = []
    for item in after:
        old = previous.get(item.id)
        if old is not None:
            match mode:
                case "fix_timestamps":
                    item = replace(item, translated=old.translated)
                case "proofread":
                    item = replace(item, start=old.start, end=old.end)
                case "retranslate":
                    item = replace(item, start=old.start, end=old.end, original=old.original)
        out.append(replace(item, comment=None))
    return out


@dataclass
class BatchRequest:
    mode: BatchMode
    items: list[SubtitleItem]
    label: str
    batch_comment: str = ""
    last_end_time: float | None = None
    glossary: list[GlossaryItem] = field(default_factory=list)


class BatchEditStage(BaseLLMStage[BatchRequest, list[SubtitleItem]]):
    """Send one merged group of batches to the model and map the answer back.

    Returns absolute-time items with comments cleared, or an empty list when
    the model produced nothing usable.
    """

    name = "batch_edit"

    def _get_system_prompt(self, mode: BatchMode, glossary: list[GlossaryItem]) -> str:
        gen = self.settings.generation
        custom = {
            "proofread": gen.custom_proofread_prompt,
            "retranslate": gen.custom_translation_prompt,
        }.get(mode)
        return system_instruction(
            _INSTRUCTION_MODES[mode],
            genre=gen.genre,
            target_language=gen.target_language,
            custom_prompt=custom,
            glossary=glossary,
            max_segment_s=float(gen.refine_max_segment_s),
            max_segment_chars=int(gen.refine_max_segment_chars),
        )

    def validate_input(self, data: BatchRequest, context: PipelineContext[Any]) -> bool:
        return bool(data.items)

    async def execute(self, data: BatchRequest, context: PipelineContext[Any]) -> StageResult[list[SubtitleItem]]:
        items = data.items
        total = context.audio.duration if context.audio is not None else None
        audio: bytes | None = None
        offset = 0.0
        if data.mode != "retranslate" and context.audio is not None:
            pad = float(self.settings.audio.context_padding_s)
            offset = max(0.0, items[0].start - pad)
            slice_end = min(context.audio.duration, max(s.end for s in items) + pad)
            audio = context.audio.slice_wav(offset, slice_end)

        payload = subtitles_to_payload(items, offset=offset, include_comments=True)
        last_end = max(0.0, data.last_end_time - offset) if data.last_end_time is not None else None
        instructions = build_instructions(
            data.mode, data.batch_comment, has_line_comments=any(s.comment for s in items)
        )
        messages = [
            Message(role="system", content=self._get_system_prompt(data.mode, data.glossary)),
            Message(
                role="user",
                content=batch_prompt(
                    payload,
                    label=data.label,
                    last_end_time=last_end,
                    total_duration=total,
                    instructions=instructions,
                    with_audio=audio is not None,
                ),
                audio=audio,
            ),
        ]
        raw = await self.complete_json_array(
            messages, response_schema=SUBTITLE_ARRAY_SCHEMA, label=f"{data.mode} batch {data.label}"
        )
        parsed = items_from_json(
            raw,
            media_duration=total,
            rules=self.timestamp_rules,
            drop_beyond_media_s=float(self.settings.timestamps.drop_beyond_media_s),
        )
        if not parsed:
            return StageResult(output=[], metadata={"empty": True})
        shifted = apply_offset_heuristic(parsed, offset, items[0].start)
        out = enforce_mode_rules(data.mode, items, shifted)
        return StageResult(output=out, metadata={"offset_applied": shifted is not parsed, "offset_s": offset})
