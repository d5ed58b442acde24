"""Audio-grounded refinement of a raw chunk transcript."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any

from bisub.exceptions import ProviderError, ResponseParseError
from bisub.models.subtitle import Chunk, GlossaryItem, SubtitleItem
from bisub.pipeline.context import PipelineContext
from bisub.providers.llm.base import Message
from bisub.stages.base import StageResult
from bisub.stages.base_llm import BaseLLMStage
from bisub.stages.prompts import refinement_prompt, system_instruction
from bisub.utils.subtitle_parser import is_filler_only, items_from_json
from bisub.utils.timestamps import format_timestamp

logger = logging.getLogger(__name__)

REFINEMENT_SCHEMA: dict[str, Any] = {
    "type": "array",
    "items": {
        "type": "object",
        "properties": {
            "start": {"type": "string"},
            "end": {"type": "string"},
            "text": {"type": "string"},
        },
        "required": ["start", "end", "text"],
    },
}


@dataclass
class RefinementInput:
    chunk: Chunk
    segments: list[SubtitleItem]
    glossary: list[GlossaryItem] = field(default_factory=list)


class RefinementStage(BaseLLMStage[RefinementInput, list[SubtitleItem]]):
    """Fix transcription errors and timing against the chunk audio.

    Never fatal: when the model call fails or returns nothing usable the raw
    transcript is passed through unchanged.
    """

    name = "refinement"
    default_tier = "fast"

    def _get_system_prompt(self, glossary: list[GlossaryItem]) -> str:
        gen = self.settings.generation
        return system_instruction(
            "refinement",
            genre=gen.genre,
            target_language=gen.target_language,
            custom_prompt=gen.custom_refinement_prompt,
            glossary=glossary,
            max_segment_s=float(gen.refine_max_segment_s),
            max_segment_chars=int(gen.refine_max_segment_chars),
        )

    async def execute(
        self, data: RefinementInput, context: PipelineContext[Any]
    ) -> StageResult[list[SubtitleItem]]:
        chunk = data.chunk
        raw = list(data.segments)
        if not raw:
            return StageResult(output=[])

        payload = [
            {"start": format_timestamp(s.start), "end": format_timestamp(s.end), "text": s.original}
            for s in raw
        ]
        audio = context.audio.slice_wav(chunk.start, chunk.end) if context.audio is not None else None
        messages = [
            Message(role="system", content=self._get_system_prompt(data.glossary)),
            Message(
                role="user",
                content=refinement_prompt(payload, genre=self.settings.generation.genre, has_glossary=bool(data.glossary)),
                audio=audio,
            ),
        ]

        try:
            raw_items = await self.complete_json_array(
                messages, response_schema=REFINEMENT_SCHEMA, label=f"refine chunk {chunk.index}"
            )
        except (ProviderError, ResponseParseError) as exc:
            logger.warning("refinement failed, falling back to raw transcript (chunk=%d): %s", chunk.index, exc)
            return StageResult(output=raw, metadata={"fallback": True})

        refined = items_from_json(
            raw_items,
            media_duration=chunk.duration,
            rules=self.timestamp_rules,
            drop_beyond_media_s=float(self.settings.timestamps.drop_beyond_media_s),
        )
        kept = [s for s in refined if not is_filler_only(s.original)]
        if not kept:
            logger.warning(
                "refinement returned no usable segments, falling back to raw transcript (chunk=%d, returned=%d)",
                chunk.index,
                len(raw_items),
            )
            return StageResult(output=raw, metadata={"fallback": True})

        out = [replace(s, id=i, comment=None) for i, s in enumerate(kept, start=1)]
        logger.info(
            "refinement done (chunk=%d, raw=%d, refined=%d, fillers_removed=%d)",
            chunk.index,
            len(raw),
            len(out),
            len(refined) - len(kept),
        )
        return StageResult(output=out, metadata={"fallback": False, "fillers_removed": len(refined) - len(kept)})
