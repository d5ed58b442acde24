"""Text-only translation of refined segments in sub-batches."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any

from bisub.exceptions import ProviderError, ResponseParseError
from bisub.models.subtitle import GlossaryItem, SubtitleItem
from bisub.pipeline.concurrency import map_in_parallel
from bisub.pipeline.context import PipelineContext
from bisub.providers.llm.base import Message
from bisub.stages.base import StageResult
from bisub.stages.base_llm import BaseLLMStage
from bisub.stages.prompts import system_instruction, translation_batch_prompt
from bisub.utils.subtitle_parser import TRANSLATED_KEYS

logger = logging.getLogger(__name__)

TRANSLATION_SCHEMA: dict[str, Any] = {
    "type": "array",
    "items": {
        "type": "object",
        "properties": {
            "id": {"type": "integer"},
            "text_translated": {"type": "string"},
        },
        "required": ["id", "text_translated"],
    },
}


@dataclass
class TranslationInput:
    items: list[SubtitleItem]
    glossary: list[GlossaryItem] = field(default_factory=list)
    label: str = "translate"


def _read_translations(raw_items: list[Any], wanted: set[int]) -> dict[int, str]:
    out: dict[int, str] = {}
    for entry in raw_items:
        if not isinstance(entry, dict):
            continue
        try:
            local_id = int(entry.get("id"))
        except (TypeError, ValueError):
            continue
        if local_id not in wanted:
            continue
        for key in TRANSLATED_KEYS:
            text = str(entry.get(key) or "").strip()
            if text:
                out[local_id] = text
                break
    return out


class TranslationStage(BaseLLMStage[TranslationInput, list[SubtitleItem]]):
    """Translate subtitle text in fixed-size sub-batches.

    Ids missing from a response are requested once more. Whatever is still
    missing, and every line of a batch whose call failed, keeps the source
    text as its translation.
    """

    name = "translation"
    default_tier = "fast"

    def _get_system_prompt(self, glossary: list[GlossaryItem]) -> str:
        gen = self.settings.generation
        return system_instruction(
            "translation",
            genre=gen.genre,
            target_language=gen.target_language,
            custom_prompt=gen.custom_translation_prompt,
            glossary=glossary,
        )

    async def _request(self, pending: dict[int, SubtitleItem], system: str, *, label: str) -> dict[int, str]:
        payload = [{"id": local_id, "text": item.original} for local_id, item in pending.items()]
        messages = [
            Message(role="system", content=system),
            Message(
                role="user",
                content=translation_batch_prompt(payload, target_language=self.settings.generation.target_language),
            ),
        ]
        raw_items = await self.complete_json_array(messages, response_schema=TRANSLATION_SCHEMA, label=label)
        return _read_translations(raw_items, set(pending))

    async def _translate_batch(
        self, batch: list[SubtitleItem], system: str, *, label: str
    ) -> tuple[list[SubtitleItem], int]:
        local = {i: item for i, item in enumerate(batch, start=1)}
        try:
            translations = await self._request(local, system, label=label)
            missing = {i: item for i, item in local.items() if i not in translations}
            if missing:
                logger.warning(
                    "translation response missing ids, requesting again (call=%s, missing=%d)",
                    label,
                    len(missing),
                )
                translations.update(await self._request(missing, system, label=f"{label} missing"))
        except (ProviderError, ResponseParseError) as exc:
            logger.error("translation batch failed, echoing source text (call=%s): %s", label, exc)
            translations = {}

        out: list[SubtitleItem] = []
        echoed = 0
        for local_id, item in local.items():
            text = translations.get(local_id, "")
            if not text:
                text = item.original
                echoed += 1
            out.append(replace(item, translated=text))
        if echoed:
            logger.warning("translation fell back to source text (call=%s, items=%d)", label, echoed)
        return out, echoed

    async def execute(
        self, data: TranslationInput, context: PipelineContext[Any]
    ) -> StageResult[list[SubtitleItem]]:
        items = list(data.items)
        if not items:
            return StageResult(output=[])
        size = max(1, int(self.settings.generation.translation_batch_size))
        batches = [items[i : i + size] for i in range(0, len(items), size)]
        system = self._get_system_prompt(data.glossary)

        async def _worker(batch: list[SubtitleItem], index: int) -> tuple[list[SubtitleItem], int]:
            return await self._translate_batch(batch, system, label=f"{data.label} batch {index + 1}/{len(batches)}")

        results = await map_in_parallel(batches, self.get_concurrency_limit(), _worker)
        out = [item for batch_items, _ in results for item in batch_items]
        echoed = sum(n for _, n in results)
        return StageResult(output=out, metadata={"batches": len(batches), "echoed": echoed})
