"""Glossary extraction (two-pass, audio-grounded)."""

from __future__ import annotations

import logging
import math
from typing import Any

from bisub.config import RetryConfig, Settings
from bisub.exceptions import ProviderError, ResponseParseError
from bisub.models.serializers import deserialize_glossary
from bisub.models.subtitle import Chunk, GlossaryChunkResult, GlossaryExtractionResult, GlossaryItem
from bisub.pipeline.concurrency import map_in_parallel
from bisub.pipeline.context import GlossaryConfirmHook, PipelineContext
from bisub.providers.llm.base import Message
from bisub.stages.base import StageResult
from bisub.stages.base_llm import BaseLLMStage
from bisub.stages.prompts import glossary_extraction_prompt
from bisub.utils.llm_json import LLMJSONHelper, unwrap_json_array

logger = logging.getLogger(__name__)

GLOSSARY_SCHEMA: dict[str, Any] = {
    "type": "array",
    "items": {
        "type": "object",
        "properties": {
            "term": {"type": "string"},
            "translation": {"type": "string"},
            "notes": {"type": "string"},
        },
        "required": ["term", "translation"],
    },
}

_GLOSSARY_KEYS = ("terms", "glossary", "items")


def merge_glossaries(primary: list[GlossaryItem], extra: list[GlossaryItem]) -> list[GlossaryItem]:
    """Union by term (case-insensitive); entries from `primary` win."""
    out: list[GlossaryItem] = []
    seen: set[str] = set()
    for item in [*primary, *extra]:
        key = item.term.strip().casefold()
        if not key or key in seen:
            continue
        seen.add(key)
        out.append(item)
    return out


def sample_chunks(chunks: list[Chunk], *, sample_minutes: float | None, chunk_duration_s: float) -> list[Chunk]:
    if sample_minutes is None or sample_minutes <= 0:
        return list(chunks)
    count = max(1, math.ceil(sample_minutes * 60.0 / max(1e-3, chunk_duration_s)))
    return list(chunks[:count])


class GlossaryExtractionStage(BaseLLMStage[list[Chunk], GlossaryExtractionResult]):
    """Extract key terms per sampled chunk.

    Pass 1 covers every sampled chunk. Pass 2 retries only the chunks that
    failed, at half the concurrency, to relieve rate-limit pressure.
    """

    name = "glossary_extraction"
    default_tier = "power"

    def __init__(self, settings: Settings, **kwargs: Any) -> None:
        super().__init__(settings, **kwargs)
        retry = settings.retry
        self.json_helper = LLMJSONHelper(
            self.llm,
            max_continuations=int(settings.llm_limits.max_continuations),
            retry=RetryConfig(
                attempts=retry.attempts,
                base_delay_s=retry.glossary_base_delay_s,
                max_jitter_s=retry.glossary_max_jitter_s,
            ),
            temperature=float(settings.llm_limits.temperature),
            max_tokens=int(settings.llm_limits.max_output_tokens),
        )

    def _get_system_prompt(self) -> str:
        gen = self.settings.generation
        return glossary_extraction_prompt(genre=gen.genre, target_language=gen.target_language)

    async def _extract_chunk(self, chunk: Chunk, context: PipelineContext[Any]) -> GlossaryChunkResult:
        audio = context.audio.slice_wav(chunk.start, chunk.end) if context.audio is not None else None
        messages = [
            Message(role="system", content=self._get_system_prompt()),
            Message(role="user", content="Extract terminology from this audio.", audio=audio),
        ]
        label = f"glossary chunk {chunk.index}"
        try:
            result = await self.complete_json(messages, response_schema=GLOSSARY_SCHEMA, label=label)
        except ProviderError as exc:
            logger.warning("glossary extraction failed (chunk=%d): %s", chunk.index, exc)
            return GlossaryChunkResult(chunk_index=chunk.index, confidence="low")
        if not result.success or result.data is None:
            return GlossaryChunkResult(chunk_index=chunk.index, confidence="low")
        try:
            terms = deserialize_glossary(unwrap_json_array(result.data, _GLOSSARY_KEYS))
        except ResponseParseError as exc:
            logger.warning("glossary response has unexpected shape (chunk=%d): %s", chunk.index, exc)
            return GlossaryChunkResult(chunk_index=chunk.index, confidence="low")
        return GlossaryChunkResult(chunk_index=chunk.index, terms=terms, confidence="high")

    async def execute(
        self, data: list[Chunk], context: PipelineContext[Any]
    ) -> StageResult[GlossaryExtractionResult]:
        gen = self.settings.generation
        chunks = sample_chunks(
            data,
            sample_minutes=gen.glossary_sample_minutes,
            chunk_duration_s=float(gen.chunk_duration_s),
        )
        if not chunks:
            return StageResult(output=GlossaryExtractionResult())

        concurrency = self.get_concurrency_limit()

        async def _worker(chunk: Chunk, _index: int) -> GlossaryChunkResult:
            return await self._extract_chunk(chunk, context)

        logger.info("glossary pass 1 start (chunks=%d, concurrency=%d)", len(chunks), concurrency)
        results = {r.chunk_index: r for r in await map_in_parallel(chunks, concurrency, _worker)}

        failed = [c for c in chunks if results[c.index].failed]
        if failed:
            retry_concurrency = max(1, concurrency // 2)
            logger.info(
                "glossary pass 2 start (failed_chunks=%d, concurrency=%d)", len(failed), retry_concurrency
            )
            for r in await map_in_parallel(failed, retry_concurrency, _worker):
                results[r.chunk_index] = r

        ordered = [results[c.index] for c in chunks]
        out = GlossaryExtractionResult(
            results=ordered,
            total_terms=sum(len(r.terms) for r in ordered),
            has_failures=any(r.failed for r in ordered),
        )
        logger.info(
            "glossary extraction done (chunks=%d, terms=%d, still_failed=%d)",
            len(ordered),
            out.total_terms,
            sum(1 for r in ordered if r.failed),
        )
        return StageResult(output=out, metadata={"sampled_chunks": len(chunks), "retried_chunks": len(failed)})

    async def resolve(
        self,
        chunks: list[Chunk],
        context: PipelineContext[Any],
        *,
        user_glossary: list[GlossaryItem] | None = None,
        confirm: GlossaryConfirmHook | None = None,
    ) -> list[GlossaryItem]:
        """Run extraction and produce the job glossary.

        The confirm hook only runs when something was found or a chunk failed;
        its answer is final. Without a hook the extracted terms are merged
        into the user glossary.
        """
        extraction = (await self.execute(chunks, context)).output
        base = list(user_glossary or [])
        if confirm is not None and (extraction.total_terms > 0 or extraction.has_failures):
            confirmed = list(await confirm(extraction))
            logger.info("glossary confirmed (terms=%d)", len(confirmed))
            return confirmed
        merged = merge_glossaries(base, extraction.all_terms())
        logger.info("glossary resolved (user_terms=%d, final_terms=%d)", len(base), len(merged))
        return merged
