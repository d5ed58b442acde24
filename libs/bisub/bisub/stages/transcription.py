"""Transcription stage (ASR over one chunk of the decoded audio)."""

from __future__ import annotations

import logging
import time
from typing import Any

from bisub.config import Settings
from bisub.error_codes import ErrorCode
from bisub.exceptions import StageExecutionError
from bisub.models.subtitle import Chunk, SubtitleItem
from bisub.pipeline.concurrency import ConcurrencyTracker
from bisub.pipeline.context import PipelineContext
from bisub.providers import get_asr_provider
from bisub.providers._retry import with_retry
from bisub.providers.asr.base import ASRProvider
from bisub.stages.base import Stage, StageResult
from bisub.utils.subtitle_parser import clean_non_speech_annotations
from bisub.utils.timestamps import sanitize_timing

logger = logging.getLogger(__name__)


class TranscriptionStage(Stage[Chunk, list[SubtitleItem]]):
    """Transcribe one chunk.

    Output items are relative to the chunk start. Non-speech annotations are
    removed and segments left empty are dropped.
    """

    name = "transcription"

    def __init__(
        self,
        settings: Settings,
        *,
        provider: ASRProvider | None = None,
        tracker: ConcurrencyTracker | None = None,
    ) -> None:
        self.settings = settings
        if provider is None:
            cfg = settings.asr.model_dump()
            cfg["max_concurrent"] = max(1, int(settings.concurrency.asr))
            provider = get_asr_provider(cfg)
        self.provider = provider
        self.tracker = tracker if tracker is not None else ConcurrencyTracker.from_settings(settings)

    def validate_input(self, data: Chunk, context: PipelineContext[Any]) -> bool:
        return context.audio is not None and data.duration > 0

    async def execute(self, data: Chunk, context: PipelineContext[Any]) -> StageResult[list[SubtitleItem]]:
        if not self.validate_input(data, context):
            raise StageExecutionError(
                self.name,
                "chunk has no audio to transcribe",
                chunk_index=data.index,
                error_code=ErrorCode.ASR_FAILED,
            )
        assert context.audio is not None
        wav = context.audio.slice_wav(data.start, data.end)
        language = self.settings.generation.source_language or None
        retry = self.settings.retry
        started = time.monotonic()

        async with self.tracker.acquire("asr"):
            segments = await with_retry(
                lambda: self.provider.transcribe(wav, language=language),
                attempts=retry.attempts,
                base_delay_s=retry.base_delay_s,
                max_jitter_s=retry.max_jitter_s,
                label=f"asr chunk {data.index}",
                logger=logger,
            )

        items: list[SubtitleItem] = []
        dropped = 0
        for seg in segments:
            text = clean_non_speech_annotations(seg.text)
            if not text:
                dropped += 1
                continue
            start, end = sanitize_timing(float(seg.start), float(seg.end))
            items.append(SubtitleItem(id=len(items) + 1, start=start, end=end, original=text))

        logger.info(
            "transcription done (chunk=%d, segments=%d, dropped=%d, elapsed_s=%.2f)",
            data.index,
            len(items),
            dropped,
            time.monotonic() - started,
        )
        return StageResult(output=items, metadata={"segments": len(items), "dropped": dropped})
