"""Per-chunk state machine: transcribe, wait for glossary, refine, translate."""

from __future__ import annotations

import logging
import time
from dataclasses import replace
from typing import Any

from bisub.error_codes import ErrorCode
from bisub.exceptions import PipelineCancelledError, StageExecutionError
from bisub.models.subtitle import Chunk, ChunkStage, ChunkState, ChunkStatus, SubtitleItem
from bisub.pipeline.context import CancelCheck, ChunkProgressCallback, PipelineContext
from bisub.pipeline.glossary_state import GlossaryState
from bisub.stages.refinement import RefinementInput, RefinementStage
from bisub.stages.transcription import TranscriptionStage
from bisub.stages.translation import TranslationInput, TranslationStage

logger = logging.getLogger(__name__)

_STAGE_MESSAGES = {
    ChunkStage.TRANSCRIBING: "Transcribing",
    ChunkStage.WAITING_GLOSSARY: "Waiting for glossary",
    ChunkStage.REFINING: "Refining",
    ChunkStage.TRANSLATING: "Translating",
    ChunkStage.DONE: "Done",
}


class ChunkWorker:
    """Runs one chunk through the generation stages, strictly in order.

    Chunks run concurrently with each other; within a chunk every step waits
    for the previous one. Returned items carry absolute media times.
    """

    def __init__(
        self,
        *,
        transcription: TranscriptionStage,
        refinement: RefinementStage,
        translation: TranslationStage,
        glossary: GlossaryState,
        total_chunks: int,
        on_status: ChunkProgressCallback | None = None,
        cancel_check: CancelCheck | None = None,
    ) -> None:
        self.transcription = transcription
        self.refinement = refinement
        self.translation = translation
        self.glossary = glossary
        self.total_chunks = int(total_chunks)
        self.on_status = on_status
        self.cancel_check = cancel_check

    def _emit(self, chunk: Chunk, state: ChunkState, stage: ChunkStage | None, message: str = "") -> None:
        if self.on_status is None:
            return
        text = message or (_STAGE_MESSAGES.get(stage, "") if stage is not None else "")
        self.on_status(ChunkStatus(id=chunk.index, total=self.total_chunks, status=state, stage=stage, message=text))

    def _check_cancelled(self, chunk: Chunk) -> None:
        if self.cancel_check is not None and self.cancel_check():
            raise PipelineCancelledError(f"cancelled before chunk {chunk.index} finished")

    async def run(self, chunk: Chunk, context: PipelineContext[Any]) -> list[SubtitleItem]:
        started = time.monotonic()
        logger.info("chunk start (index=%d, start_s=%.2f, end_s=%.2f)", chunk.index, chunk.start, chunk.end)
        try:
            self._check_cancelled(chunk)
            self._emit(chunk, ChunkState.PROCESSING, ChunkStage.TRANSCRIBING)
            raw = (await self.transcription.execute(chunk, context)).output
            if not raw:
                logger.info("chunk has no speech (index=%d)", chunk.index)
                self._emit(chunk, ChunkState.COMPLETED, ChunkStage.DONE, "No speech")
                return []

            self._emit(chunk, ChunkState.PROCESSING, ChunkStage.WAITING_GLOSSARY)
            glossary = await self.glossary.get()
            self._check_cancelled(chunk)

            self._emit(chunk, ChunkState.PROCESSING, ChunkStage.REFINING)
            refined = (await self.refinement.execute(RefinementInput(chunk, raw, glossary), context)).output
            self._check_cancelled(chunk)

            self._emit(chunk, ChunkState.PROCESSING, ChunkStage.TRANSLATING)
            translated = (
                await self.translation.execute(
                    TranslationInput(items=refined, glossary=glossary, label=f"translate chunk {chunk.index}"),
                    context,
                )
            ).output
        except PipelineCancelledError:
            self._emit(chunk, ChunkState.ERROR, None, "Cancelled")
            raise
        except StageExecutionError as exc:
            logger.error("chunk failed (index=%d): %s", chunk.index, exc)
            self._emit(chunk, ChunkState.ERROR, None, str(exc))
            raise
        except Exception as exc:
            logger.error("chunk failed (index=%d): %s", chunk.index, exc)
            self._emit(chunk, ChunkState.ERROR, None, str(exc))
            raise StageExecutionError(
                "chunk", str(exc), chunk_index=chunk.index, error_code=ErrorCode.CHUNK_FAILED
            ) from exc

        out = [
            replace(s, start=s.start + chunk.start, end=s.end + chunk.start, comment=None) for s in translated
        ]
        logger.info(
            "chunk done (index=%d, segments=%d, elapsed_s=%.2f)", chunk.index, len(out), time.monotonic() - started
        )
        self._emit(chunk, ChunkState.COMPLETED, ChunkStage.DONE)
        return out
