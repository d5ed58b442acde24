"""Generation orchestrator (chunked fan-out over the chunk workers)."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from bisub.config import Settings
from bisub.exceptions import PipelineCancelledError, StageExecutionError
from bisub.models.subtitle import Chunk, GlossaryItem, SubtitleItem
from bisub.pipeline.chunk_worker import ChunkWorker
from bisub.pipeline.concurrency import ConcurrencyTracker, map_in_parallel
from bisub.pipeline.context import (
    CancelCheck,
    ChunkProgressCallback,
    GlossaryConfirmHook,
    IntermediateResultCallback,
    PipelineContext,
    ProgressReporter,
)
from bisub.pipeline.glossary_state import GlossaryState
from bisub.pipeline.segmentation import fixed_chunks, smart_chunks
from bisub.providers import get_asr_provider, get_llm_provider
from bisub.providers.asr.base import ASRProvider
from bisub.providers.audio.base import SilenceDetector
from bisub.providers.llm.base import LLMProvider
from bisub.services.usage import UsageTracker
from bisub.stages.glossary import GlossaryExtractionStage
from bisub.stages.refinement import RefinementStage
from bisub.stages.transcription import TranscriptionStage
from bisub.stages.translation import TranslationStage
from bisub.utils.audio import AudioSource

logger = logging.getLogger(__name__)


def resequence(items: list[SubtitleItem]) -> list[SubtitleItem]:
    """Return copies with ids renumbered 1..N in list order."""
    return [replace(s, id=i) for i, s in enumerate(items, start=1)]


def flatten_in_order(per_chunk: dict[int, list[SubtitleItem]]) -> list[SubtitleItem]:
    return resequence([s for index in sorted(per_chunk) for s in per_chunk[index]])


@dataclass
class GenerationResult:
    subtitles: list[SubtitleItem]
    chunks: list[Chunk]
    glossary: list[GlossaryItem] = field(default_factory=list)
    failed_chunks: list[int] = field(default_factory=list)
    usage: UsageTracker = field(default_factory=UsageTracker)
    elapsed_s: float = 0.0


@dataclass
class GenerationJob:
    """Per-run inputs visible to every stage through the pipeline context."""

    glossary: list[GlossaryItem] = field(default_factory=list)
    audio_path: str | None = None


class GenerationOrchestrator:
    """Turn one decoded media file into a bilingual subtitle list.

    Providers are shared across runs; trackers, glossary state and stage
    instances are created per run so two jobs never share limits.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        asr: ASRProvider | None = None,
        llm_fast: LLMProvider | None = None,
        llm_power: LLMProvider | None = None,
        silence_detector: SilenceDetector | None = None,
    ) -> None:
        self.settings = settings
        if asr is None:
            cfg = settings.asr.model_dump()
            cfg["max_concurrent"] = max(1, int(settings.concurrency.asr))
            asr = get_asr_provider(cfg)
        self.asr = asr
        self.llm_fast = llm_fast if llm_fast is not None else get_llm_provider(settings.llm_config_for("fast"))
        self.llm_power = llm_power if llm_power is not None else get_llm_provider(settings.llm_config_for("power"))
        self.silence_detector = silence_detector

    async def _derive_chunks(self, audio: AudioSource, audio_path: str | Path | None) -> list[Chunk]:
        gen = self.settings.generation
        total = audio.duration
        if not gen.smart_split or audio_path is None:
            return fixed_chunks(total, float(gen.chunk_duration_s))

        detector = self.silence_detector
        if detector is None:
            from bisub.providers.audio.ffmpeg import FFmpegSilenceDetector

            detector = FFmpegSilenceDetector(
                self.settings.audio.ffmpeg_bin,
                noise_db=float(self.settings.audio.silence_noise_db),
                min_silence_s=float(self.settings.audio.silence_min_duration_s),
            )
        try:
            silences = await detector.detect_silences(str(audio_path))
        except Exception as exc:
            logger.warning("silence detection failed, using fixed chunks: %s", exc)
            return fixed_chunks(total, float(gen.chunk_duration_s))
        return smart_chunks(total, float(gen.chunk_duration_s), silences)

    def _chunk_concurrency(self, total_chunks: int) -> int:
        return max(1, min(int(self.settings.concurrency.chunks), total_chunks))

    async def run(
        self,
        audio: AudioSource,
        *,
        audio_path: str | Path | None = None,
        glossary: list[GlossaryItem] | None = None,
        on_chunk_status: ChunkProgressCallback | None = None,
        on_intermediate: IntermediateResultCallback | None = None,
        on_glossary_confirm: GlossaryConfirmHook | None = None,
        progress_reporter: ProgressReporter | None = None,
        cancel_check: CancelCheck | None = None,
    ) -> GenerationResult:
        settings = self.settings
        started = time.monotonic()
        chunks = await self._derive_chunks(audio, audio_path)
        usage = UsageTracker()
        tracker = ConcurrencyTracker.from_settings(settings)
        user_glossary = list(glossary or [])
        context: PipelineContext[GenerationJob] = PipelineContext(
            data=GenerationJob(glossary=user_glossary, audio_path=str(audio_path) if audio_path else None),
            audio=audio,
        )
        logger.info(
            "generation start (duration_s=%.2f, chunks=%d, smart_split=%s, glossary=%s)",
            audio.duration,
            len(chunks),
            settings.generation.smart_split,
            settings.generation.enable_glossary,
        )
        if not chunks:
            return GenerationResult(subtitles=[], chunks=[], glossary=user_glossary, usage=usage)

        glossary_state: GlossaryState
        if settings.generation.enable_glossary:
            extractor = GlossaryExtractionStage(settings, llm=self.llm_power, tracker=tracker, usage=usage)

            async def _produce() -> list[GlossaryItem]:
                return await extractor.resolve(
                    chunks, context, user_glossary=user_glossary, confirm=on_glossary_confirm
                )

            glossary_state = GlossaryState(_produce)
            glossary_state.start()
        else:
            glossary_state = GlossaryState.resolved(user_glossary)

        worker = ChunkWorker(
            transcription=TranscriptionStage(settings, provider=self.asr, tracker=tracker),
            refinement=RefinementStage(settings, llm=self.llm_fast, tracker=tracker, usage=usage),
            translation=TranslationStage(settings, llm=self.llm_fast, tracker=tracker, usage=usage),
            glossary=glossary_state,
            total_chunks=len(chunks),
            on_status=on_chunk_status,
            cancel_check=cancel_check,
        )

        completed: dict[int, list[SubtitleItem]] = {}
        failed: list[int] = []
        skip_failures = settings.generation.chunk_failure_policy == "skip"

        async def _run_chunk(chunk: Chunk, _index: int) -> list[SubtitleItem]:
            try:
                items = await worker.run(chunk, context)
            except StageExecutionError as exc:
                if not skip_failures:
                    raise
                logger.warning("skipping failed chunk (index=%d): %s", chunk.index, exc)
                failed.append(chunk.index)
                items = []
            completed[chunk.index] = items
            if on_intermediate is not None:
                on_intermediate(flatten_in_order(completed))
            if progress_reporter is not None:
                await progress_reporter.report(
                    int(len(completed) * 100 / len(chunks)), f"{len(completed)}/{len(chunks)} chunks"
                )
            return items

        try:
            per_chunk = await map_in_parallel(
                chunks,
                self._chunk_concurrency(len(chunks)),
                _run_chunk,
                cancel_on_error=not skip_failures,
            )
        except (StageExecutionError, PipelineCancelledError):
            await glossary_state.aclose()
            usage.log_report("generation")
            raise

        final_glossary = await glossary_state.get() if glossary_state.is_ready else user_glossary
        await glossary_state.aclose()
        subtitles = resequence([s for items in per_chunk for s in items])
        elapsed = time.monotonic() - started
        logger.info(
            "generation done (chunks=%d, subtitles=%d, failed_chunks=%d, elapsed_s=%.2f, peak_llm_fast=%d, peak_llm_power=%d)",
            len(chunks),
            len(subtitles),
            len(failed),
            elapsed,
            tracker.peak("llm_fast"),
            tracker.peak("llm_power"),
        )
        usage.log_report("generation")
        return GenerationResult(
            subtitles=subtitles,
            chunks=chunks,
            glossary=final_glossary,
            failed_chunks=sorted(failed),
            usage=usage,
            elapsed_s=elapsed,
        )

    async def run_file(self, media_path: str | Path, **kwargs: Any) -> GenerationResult:
        """Extract audio from any media file with ffmpeg, then `run`."""
        from bisub.providers import get_audio_provider

        audio_cfg = self.settings.audio
        provider = get_audio_provider({"provider": "ffmpeg", **audio_cfg.model_dump()})
        workdir = Path(self.settings.data_dir) / "workdir"
        workdir.mkdir(parents=True, exist_ok=True)
        wav_path = workdir / f"{Path(media_path).stem}.wav"
        await provider.extract_audio(str(media_path), str(wav_path))
        audio = AudioSource.from_wav_file(wav_path)
        return await self.run(audio, audio_path=wav_path, **kwargs)

    async def close(self) -> None:
        await self.asr.close()
        await self.llm_fast.close()
        await self.llm_power.close()
