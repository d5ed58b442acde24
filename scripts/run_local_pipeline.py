from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path

from bisub.config import QualityControlConfig, Settings
from bisub.models.serializers import deserialize_glossary, serialize_glossary, serialize_issues, serialize_subtitles
from bisub.models.subtitle import ChunkStatus
from bisub.pipeline import BatchOperationExecutor, GenerationOrchestrator, run_quality_control
from bisub.utils.audio import AudioSource
from bisub.utils.logging_setup import setup_logging

logger = logging.getLogger("bisub.scripts.run_local_pipeline")


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate bilingual subtitles for a local media file.")
    parser.add_argument("--media", required=True, help="Path to local video/audio file")
    parser.add_argument("--output", default=None, help="Output JSON path (defaults to <media>.bisub.json)")
    parser.add_argument("--target-language", default=None, help="Target language name, e.g. 'Simplified Chinese'")
    parser.add_argument("--genre", default=None, help="Content genre, e.g. anime / movie / news")
    parser.add_argument("--glossary", default=None, help="JSON file with [{term, translation, notes}]")
    parser.add_argument("--no-glossary", action="store_true", help="Disable glossary extraction")
    parser.add_argument("--no-smart-split", action="store_true", help="Use fixed-length chunks")
    parser.add_argument(
        "--batch-mode",
        choices=["fix_timestamps", "retranslate", "proofread"],
        default=None,
        help="Run one batch operation over every batch after generation",
    )
    parser.add_argument("--qc", action="store_true", help="Run the quality-control loop after generation")
    parser.add_argument("--qc-iterations", type=int, default=None, help="Maximum QC iterations")
    return parser.parse_args()


def _print_status(status: ChunkStatus) -> None:
    stage = status.stage.value if status.stage else "-"
    print(f"[chunk {status.id}/{status.total}] {status.status.value} {stage} {status.message}".rstrip())


async def _run() -> int:
    args = _parse_args()
    media_path = Path(args.media)
    if not media_path.exists():
        raise SystemExit(f"Media not found: {media_path}")

    settings = Settings()
    if args.target_language:
        settings.generation.target_language = str(args.target_language)
    if args.genre:
        settings.generation.genre = str(args.genre)
    if args.no_glossary:
        settings.generation.enable_glossary = False
    if args.no_smart_split:
        settings.generation.smart_split = False
    setup_logging(settings)

    glossary = []
    if args.glossary:
        glossary = deserialize_glossary(json.loads(Path(args.glossary).read_text(encoding="utf-8")))

    orchestrator = GenerationOrchestrator(settings)
    try:
        result = await orchestrator.run_file(media_path, glossary=glossary, on_chunk_status=_print_status)
        subtitles = result.subtitles
        wav_path = Path(settings.data_dir) / "workdir" / f"{media_path.stem}.wav"
        audio = AudioSource.from_wav_file(wav_path)

        if args.batch_mode:
            executor = BatchOperationExecutor(settings, llm_fast=orchestrator.llm_fast, llm_power=orchestrator.llm_power)
            batch = await executor.run(
                subtitles, args.batch_mode, audio=audio, glossary=result.glossary, on_status=_print_status
            )
            subtitles = batch.subtitles

        issues = []
        if args.qc:
            qc_config = QualityControlConfig()
            if args.qc_iterations is not None:
                qc_config = QualityControlConfig(max_iterations=int(args.qc_iterations))
            qc = await run_quality_control(
                settings,
                subtitles,
                audio,
                qc_config,
                glossary=result.glossary,
                llm={"fast": orchestrator.llm_fast, "power": orchestrator.llm_power},
            )
            subtitles = qc.subtitles
            issues = qc.issues
            print(f"qc iterations={qc.iterations} reason={qc.termination_reason} passed={qc.passed}")
    finally:
        await orchestrator.close()

    output = Path(args.output) if args.output else media_path.with_suffix(".bisub.json")
    output.write_text(
        json.dumps(
            {
                "subtitles": serialize_subtitles(subtitles),
                "glossary": serialize_glossary(result.glossary),
                "issues": serialize_issues(issues),
                "failed_chunks": result.failed_chunks,
            },
            ensure_ascii=False,
            indent=2,
        ),
        encoding="utf-8",
    )
    logger.info("wrote %s (subtitles=%d)", output, len(subtitles))
    print(f"output={output} subtitles={len(subtitles)} failed_chunks={len(result.failed_chunks)}")
    return 0


def main() -> None:
    raise SystemExit(asyncio.run(_run()))


if __name__ == "__main__":
    main()
