from __future__ import annotations

import logging
from pathlib import Path
from types import SimpleNamespace

import pytest

from bisub.providers.audio import ffmpeg as ffmpeg_mod
from bisub.providers.audio.base import SilenceInterval
from bisub.providers.audio.ffmpeg import FFmpegSilenceDetector, parse_silencedetect_output
from bisub.providers.llm.base import Message
from bisub.providers.llm.gemini import (
    _finish_reason,
    _parse_usage_metadata,
    _split_system_instruction,
    _to_gemini_contents,
)
from bisub.utils.logging_setup import setup_logging
from bisub.utils.subprocess import RunResult

_SILENCE_LOG = """
[silencedetect @ 0x1] silence_start: -0.01
[silencedetect @ 0x1] silence_end: 1.5 | silence_duration: 1.51
size=N/A time=00:00:10.00 bitrate=N/A
[silencedetect @ 0x1] silence_start: 4.25
[silencedetect @ 0x1] silence_end: 5.0 | silence_duration: 0.75
[silencedetect @ 0x1] silence_start: 9.5
"""


def test_parse_silencedetect_output_pairs_intervals() -> None:
    assert parse_silencedetect_output(_SILENCE_LOG) == [
        SilenceInterval(start=0.0, end=1.5),
        SilenceInterval(start=4.25, end=5.0),
    ]


def test_parse_silencedetect_output_closes_trailing_silence() -> None:
    out = parse_silencedetect_output(_SILENCE_LOG, total_duration=10.0)
    assert out[-1] == SilenceInterval(start=9.5, end=10.0)
    assert out[-1].midpoint == pytest.approx(9.75)


@pytest.mark.asyncio
async def test_silence_detector_runs_ffmpeg_filter(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[list[str]] = []

    async def _fake_run(args, *, timeout_s=None):  # noqa: ANN001
        calls.append(list(args))
        return RunResult(returncode=0, stdout=b"", stderr=_SILENCE_LOG.encode("utf-8"))

    monkeypatch.setattr(ffmpeg_mod, "run_subprocess", _fake_run)
    detector = FFmpegSilenceDetector("ffmpeg", noise_db=-30.0, min_silence_s=0.4)
    silences = await detector.detect_silences("/tmp/a.wav")

    assert len(silences) == 2
    assert "silencedetect=noise=-30.0dB:d=0.4" in calls[0]


@pytest.mark.asyncio
async def test_ffmpeg_failure_raises_with_stderr_tail(monkeypatch: pytest.MonkeyPatch) -> None:
    async def _fake_run(args, *, timeout_s=None):  # noqa: ANN001
        return RunResult(returncode=1, stdout=b"", stderr=b"Invalid data found when processing input")

    monkeypatch.setattr(ffmpeg_mod, "run_subprocess", _fake_run)
    detector = FFmpegSilenceDetector("ffmpeg")
    with pytest.raises(RuntimeError, match="Invalid data found"):
        await detector.detect_silences("/tmp/broken.wav")


def test_gemini_message_mapping_moves_system_to_instruction() -> None:
    system, rest = _split_system_instruction(
        [
            Message(role="system", content="be terse"),
            Message(role="user", content="hi", audio=b"RIFF"),
            Message(role="assistant", content="[1"),
        ]
    )
    assert system == "be terse"
    contents = _to_gemini_contents(rest)
    assert [c["role"] for c in contents] == ["user", "model"]
    assert contents[0]["parts"][0] == {"inline_data": {"mime_type": "audio/wav", "data": b"RIFF"}}
    assert contents[0]["parts"][1] == {"text": "hi"}


def test_gemini_usage_and_finish_reason_parsing() -> None:
    response = SimpleNamespace(
        usage_metadata=SimpleNamespace(prompt_token_count=12, candidates_token_count=30, total_token_count=42),
        candidates=[SimpleNamespace(finish_reason=SimpleNamespace(name="MAX_TOKENS"))],
    )
    usage = _parse_usage_metadata(response)
    assert usage is not None
    assert (usage.prompt_tokens, usage.completion_tokens, usage.total_tokens) == (12, 30, 42)
    assert _finish_reason(response) == "MAX_TOKENS"
    assert _parse_usage_metadata(SimpleNamespace()) is None
    assert _finish_reason(SimpleNamespace(candidates=[])) is None


def test_setup_logging_configures_bisub_logger_once(settings) -> None:  # noqa: ANN001
    logger = logging.getLogger("bisub")
    saved = (logger.handlers, logger.level, logger.propagate, getattr(logger, "_bisub_configured", False))
    logger.handlers = []
    if hasattr(logger, "_bisub_configured"):
        delattr(logger, "_bisub_configured")
    try:
        settings.logging.level = "debug"
        settings.logging.file = "bisub.log"
        setup_logging(settings)
        assert logger.level == logging.DEBUG
        assert logger.propagate is False
        assert len(logger.handlers) == 2
        assert (Path(settings.log_dir) / "bisub.log").exists()

        assert logging.getLogger("httpx").level == logging.WARNING

        settings.logging.level = "ERROR"
        setup_logging(settings)
        assert logger.level == logging.DEBUG
        setup_logging(settings, force=True)
        assert logger.level == logging.ERROR
        assert len(logger.handlers) == 2
    finally:
        logging.getLogger("httpx").setLevel(logging.NOTSET)
        for handler in logger.handlers:
            handler.close()
        logger.handlers, level, logger.propagate, configured = saved
        logger.setLevel(level)
        setattr(logger, "_bisub_configured", configured)
