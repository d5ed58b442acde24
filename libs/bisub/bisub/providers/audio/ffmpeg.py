"""FFmpeg-based audio utilities."""

from __future__ import annotations

import logging
import re
from pathlib import Path

from bisub.providers.audio.base import AudioProvider, SilenceDetector, SilenceInterval
from bisub.utils.ffmpeg import resolve_ffmpeg_bin
from bisub.utils.subprocess import RunResult, run_subprocess

logger = logging.getLogger(__name__)

_SILENCE_START_RE = re.compile(r"silence_start:\s*(-?\d+(?:\.\d+)?)")
_SILENCE_END_RE = re.compile(r"silence_end:\s*(-?\d+(?:\.\d+)?)")


def parse_silencedetect_output(stderr: str, total_duration: float | None = None) -> list[SilenceInterval]:
    """Parse `silencedetect` log lines into closed silence intervals."""
    out: list[SilenceInterval] = []
    pending_start: float | None = None
    for line in stderr.splitlines():
        m_start = _SILENCE_START_RE.search(line)
        if m_start:
            pending_start = max(0.0, float(m_start.group(1)))
            continue
        m_end = _SILENCE_END_RE.search(line)
        if m_end and pending_start is not None:
            end = float(m_end.group(1))
            if end > pending_start:
                out.append(SilenceInterval(start=pending_start, end=end))
            pending_start = None
    # Trailing silence runs to the end of the file.
    if pending_start is not None and total_duration is not None and total_duration > pending_start:
        out.append(SilenceInterval(start=pending_start, end=float(total_duration)))
    return out


class FFmpegProvider(AudioProvider):
    def __init__(self, ffmpeg_bin: str = "ffmpeg", sample_rate: int = 16000) -> None:
        self.ffmpeg_bin = resolve_ffmpeg_bin(ffmpeg_bin)
        self.sample_rate = int(sample_rate)

    async def _run(self, args: list[str]) -> RunResult:
        try:
            result = await run_subprocess(args)
        except FileNotFoundError as exc:
            raise RuntimeError(
                f"ffmpeg binary not found: {self.ffmpeg_bin}. "
                "Install ffmpeg and ensure it is in PATH (or install `imageio-ffmpeg` in the env, "
                "or set AUDIO_FFMPEG_BIN)."
            ) from exc
        if result.returncode != 0:
            raise RuntimeError(
                "ffmpeg failed "
                f"(code={result.returncode}).\n"
                f"cmd: {' '.join(args)}\n"
                f"stderr: {result.stderr_text[-4000:]}"
            )
        return result

    async def extract_audio(self, input_path: str, output_path: str) -> str:
        """从视频提取音频，输出 16kHz 单声道 WAV"""
        output = Path(output_path)
        output.parent.mkdir(parents=True, exist_ok=True)
        await self._run(
            [
                self.ffmpeg_bin,
                "-y",
                "-i",
                str(input_path),
                "-vn",
                "-ar",
                str(self.sample_rate),
                "-ac",
                "1",
                "-f",
                "wav",
                str(output),
            ]
        )
        logger.info("audio extracted (input=%s, output=%s)", input_path, output)
        return str(output)


class FFmpegSilenceDetector(FFmpegProvider, SilenceDetector):
    """Finds silence gaps with the `silencedetect` filter (used for smart splitting)."""

    def __init__(
        self,
        ffmpeg_bin: str = "ffmpeg",
        *,
        noise_db: float = -35.0,
        min_silence_s: float = 0.5,
    ) -> None:
        super().__init__(ffmpeg_bin)
        self.noise_db = float(noise_db)
        self.min_silence_s = float(min_silence_s)

    async def detect_silences(self, audio_path: str) -> list[SilenceInterval]:
        result = await self._run(
            [
                self.ffmpeg_bin,
                "-hide_banner",
                "-nostats",
                "-i",
                str(audio_path),
                "-af",
                f"silencedetect=noise={self.noise_db}dB:d={self.min_silence_s}",
                "-f",
                "null",
                "-",
            ]
        )
        silences = parse_silencedetect_output(result.stderr_text)
        logger.info("silence detected (path=%s, intervals=%d)", audio_path, len(silences))
        return silences
