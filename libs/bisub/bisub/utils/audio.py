"""In-memory audio (decoded once, sliced many times)."""

from __future__ import annotations

import io
import wave
from dataclasses import dataclass
from pathlib import Path


def encode_wav(pcm: bytes, *, sample_rate: int, channels: int = 1, sample_width: int = 2) -> bytes:
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(channels)
        wf.setsampwidth(sample_width)
        wf.setframerate(sample_rate)
        wf.writeframes(pcm)
    return buf.getvalue()


@dataclass(frozen=True)
class AudioSource:
    """Raw PCM of the whole media file plus its format.

    Chunk workers, batch operations and QC rounds all slice from the same
    buffer; nothing is re-decoded after the initial extraction.
    """

    pcm: bytes
    sample_rate: int = 16000
    channels: int = 1
    sample_width: int = 2

    @classmethod
    def from_wav_bytes(cls, data: bytes) -> "AudioSource":
        with wave.open(io.BytesIO(data), "rb") as wf:
            return cls(
                pcm=wf.readframes(wf.getnframes()),
                sample_rate=wf.getframerate(),
                channels=wf.getnchannels(),
                sample_width=wf.getsampwidth(),
            )

    @classmethod
    def from_wav_file(cls, path: str | Path) -> "AudioSource":
        return cls.from_wav_bytes(Path(path).read_bytes())

    @classmethod
    def silence(cls, duration_s: float, sample_rate: int = 16000) -> "AudioSource":
        frames = int(round(max(0.0, duration_s) * sample_rate))
        return cls(pcm=b"\x00\x00" * frames, sample_rate=sample_rate)

    @property
    def frame_size(self) -> int:
        return self.channels * self.sample_width

    @property
    def duration(self) -> float:
        if self.sample_rate <= 0 or self.frame_size <= 0:
            return 0.0
        return len(self.pcm) / self.frame_size / self.sample_rate

    def slice_wav(self, start: float, end: float) -> bytes:
        """Return `[start, end)` (seconds, clamped to the media) as WAV bytes."""
        total = self.duration
        start = min(max(0.0, float(start)), total)
        end = min(max(start, float(end)), total)
        first = int(start * self.sample_rate) * self.frame_size
        last = int(end * self.sample_rate) * self.frame_size
        return encode_wav(
            self.pcm[first:last],
            sample_rate=self.sample_rate,
            channels=self.channels,
            sample_width=self.sample_width,
        )
