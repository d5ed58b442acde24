"""Media service abstractions (external collaborators of the pipeline)."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class SilenceInterval:
    start: float
    end: float

    @property
    def midpoint(self) -> float:
        return (self.start + self.end) / 2.0


class AudioProvider(ABC):
    @abstractmethod
    async def extract_audio(self, input_path: str, output_path: str) -> str:
        """Decode any media file into 16kHz mono WAV; returns the output path."""
        raise NotImplementedError

    async def close(self) -> None:  # pragma: no cover
        return None


class SilenceDetector(ABC):
    @abstractmethod
    async def detect_silences(self, audio_path: str) -> list[SilenceInterval]:
        raise NotImplementedError
