"""ASR Provider base class."""

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass
class ASRSegment:
    """A transcribed segment, times relative to the submitted audio."""

    text: str
    start: float
    end: float


class ASRProvider(ABC):
    """Abstract base class for ASR providers."""

    name: str = "asr"

    @abstractmethod
    async def transcribe(
        self,
        audio_wav: bytes,
        language: str | None = None,
    ) -> list[ASRSegment]:
        """Transcribe an in-memory WAV clip.

        Args:
            audio_wav: WAV-encoded audio bytes.
            language: Optional language hint.

        Returns:
            List of transcribed segments with timing.
        """
        ...

    async def close(self) -> None:  # pragma: no cover
        return None
