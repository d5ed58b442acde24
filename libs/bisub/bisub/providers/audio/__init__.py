"""Audio/media providers."""

from bisub.providers.audio.base import AudioProvider, SilenceDetector, SilenceInterval

__all__ = ["AudioProvider", "SilenceDetector", "SilenceInterval"]
