"""Provider factory and registry."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from bisub.exceptions import ConfigurationError
from bisub.providers.asr.base import ASRProvider
from bisub.providers.audio.base import AudioProvider
from bisub.providers.llm.base import LLMProvider


def get_asr_provider(config: Mapping[str, Any]) -> ASRProvider:
    """Get ASR provider based on configuration."""
    provider_type = str(config.get("provider", "openai_whisper")).strip().lower()

    match provider_type:
        case "openai_whisper" | "whisper" | "openai":
            from bisub.providers.asr.openai_whisper import OpenAIWhisperProvider

            return OpenAIWhisperProvider(
                base_url=str(config.get("base_url") or "https://api.openai.com/v1"),
                api_key=str(config.get("api_key") or ""),
                model=str(config.get("model") or "whisper-1"),
                max_concurrent=int(config.get("max_concurrent", 5)),
                timeout=float(config.get("timeout", 600.0)),
            )
        case _:
            raise ConfigurationError(f"Unknown ASR provider: {provider_type}")


def get_llm_provider(config: Mapping[str, Any]) -> LLMProvider:
    """Get LLM provider based on configuration."""
    provider_type = str(config.get("provider", "gemini")).strip().lower()

    match provider_type:
        case "openai" | "openai_compat":
            from bisub.providers.llm.openai_compat import OpenAICompatProvider

            return OpenAICompatProvider(
                api_key=str(config.get("api_key") or ""),
                model=str(config.get("model") or "gpt-4o"),
                base_url=config.get("base_url"),
                provider=provider_type,
                timeout=float(config.get("timeout", 600.0)),
            )
        case "gemini":
            from bisub.providers.llm.gemini import GeminiProvider

            api_key = str(config.get("api_key") or "").strip()
            model = str(config.get("model") or "").strip()
            if not api_key or not model:
                raise ConfigurationError(
                    f"Gemini provider requires api_key/model (got api_key={bool(api_key)} model={model!r})"
                )
            return GeminiProvider(
                api_key=api_key,
                model=model,
                base_url=config.get("base_url"),
            )
        case _:
            raise ConfigurationError(f"Unknown LLM provider: {provider_type}")


def get_audio_provider(config: Mapping[str, Any]) -> AudioProvider:
    provider_type = str(config.get("provider", "ffmpeg")).strip().lower()

    match provider_type:
        case "ffmpeg" | "default":
            from bisub.providers.audio.ffmpeg import FFmpegProvider

            return FFmpegProvider(
                ffmpeg_bin=str(config.get("ffmpeg_bin") or "ffmpeg"),
                sample_rate=int(config.get("sample_rate", 16000)),
            )
        case _:
            raise ConfigurationError(f"Unknown audio provider: {provider_type}")
