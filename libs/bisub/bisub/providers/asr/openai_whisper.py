"""Whisper-style ASR provider (OpenAI-compatible /audio/transcriptions)."""

from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from bisub.error_codes import ErrorCode
from bisub.exceptions import RetryableProviderError, http_status_error
from bisub.providers.asr.base import ASRProvider, ASRSegment

logger = logging.getLogger(__name__)


class OpenAIWhisperProvider(ASRProvider):
    """Cloud or self-hosted Whisper endpoint returning `verbose_json` segments."""

    name = "openai_whisper"

    def __init__(
        self,
        base_url: str,
        model: str = "whisper-1",
        api_key: str = "",
        max_concurrent: int = 5,
        timeout: float = 600.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_key = api_key
        self.max_concurrent = max(1, int(max_concurrent))
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create connection-pooled HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                limits=httpx.Limits(
                    max_connections=self.max_concurrent,
                    max_keepalive_connections=max(1, self.max_concurrent // 2),
                ),
            )
        return self._client

    @staticmethod
    def _parse_segments(result: Any) -> list[ASRSegment]:
        if not isinstance(result, dict):
            return []
        raw_segments = result.get("segments")
        if not isinstance(raw_segments, list):
            # `json`/`text` responses carry no timing; keep the text as one segment.
            text = str(result.get("text") or "").strip()
            duration = float(result.get("duration") or 0.0)
            return [ASRSegment(text=text, start=0.0, end=duration)] if text else []
        out: list[ASRSegment] = []
        for seg in raw_segments:
            if not isinstance(seg, dict):
                continue
            try:
                start = float(seg.get("start") or 0.0)
                end = float(seg.get("end") or 0.0)
            except (TypeError, ValueError):
                continue
            out.append(ASRSegment(text=str(seg.get("text") or "").strip(), start=start, end=end))
        return out

    async def transcribe(
        self,
        audio_wav: bytes,
        language: str | None = None,
    ) -> list[ASRSegment]:
        client = await self._get_client()
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        files = {"file": ("chunk.wav", audio_wav, "audio/wav")}
        data = {
            "model": self.model,
            "response_format": "verbose_json",
            "timestamp_granularities[]": "segment",
        }
        if language:
            data["language"] = language

        started = time.perf_counter()
        try:
            response = await client.post(
                f"{self.base_url}/audio/transcriptions",
                headers=headers,
                files=files,
                data=data,
            )
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            logger.warning("asr request failed (provider=%s, model=%s): %s", self.name, self.model, exc)
            raise RetryableProviderError(self.name, str(exc), error_code=ErrorCode.ASR_FAILED) from exc

        status = response.status_code
        if status >= 400:
            message = f"HTTP {status} {response.reason_phrase}: {response.text[:2000]}"
            raise http_status_error(self.name, status, message, error_code=ErrorCode.ASR_FAILED)

        segments = self._parse_segments(response.json())
        logger.info(
            "asr call (provider=%s, model=%s, latency_ms=%s, segments=%d)",
            self.name,
            self.model,
            int((time.perf_counter() - started) * 1000),
            len(segments),
        )
        return segments

    async def close(self) -> None:
        """Close the HTTP client and release resources."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "OpenAIWhisperProvider":
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()
