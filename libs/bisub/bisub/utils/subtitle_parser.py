"""Decode model answers into subtitle items and clean transcript text."""

from __future__ import annotations

import logging
import re
from typing import Any

from bisub.exceptions import ResponseParseError
from bisub.models.subtitle import SubtitleItem
from bisub.utils.llm_json import DEFAULT_ARRAY_KEYS, parse_llm_json_array
from bisub.utils.timestamps import (
    DEFAULT_RULES,
    TimestampRules,
    normalize_timestamp,
    parse_timestamp,
    sanitize_timing,
)

logger = logging.getLogger(__name__)

ORIGINAL_KEYS = ("text_original", "original_text", "original", "text")
TRANSLATED_KEYS = ("text_translated", "translated_text", "translated", "translation")
START_KEYS = ("start", "startTime", "start_time")
END_KEYS = ("end", "endTime", "end_time")

NON_SPEECH_KEYWORDS = (
    # English
    "laughter",
    "laughing",
    "laugh",
    "music",
    "music playing",
    "applause",
    "clapping",
    "cough",
    "coughing",
    "sigh",
    "sighing",
    "door",
    "footsteps",
    "silence",
    "pause",
    "inaudible",
    "unintelligible",
    "background noise",
    "static",
    # Japanese
    "笑",
    "笑い",
    "笑い声",
    "音楽",
    "音楽再生",
    "拍手",
    "咳",
    "咳払い",
    "ため息",
    # Chinese
    "笑声",
    "掌声",
    "音乐",
)

FILLER_WORDS = ("uh", "um", "ah", "er", "hmm", "eto", "ano", "えーと", "あの", "呃", "嗯", "那个", "就是")

_KEYWORD_ALT = "|".join(re.escape(k) for k in NON_SPEECH_KEYWORDS)
_NON_SPEECH_RE = re.compile(
    rf"\s*(?:\[[^\]]*(?:{_KEYWORD_ALT})[^\]]*\]"
    rf"|\([^)]*(?:{_KEYWORD_ALT})[^)]*\)"
    rf"|\*[^*]*(?:{_KEYWORD_ALT})[^*]*\*)\s*",
    re.IGNORECASE,
)
_FILLER_TOKEN_RE = re.compile(
    rf"^(?:{'|'.join(re.escape(w) for w in FILLER_WORDS)})+$",
    re.IGNORECASE,
)
_PUNCT_RE = re.compile(r"[\s,.!?;:…、。，！？；：~\-]+")


def clean_non_speech_annotations(text: str) -> str:
    """Remove `[music]`, `(laughter)`, `*cough*` style annotations."""
    return re.sub(r"\s+", " ", _NON_SPEECH_RE.sub(" ", text or "")).strip()


def is_filler_only(text: str) -> bool:
    tokens = [t for t in _PUNCT_RE.split(str(text or "")) if t]
    if not tokens:
        return True
    return all(_FILLER_TOKEN_RE.match(t) for t in tokens)


def _first(item: dict[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = item.get(key)
        if value not in (None, ""):
            return value
    return None


def _coerce_id(value: Any, fallback: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return fallback


def items_from_json(
    raw_items: list[Any],
    *,
    media_duration: float | None = None,
    rules: TimestampRules = DEFAULT_RULES,
    drop_beyond_media_s: float = 10.0,
) -> list[SubtitleItem]:
    """Validate decoded JSON entries and repair their timing.

    Entries without timestamps, with both texts empty, or starting beyond
    the media (after normalization, plus tolerance) are dropped.
    """
    out: list[SubtitleItem] = []
    for position, item in enumerate(raw_items, start=1):
        if not isinstance(item, dict):
            continue
        original = str(_first(item, ORIGINAL_KEYS) or "").strip()
        translated = str(_first(item, TRANSLATED_KEYS) or "").strip()
        if not original and not translated:
            continue
        raw_start = _first(item, START_KEYS)
        raw_end = _first(item, END_KEYS)
        if raw_start is None or raw_end is None:
            continue

        start = parse_timestamp(normalize_timestamp(raw_start, media_duration, rules=rules))
        end = parse_timestamp(normalize_timestamp(raw_end, media_duration, rules=rules))
        if media_duration is not None and start > media_duration + drop_beyond_media_s:
            logger.warning(
                "dropping subtitle beyond media (start_s=%.3f, media_s=%.3f, raw=%s)",
                start,
                media_duration,
                raw_start,
            )
            continue
        start, end = sanitize_timing(start, end)
        out.append(
            SubtitleItem(
                id=_coerce_id(item.get("id"), position),
                start=start,
                end=end,
                original=original,
                translated=translated,
            )
        )
    return out


def parse_subtitle_response(
    text: str,
    *,
    media_duration: float | None = None,
    rules: TimestampRules = DEFAULT_RULES,
    drop_beyond_media_s: float = 10.0,
) -> list[SubtitleItem]:
    """Parse raw model text into subtitle items (empty list when undecodable)."""
    if not text:
        return []
    try:
        raw_items = parse_llm_json_array(text, DEFAULT_ARRAY_KEYS)
    except ResponseParseError as exc:
        logger.warning("subtitle response unparseable: %s", exc)
        return []
    return items_from_json(
        raw_items,
        media_duration=media_duration,
        rules=rules,
        drop_beyond_media_s=drop_beyond_media_s,
    )
