"""Timestamp parsing, formatting and repair.

Models routinely write timestamps in the wrong shape (``"1:5"``, ``"00:01:75,000"``,
``"01:30:15"`` for a 2 minute clip). Everything here converts to the canonical
``HH:MM:SS,mmm`` form through integer arithmetic so repeated normalization is a
no-op.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

logger = logging.getLogger(__name__)

_NON_TIME_RE = re.compile(r"[^0-9:.,]")


@dataclass(frozen=True)
class TimestampRules:
    """Tunable constants for the unit-shift correction."""

    unit_shift_buffer_s: float = 30.0
    unit_shift_ms_scale: int = 10


DEFAULT_RULES = TimestampRules()


def _to_int(value: str) -> int:
    digits = "".join(ch for ch in value if ch.isdigit())
    return int(digits) if digits else 0


def _split_parts(raw: str) -> tuple[int, int, int, int]:
    """Split a cleaned timestamp into (h, m, s, ms)."""
    main, _, frac = raw.partition(",")
    parts = main.split(":")
    seconds = _to_int(parts.pop()) if parts else 0
    minutes = _to_int(parts.pop()) if parts else 0
    hours = _to_int(parts.pop()) if parts else 0
    frac_digits = "".join(ch for ch in frac if ch.isdigit())
    millis = int(frac_digits.ljust(3, "0")[:3]) if frac_digits else 0
    return hours, minutes, seconds, millis


def _carry(hours: int, minutes: int, seconds: int, millis: int) -> tuple[int, int, int, int]:
    seconds += millis // 1000
    millis %= 1000
    minutes += seconds // 60
    seconds %= 60
    hours += minutes // 60
    minutes %= 60
    return hours, minutes, seconds, millis


def _total_seconds(hours: int, minutes: int, seconds: int, millis: int) -> float:
    return hours * 3600 + minutes * 60 + seconds + millis / 1000.0


def normalize_timestamp(
    value: str | float | int | None,
    media_duration: float | None = None,
    *,
    rules: TimestampRules = DEFAULT_RULES,
) -> str:
    """Normalize any timestamp string to ``HH:MM:SS,mmm``.

    Numbers are treated as seconds. When ``media_duration`` is known and the
    carried value overshoots it by more than the buffer while it has an hours
    field, the value is reinterpreted one unit shallower (``H:M:S`` becomes
    ``M:S`` with ``S*scale`` milliseconds). The correction is a guess and is
    logged every time it fires.
    """
    if value is None:
        return format_timestamp(0.0)
    if isinstance(value, (int, float)):
        return format_timestamp(float(value))

    cleaned = _NON_TIME_RE.sub("", str(value).strip())
    cleaned = cleaned.replace(".", ",", 1)
    if not cleaned:
        return format_timestamp(0.0)

    hours, minutes, seconds, millis = _carry(*_split_parts(cleaned))

    # Decided on the carried value: a carry can create the hours field, and the
    # shift repeats until it no longer applies, so the output is a fixed point.
    if media_duration is not None and media_duration > 0:
        while hours > 0:
            total = _total_seconds(hours, minutes, seconds, millis)
            if total <= media_duration + rules.unit_shift_buffer_s:
                break
            shifted = _carry(0, hours, minutes, seconds * rules.unit_shift_ms_scale)
            logger.warning(
                "timestamp unit shift applied (raw=%s, parsed_s=%.3f, media_s=%.3f, corrected_s=%.3f)",
                value,
                total,
                media_duration,
                _total_seconds(*shifted),
            )
            hours, minutes, seconds, millis = shifted

    return f"{hours:02d}:{minutes:02d}:{seconds:02d},{millis:03d}"


def parse_timestamp(value: str | float | int | None) -> float:
    """Parse a timestamp (any tolerated shape) into seconds."""
    if value is None:
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    cleaned = _NON_TIME_RE.sub("", str(value).strip()).replace(".", ",", 1)
    if not cleaned:
        return 0.0
    hours, minutes, seconds, millis = _split_parts(cleaned)
    return _total_seconds(*_carry(hours, minutes, seconds, millis))


def format_timestamp(seconds: float) -> str:
    """Format seconds as ``HH:MM:SS,mmm`` (rounded to the millisecond)."""
    total_ms = max(0, int(round(float(seconds) * 1000)))
    hours, rem = divmod(total_ms, 3_600_000)
    minutes, rem = divmod(rem, 60_000)
    secs, millis = divmod(rem, 1000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d},{millis:03d}"


MIN_ITEM_DURATION_S = 0.5
MAX_ITEM_DURATION_S = 10.0
EXTEND_SHORT_BY_S = 1.5
CLAMP_LONG_TO_S = 5.0


def sanitize_timing(start: float, end: float) -> tuple[float, float]:
    """Apply the item-level sanity pass and return a fixed (start, end)."""
    if start > end:
        start, end = end, start
    duration = end - start
    if duration < MIN_ITEM_DURATION_S:
        end = start + EXTEND_SHORT_BY_S
    elif duration > MAX_ITEM_DURATION_S:
        end = start + CLAMP_LONG_TO_S
    return start, end
