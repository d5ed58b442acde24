"""Chunk boundary derivation (fixed-length or silence-aware)."""

from __future__ import annotations

import logging

from bisub.models.subtitle import Chunk
from bisub.providers.audio.base import SilenceInterval

logger = logging.getLogger(__name__)

SEARCH_WINDOW_RATIO = 0.1
MAX_SEARCH_WINDOW_S = 30.0
MIN_CHUNK_S = 10.0


def fixed_chunks(total_duration: float, chunk_duration: float) -> list[Chunk]:
    """Partition `[0, total)` into consecutive chunks (1-based index)."""
    if total_duration <= 0:
        return []
    step = max(1e-3, float(chunk_duration))
    chunks: list[Chunk] = []
    start = 0.0
    while start < total_duration:
        end = min(total_duration, start + step)
        chunks.append(Chunk(index=len(chunks) + 1, start=start, end=end))
        start = end
    return chunks


def _best_cut(
    target: float,
    search_start: float,
    search_end: float,
    silences: list[SilenceInterval],
) -> float | None:
    best: float | None = None
    best_distance = float("inf")
    for gap in silences:
        if gap.start < search_start or gap.end > search_end:
            continue
        distance = abs(gap.midpoint - target)
        if distance < best_distance:
            best, best_distance = gap.midpoint, distance
    return best


def smart_chunks(
    total_duration: float,
    chunk_duration: float,
    silences: list[SilenceInterval],
) -> list[Chunk]:
    """Like `fixed_chunks`, but move each cut to the nearest silence gap.

    Only gaps fully inside `target ± min(10% of chunk, 30s)` are considered,
    and a cut never lands within 10s of the chunk start. Without a gap the
    cut stays at the target.
    """
    if total_duration <= 0:
        return []
    if not silences:
        return fixed_chunks(total_duration, chunk_duration)

    ordered = sorted(silences, key=lambda s: s.start)
    window = min(float(chunk_duration) * SEARCH_WINDOW_RATIO, MAX_SEARCH_WINDOW_S)
    chunks: list[Chunk] = []
    start = 0.0
    while start < total_duration:
        target = start + float(chunk_duration)
        if target >= total_duration:
            chunks.append(Chunk(index=len(chunks) + 1, start=start, end=total_duration))
            break
        search_start = max(start + MIN_CHUNK_S, target - window)
        search_end = min(total_duration, target + window)
        cut = _best_cut(target, search_start, search_end, ordered)
        if cut is None:
            logger.debug("no silence near %.2fs, hard cut", target)
            cut = target
        else:
            logger.debug("smart split at %.2fs (target=%.2fs)", cut, target)
        chunks.append(Chunk(index=len(chunks) + 1, start=start, end=cut))
        start = cut
    return chunks
