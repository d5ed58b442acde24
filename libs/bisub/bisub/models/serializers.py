"""Serialization helpers for subtitle lists, glossaries and QC issues."""

from __future__ import annotations

from typing import Any

from bisub.models.subtitle import GlossaryItem, SubtitleIssue, SubtitleItem
from bisub.utils.timestamps import format_timestamp, parse_timestamp

_SEVERITIES = {"high", "medium", "low"}


def serialize_subtitles(items: list[SubtitleItem]) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for s in items:
        data: dict[str, Any] = {
            "id": int(s.id),
            "start": format_timestamp(s.start),
            "end": format_timestamp(s.end),
            "text_original": str(s.original or ""),
            "text_translated": str(s.translated or ""),
        }
        if s.comment:
            data["comment"] = s.comment
        out.append(data)
    return out


def deserialize_subtitles(items: list[dict[str, Any]]) -> list[SubtitleItem]:
    out: list[SubtitleItem] = []
    for idx, item in enumerate(items, start=1):
        out.append(
            SubtitleItem(
                id=int(item.get("id") or idx),
                start=parse_timestamp(item.get("start")),
                end=parse_timestamp(item.get("end")),
                original=str(item.get("text_original") or item.get("original") or ""),
                translated=str(item.get("text_translated") or item.get("translated") or ""),
                comment=item.get("comment") or None,
            )
        )
    return out


def subtitles_to_payload(
    items: list[SubtitleItem],
    *,
    offset: float = 0.0,
    include_comments: bool = False,
) -> list[dict[str, Any]]:
    """Render subtitles for a prompt, with times shifted by ``-offset``."""
    out: list[dict[str, Any]] = []
    for s in items:
        data: dict[str, Any] = {
            "id": int(s.id),
            "start": format_timestamp(max(0.0, s.start - offset)),
            "end": format_timestamp(max(0.0, s.end - offset)),
            "text_original": s.original,
            "text_translated": s.translated,
        }
        if include_comments and s.comment:
            data["comment"] = s.comment
        out.append(data)
    return out


def serialize_glossary(items: list[GlossaryItem]) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for g in items:
        data: dict[str, Any] = {"term": g.term, "translation": g.translation}
        if g.notes:
            data["notes"] = g.notes
        out.append(data)
    return out


def deserialize_glossary(items: Any) -> list[GlossaryItem]:
    if not isinstance(items, list):
        return []
    out: list[GlossaryItem] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        term = str(item.get("term") or "").strip()
        translation = str(item.get("translation") or "").strip()
        if not term or not translation:
            continue
        notes = item.get("notes")
        out.append(GlossaryItem(term=term, translation=translation, notes=str(notes) if notes else None))
    return out


def serialize_issues(items: list[SubtitleIssue]) -> list[dict[str, Any]]:
    return [
        {
            "id": i.id,
            "type": i.type,
            "segment_id": int(i.segment_id),
            "timestamp": i.timestamp,
            "description": i.description,
            "severity": i.severity,
            "round_identified": int(i.round_identified),
            **({"suggestion": i.suggestion} if i.suggestion else {}),
        }
        for i in items
    ]


def coerce_severity(value: Any) -> str:
    raw = str(value or "").strip().lower()
    return raw if raw in _SEVERITIES else "medium"
