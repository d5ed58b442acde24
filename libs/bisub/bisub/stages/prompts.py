"""Prompt templates shared by generation, batch and QC stages."""

from __future__ import annotations

import json
from collections.abc import Sequence
from typing import Any, Literal

from bisub.models.subtitle import GlossaryItem, SubtitleIssue
from bisub.utils.timestamps import format_timestamp

InstructionMode = Literal["refinement", "translation", "proofread", "fix_timestamps"]

FILLER_RULE = (
    "Remove filler words and hesitations (uh, um, ah, eto, ano, えーと, 呃, 嗯, 那个)"
)

_GENRE_NOTES = {
    "anime": (
        "- Preserve emotional nuances and character personality\n"
        "- Keep honorifics (-san, -kun, -chan) appropriately\n"
        "- Use casual, emotive tone in translation"
    ),
    "movie": (
        "- Natural dialogue flow is critical\n"
        "- Keep subtitles concise and easy to read\n"
        "- Match the tone and pacing of the scene"
    ),
    "news": "- Maintain formal, objective tone\n- Use standard news terminology\n- Accuracy is paramount",
    "tech": (
        "- Keep technical terms precise\n"
        "- Preserve standard English acronyms (API, SDK, etc.)\n"
        "- Ensure terminology consistency"
    ),
    "general": "- Neutral and accurate translation\n- Clear, accessible language",
}

_SEVERITY_ORDER = {"high": 0, "medium": 1, "low": 2}


def genre_guidance(genre: str) -> str:
    notes = _GENRE_NOTES.get(genre) or f"- Adapt tone and terminology for {genre} content"
    return f"\nGENRE-SPECIFIC NOTES:\n{notes}"


def glossary_block(glossary: Sequence[GlossaryItem] | None) -> str:
    if not glossary:
        return ""
    lines = []
    for g in glossary:
        note = f" ({g.notes})" if g.notes else ""
        lines.append(f"- {g.term}: {g.translation}{note}")
    return "\n\nTERMINOLOGY GLOSSARY (STRICTLY FOLLOW):\n" + "\n".join(lines)


def dump_payload(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False)


def system_instruction(
    mode: InstructionMode,
    *,
    genre: str,
    target_language: str,
    custom_prompt: str | None = None,
    glossary: Sequence[GlossaryItem] | None = None,
    max_segment_s: float = 4.0,
    max_segment_chars: int = 25,
) -> str:
    """Build the system instruction for one call mode.

    A non-empty custom prompt replaces the built-in instruction for the
    translation and proofread modes and is appended to the others; the
    glossary is always included.
    """
    terms = glossary_block(glossary)
    custom = str(custom_prompt or "").strip()
    if custom and mode in ("translation", "proofread"):
        return custom + terms
    base = _builtin_instruction(
        mode,
        genre=genre,
        target_language=target_language,
        terms=terms,
        max_segment_s=max_segment_s,
        max_segment_chars=max_segment_chars,
    )
    if custom:
        base += f"\n\nADDITIONAL USER INSTRUCTIONS:\n{custom}"
    return base


def _builtin_instruction(
    mode: InstructionMode,
    *,
    genre: str,
    target_language: str,
    terms: str,
    max_segment_s: float,
    max_segment_chars: int,
) -> str:
    split_rule = (
        f"If a segment is longer than {max_segment_s:g} seconds or > {max_segment_chars} characters, "
        "YOU MUST SPLIT IT into shorter, natural segments."
    )

    match mode:
        case "refinement":
            return (
                "You are a professional Subtitle QA Specialist.\n"
                "You will receive an audio chunk and a raw JSON transcription.\n\n"
                "YOUR TASKS:\n"
                "1. Listen to the audio to verify the transcription.\n"
                "2. CHECK FOR MISSED HEARING: if speech in the audio is missing from the transcription, ADD IT.\n"
                "3. FIX TIMESTAMPS: start/end must match the speech and stay strictly within the audio duration.\n"
                "4. FIX TRANSCRIPTION: correct mishearings, typos and proper nouns.\n"
                f"5. IGNORE FILLERS: {FILLER_RULE}.\n"
                f"6. SPLIT LINES: STRICT RULE. {split_rule}\n"
                "7. FORMAT: Return a valid JSON array.\n\n"
                f"Genre Context: {genre}{terms}"
            )
        case "translation":
            return (
                f"You are a professional translator. Translate subtitles to {target_language}.\n"
                "RULES:\n"
                "1. CHECK FOR MISSED TRANSLATION: every meaningful part of the original must be translated.\n"
                f"2. REMOVE FILLER WORDS: {FILLER_RULE}.\n"
                f"3. The translation must be fluent written {target_language}, not a literal transcription "
                "of broken speech.\n"
                '4. Maintain the "id" exactly.\n'
                "5. TERMINOLOGY: use the provided glossary for specific terms.\n"
                f"{genre_guidance(genre)}{terms}"
            )
        case "fix_timestamps":
            return (
                "You are a Subtitle Timing and Synchronization Specialist.\n"
                f"Your PRIMARY GOAL is to perfect timestamp alignment for {genre} content.\n\n"
                "TASK RULES (Strict Priority):\n"
                '[P0] If a subtitle has a "comment" field, follow that instruction exactly.\n'
                "[P1] Align start/end times to actual speech boundaries, relative to the provided audio "
                "(starting at 00:00:00,000).\n"
                f"[P2] {split_rule} Distribute timing proportionally when splitting.\n"
                "[P3] If you hear speech NOT in the subtitles, ADD new entries. "
                f"{FILLER_RULE} from 'text_original'.\n"
                "[P4] DO NOT modify 'text_translated' under ANY circumstances.\n\n"
                "OUTPUT: valid JSON matching the input structure, timestamps in HH:MM:SS,mmm, start < end.\n"
                f"Context: {genre}{terms}"
            )
        case _:
            return (
                "You are an expert Subtitle Translation Quality Specialist.\n"
                f"Your PRIMARY GOAL is to perfect the {target_language} translation quality for {genre} content.\n\n"
                "TASK RULES (Strict Priority):\n"
                '[P0] If a subtitle has a "comment" field, follow that instruction exactly.\n'
                "[P1] Fix mistranslations and missed meanings, improve awkward phrasing, apply glossary "
                "terms consistently.\n"
                "[P2] Listen to the audio. If you hear clear speech NOT in the subtitles, ADD new entries.\n"
                "[P3] DO NOT modify timestamps of existing subtitles. Only new entries get new timestamps.\n"
                "[P4] Preserve subtitles without issues as-is.\n\n"
                "OUTPUT: valid JSON matching the input structure, timestamps in HH:MM:SS,mmm.\n"
                f"{genre_guidance(genre)}{terms}"
            )


def refinement_prompt(payload: list[dict[str, Any]], *, genre: str, has_glossary: bool) -> str:
    glossary_hint = "\n→ Pay special attention to the key terminology in the system instruction" if has_glossary else ""
    return (
        "TRANSCRIPTION REFINEMENT TASK\n"
        f"Context: {genre}\n\n"
        "TASK: Refine the raw transcription by listening to the audio and correcting errors.\n\n"
        "RULES (Priority Order):\n"
        f"[P0] Process ALL {len(payload)} segments. Splitting is allowed, dropping is NOT.\n"
        f"[P1] Fix misrecognized words in 'text' and verify the timestamps.{glossary_hint}\n"
        "[P2] Split long segments at natural pauses.\n"
        f"[P3] {FILLER_RULE}. Remove stuttering and false starts.\n"
        "[P4] Return timestamps in HH:MM:SS,mmm relative to the provided audio (starting at 00:00:00,000).\n\n"
        f"Raw Transcription:\n{dump_payload(payload)}"
    )


def translation_batch_prompt(payload: list[dict[str, Any]], *, target_language: str) -> str:
    n = len(payload)
    return (
        "TRANSLATION BATCH TASK\n\n"
        f"TASK: Translate {n} subtitle segments to {target_language}.\n\n"
        "RULES (Priority Order):\n"
        f"[P1] Translate all {n} items, one-to-one with the input IDs. Do not skip any ID.\n"
        "→ Read neighbouring lines for context, but NEVER merge segments or move text between lines.\n"
        f"[P2] {FILLER_RULE}. Produce fluent, natural {target_language}.\n"
        f"[P3] 'text_translated' MUST BE in {target_language}. Keep exact ID values.\n\n"
        'Output a JSON array of {"id": number, "text_translated": string}.\n\n'
        f"Input JSON:\n{dump_payload(payload)}"
    )


def glossary_extraction_prompt(*, genre: str, target_language: str) -> str:
    return (
        "TERMINOLOGY EXTRACTION TASK\n"
        f"Genre Context: {genre}\n\n"
        "TASK: Extract key terminology from the audio that requires consistent translation across subtitles.\n\n"
        "RULES (Priority Order):\n"
        "[P0] Detect the primary spoken language and extract ONLY terms spoken in that language, AS SPOKEN.\n"
        "[P1] Extract names, places, specialized terms and recurring phrases that ACTUALLY APPEAR in the audio.\n"
        f"[P2] Translate all terms to {target_language} using standard transliterations and established "
        "industry translations.\n"
        "[P3] Add notes for ambiguous terms.\n"
        "[P4] Skip common words that don't need special handling.\n\n"
        "OUTPUT FORMAT: JSON array of {term: string, translation: string, notes?: string}. "
        "Return [] if no significant terms are found."
    )


def qc_review_prompt(genre: str) -> str:
    return (
        "You are an expert Subtitle Quality Analyst.\n\n"
        "Your task is to REVIEW subtitles against audio and identify ALL quality issues, "
        "INCLUDING GLOBAL CONSISTENCY.\n\n"
        "Be precise and avoid false positives. Only report issues you can confirm from the audio or the text.\n\n"
        "CATEGORIES OF ISSUES:\n"
        "1. timing: subtitles too early or too late (high >500ms, medium 100-500ms, low <100ms)\n"
        "2. missing_content: speech present in audio but not in the subtitle text\n"
        "3. incorrect_translation: translation doesn't match the original meaning\n"
        "4. sync_error: subtitles bunched up or spread out compared to the audio\n"
        "5. consistency: same term translated differently, tone or style shifts\n\n"
        "Timestamps in the input are relative to the provided audio.\n"
        'Return a JSON array of {"type", "segmentId", "timestamp", "description", "severity"} '
        "(severity: high | medium | low). Return [] when there are no issues.\n\n"
        f"Context: {genre}\n{genre_guidance(genre)}"
    )


def _issue_line(idx: int, issue: SubtitleIssue, *, with_id: bool) -> str:
    prefix = f"ID: {issue.id} - " if with_id else ""
    return (
        f"{idx}. {prefix}[{issue.severity.upper()}] {issue.type}: {issue.description} "
        f"(Segment ID: {issue.segment_id or 'N/A'}, Time: {issue.timestamp or 'N/A'})"
    )


def qc_fix_prompt(genre: str, issues: Sequence[SubtitleIssue], *, target_language: str) -> str:
    high = sum(1 for i in issues if i.severity == "high")
    priority = f"\nPRIORITY: Focus on fixing the {high} HIGH severity issues first.\n" if high else ""
    ordered = sorted(issues, key=lambda i: _SEVERITY_ORDER.get(i.severity, 3))
    listing = "\n".join(_issue_line(n, i, with_id=False) for n, i in enumerate(ordered, start=1))
    return (
        "You are an expert Subtitle Editor.\n"
        "Your goal is to FIX the identified issues in the subtitles.\n\n"
        "KEY RULES:\n"
        "1. SURGICAL EDITS: do NOT change subtitles unless fixing a listed issue\n"
        "2. Keep all subtitle IDs exactly as they are (unless splitting/inserting)\n"
        "3. Ensure start < end. Timestamps MUST be relative to the provided audio (starting at 00:00:00,000)\n"
        f'4. "text_translated" MUST BE in {target_language}\n'
        "5. Split or inserted subtitles get new sequential IDs\n"
        "6. If an issue cannot be fixed, preserve the original\n"
        "7. Fixed terms must match the dominant terminology in the file\n"
        f"{priority}\n"
        f"Context: {genre}\n{genre_guidance(genre)}\n\n"
        f"ISSUES TO FIX ({len(issues)} total, sorted by severity):\n{listing}\n\n"
        'Return the full corrected JSON array of {"id", "start", "end", "text_original", "text_translated"}.'
    )


def qc_validate_prompt(genre: str, previous: Sequence[SubtitleIssue]) -> str:
    listing = "\n".join(_issue_line(n, i, with_id=True) for n, i in enumerate(previous, start=1))
    return (
        "You are a final Quality Validator.\n\n"
        "A previous model attempted to fix issues. Your job is to:\n"
        "1. Listen to the audio carefully\n"
        "2. For EACH original issue, determine if it was ACTUALLY FIXED (100% resolved)\n"
        "3. Identify any NEW issues introduced during the fix\n"
        '4. Be STRICT: "partially fixed" = NOT RESOLVED\n\n'
        f"Context: {genre}\n{genre_guidance(genre)}\n\n"
        f"ORIGINAL ISSUES ({len(previous)} total):\n{listing}\n\n"
        'Return a JSON object {"resolvedIssueIds": [...], "unresolvedIssueIds": [...], '
        '"newIssues": [{"type", "segmentId", "timestamp", "description", "severity"}]}.'
    )


def ai_consistency_prompt(payload: list[dict[str, Any]], *, genre: str) -> str:
    return (
        "You are a Subtitle Consistency Reviewer.\n\n"
        "Check the translated subtitles below for GLOBAL consistency problems only:\n"
        "- The same name, place or term translated differently across segments\n"
        "- Sudden shifts in formality or tone without context\n"
        "- Mixed translation styles (literal vs. liberal)\n\n"
        'Return a JSON array of {"segmentId": number, "description": string, "severity": "high" | "medium" | "low"}. '
        "Return [] when the file is consistent.\n\n"
        f"Context: {genre}\n\n"
        f"Subtitles:\n{dump_payload(payload)}"
    )


def batch_prompt(
    payload: list[dict[str, Any]],
    *,
    label: str,
    last_end_time: float | None,
    total_duration: float | None,
    instructions: str,
    with_audio: bool,
) -> str:
    previous = format_timestamp(last_end_time) if last_end_time is not None else "00:00:00,000"
    total = format_timestamp(total_duration) if total_duration else "Unknown"
    audio_note = (
        "Timestamps are relative to the attached audio clip (starting at 00:00:00,000).\n"
        if with_audio
        else ""
    )
    return (
        f"Batch {label}.\n"
        f'PREVIOUS END TIME: "{previous}".\n'
        f"TOTAL VIDEO DURATION (approx): {total}.\n"
        f"{audio_note}\n"
        f"{instructions}\n\n"
        f"Current Subtitles JSON:\n{dump_payload(payload)}"
    )
