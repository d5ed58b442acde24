from __future__ import annotations

from bisub.models.serializers import (
    coerce_severity,
    deserialize_glossary,
    deserialize_subtitles,
    serialize_issues,
    serialize_subtitles,
    subtitles_to_payload,
)
from bisub.models.subtitle import SubtitleIssue, SubtitleItem
from bisub.stages.qc_fix import changed_ids
from bisub.stages.qc_review import issues_from_json, sample_for_consistency
from bisub.utils.consistency import ConsistencyValidator


def _sub(id: int, translated: str) -> SubtitleItem:  # noqa: A002
    return SubtitleItem(id=id, start=float(id), end=float(id) + 1.0, original="o", translated=translated)


def test_consistency_validator_flags_chinese_style_problems() -> None:
    issues = ConsistencyValidator.validate(
        [
            _sub(1, "你好,世界"),
            _sub(2, "使用Python编程"),
            _sub(3, "这是一个" + "非常" * 14 + "长的句子啊"),
            _sub(4, "（括号没有关闭"),
            _sub(5, "这个很好……"),
            _sub(6, "Version 1.5, ok"),
            _sub(7, ""),
        ]
    )
    by_id = {(i.segment_id, i.type) for i in issues}
    assert (1, "punctuation") in by_id
    assert (2, "spacing") in by_id
    assert (3, "length") in by_id
    assert (4, "brackets") in by_id
    assert not any(i.segment_id in (5, 6, 7) for i in issues)
    assert next(i for i in issues if i.type == "length").severity == "medium"


def test_ellipsis_is_not_a_half_width_period() -> None:
    assert ConsistencyValidator.validate([_sub(1, "等等...")]) == []


def test_serialize_subtitles_uses_canonical_timestamps() -> None:
    items = [SubtitleItem(id=1, start=61.5, end=63.25, original="hi", translated="你好", comment="fix me")]
    data = serialize_subtitles(items)
    assert data == [
        {
            "id": 1,
            "start": "00:01:01,500",
            "end": "00:01:03,250",
            "text_original": "hi",
            "text_translated": "你好",
            "comment": "fix me",
        }
    ]
    assert deserialize_subtitles(data) == items


def test_payload_is_relative_to_offset_and_optional_comments() -> None:
    items = [SubtitleItem(id=3, start=101.0, end=103.0, original="a", translated="b", comment="c")]
    assert subtitles_to_payload(items, offset=100.0)[0]["start"] == "00:00:01,000"
    assert "comment" not in subtitles_to_payload(items, offset=100.0)[0]
    assert subtitles_to_payload(items, include_comments=True)[0]["comment"] == "c"


def test_deserialize_glossary_skips_incomplete_entries() -> None:
    out = deserialize_glossary(
        [{"term": "Foo", "translation": "富", "notes": "name"}, {"term": "", "translation": "x"}, "bad", {"term": "Bar"}]
    )
    assert [(g.term, g.translation, g.notes) for g in out] == [("Foo", "富", "name")]
    assert deserialize_glossary({"terms": []}) == []


def test_issues_from_json_builds_ids_and_absolute_timestamps() -> None:
    subs = [_sub(7, "x")]
    issues = issues_from_json(
        [
            {"type": "timing", "segmentId": 7, "timestamp": "00:00:01,000", "description": "late", "severity": "HIGH"},
            {"type": "grammar", "segmentId": "7", "description": "typo", "severity": "weird"},
            {"type": "empty", "description": ""},
        ],
        round_identified=2,
        id_prefix="issue",
        offset=60.0,
        subtitles=subs,
    )
    assert [i.id for i in issues] == ["issue-2-1", "issue-2-2"]
    assert issues[0].timestamp == "00:01:01,000"
    assert issues[0].severity == "high"
    assert issues[1].timestamp == "00:00:07,000"
    assert issues[1].severity == "medium"
    assert serialize_issues(issues)[0]["round_identified"] == 2


def test_sample_for_consistency_limits_long_files() -> None:
    subs = [_sub(i, "x") for i in range(1, 1001)]
    sample = sample_for_consistency(subs)
    assert len(sample) == 400
    assert sample[0].id == 1 and sample[199].id == 200
    assert sample[200].id == 451
    assert sample[-1].id == 1000
    assert len(sample_for_consistency(subs[:500])) == 500


def test_changed_ids_tracks_edits_and_insertions() -> None:
    before = [_sub(1, "a"), _sub(2, "b")]
    after = [_sub(1, "a"), _sub(2, "B"), _sub(3, "c")]
    assert changed_ids(before, after) == [2, 3]


def test_coerce_severity() -> None:
    assert coerce_severity(" Low ") == "low"
    assert coerce_severity(None) == "medium"
