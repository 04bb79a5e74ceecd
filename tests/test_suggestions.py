import pytest

from segmerge.merge_tool.local_ids import LocalIdContext
from segmerge.merge_tool.models import ConfidenceLevel, RawSuggestion, SuggestionStatus
from segmerge.merge_tool.pairs import collect_pairs
from segmerge.merge_tool.suggestions import (
    DEFAULT_REASON,
    DEFAULT_SMOOTHING_NOTE,
    apply_basic_smoothing,
    build_suggestions,
    count_by_confidence,
    filter_by_confidence,
    filter_by_status,
    group_by_confidence,
    validate_merge_candidate,
)

from helpers import chain, make_segments


def _ids():
    counter = iter(range(1, 1000))
    return lambda: f"merge-{next(counter)}"


def _build(segments, raw, **kwargs):
    pairs = collect_pairs(segments, LocalIdContext(), 2.0, kwargs.pop("same_speaker_only", True))
    return build_suggestions(raw, segments, pairs, batch_index=0, id_factory=_ids(), **kwargs)


def test_suggestion_is_enriched_from_segments():
    segments = make_segments(
        ("s1", "A", 0.0, 1.0, "we went to the "),
        ("s2", "A", 1.25, 2.0, "store yesterday."),
    )
    suggestions, issues = _build(segments, [RawSuggestion(["s2", "s1"], 0.85)], recovery_strategy="lenient-parse")
    assert issues == []
    (suggestion,) = suggestions
    assert suggestion.id == "merge-1"
    assert suggestion.segment_ids == ["s1", "s2"]
    assert suggestion.merged_text == "we went to the store yesterday."
    assert suggestion.time_range == (0.0, 2.0)
    assert suggestion.time_gap == pytest.approx(0.25)
    assert suggestion.speaker == "A"
    assert suggestion.reason == DEFAULT_REASON
    assert suggestion.confidence_level is ConfidenceLevel.HIGH
    assert suggestion.status is SuggestionStatus.PENDING
    assert suggestion.smoothing is None
    payload = suggestion.to_dict()
    assert payload["timeRange"] == {"start": 0.0, "end": 2.0}
    assert payload["recoveryStrategy"] == "lenient-parse"


def test_smoothing_info_is_attached_only_when_text_changes():
    segments = make_segments(("s1", "A", 0.0, 1.0, "So we"), ("s2", "A", 1.1, 2.0, "Went home."))
    raw = [
        RawSuggestion(["s1", "s2"], 0.9, smoothed_text="So we went home."),
    ]
    (suggestion,), _ = _build(segments, raw)
    assert suggestion.smoothing.smoothed_text == "So we went home."
    assert suggestion.smoothing.original_concatenated == "So we Went home."
    assert suggestion.smoothing.changes == DEFAULT_SMOOTHING_NOTE

    unchanged = [RawSuggestion(["s1", "s2"], 0.9, smoothed_text="  So we Went home. ")]
    (suggestion,), _ = _build(segments, unchanged)
    assert suggestion.smoothing is None


def test_model_smoothed_text_is_kept_verbatim():
    segments = make_segments(("s1", "A", 0.0, 1.0, "Well."), ("s2", "A", 1.1, 2.0, "I think so"))
    raw = [RawSuggestion(["s1", "s2"], 0.9, smoothed_text="Well... I think so!!", smoothing_changes="joined")]
    (suggestion,), _ = _build(segments, raw)
    assert suggestion.smoothing.smoothed_text == "Well... I think so!!"
    assert suggestion.smoothing.changes == "joined"


def test_invalid_candidates_are_dropped_with_warnings():
    segments = make_segments(
        ("s1", "A", 0.0, 1.0),
        ("s2", "A", 1.1, 2.0),
        ("s3", "B", 2.1, 3.0),
        ("s4", "B", 3.1, 4.0),
    )
    raw = [
        RawSuggestion(["s1", "s3"], 0.9),  # not adjacent
        RawSuggestion(["s2", "s3"], 0.9),  # speaker change, not an eligible link
        RawSuggestion(["s1", "s1"], 0.9),  # one distinct segment
        RawSuggestion(["s4", "s9"], 0.9),  # outside the batch
        RawSuggestion(["s1", "s2"], 0.9),
        RawSuggestion(["s2", "s1"], 0.7),  # duplicate
    ]
    suggestions, issues = _build(segments, raw)
    assert [s.segment_ids for s in suggestions] == [["s1", "s2"]]
    assert len(issues) == 5
    assert all(issue.level == "warn" for issue in issues)
    assert "not adjacent" in issues[0].message
    assert "eligible pair" in issues[1].message
    assert "duplicate" in issues[4].message


def test_multi_segment_run_needs_every_link_eligible():
    segments = chain(3)
    (suggestion,), issues = _build(segments, [RawSuggestion(["s1", "s2", "s3"], 0.6)])
    assert suggestion.segment_ids == ["s1", "s2", "s3"]
    assert suggestion.confidence_level is ConfidenceLevel.MEDIUM
    assert issues == []


def test_confidence_filter_is_monotone():
    segments = chain(6)
    raw = [
        RawSuggestion(["s1", "s2"], 0.95),
        RawSuggestion(["s3", "s4"], 0.6),
        RawSuggestion(["s5", "s6"], 0.2),
    ]
    suggestions, _ = _build(segments, raw)
    kept = {
        level: {s.id for s in filter_by_confidence(suggestions, level)}
        for level in ConfidenceLevel
    }
    assert kept[ConfidenceLevel.HIGH] <= kept[ConfidenceLevel.MEDIUM] <= kept[ConfidenceLevel.LOW]
    assert len(kept[ConfidenceLevel.LOW]) == 3
    assert len(kept[ConfidenceLevel.MEDIUM]) == 2
    assert len(kept[ConfidenceLevel.HIGH]) == 1
    assert count_by_confidence(suggestions) == {"high": 1, "medium": 1, "low": 1}
    groups = group_by_confidence(suggestions)
    assert list(groups) == [ConfidenceLevel.HIGH, ConfidenceLevel.MEDIUM, ConfidenceLevel.LOW]


def test_filter_by_status():
    suggestions, _ = _build(chain(4), [RawSuggestion(["s1", "s2"], 0.9), RawSuggestion(["s3", "s4"], 0.9)])
    suggestions[0].status = SuggestionStatus.ACCEPTED
    assert filter_by_status(suggestions, SuggestionStatus.ACCEPTED) == [suggestions[0]]
    assert filter_by_status(suggestions, SuggestionStatus.PENDING) == [suggestions[1]]


def test_confidence_level_from_flag():
    assert ConfidenceLevel.from_flag(" High ") is ConfidenceLevel.HIGH
    with pytest.raises(ValueError):
        ConfidenceLevel.from_flag("certain")


def test_apply_basic_smoothing():
    assert apply_basic_smoothing("  hello   world ..  ") == "hello world."
    assert apply_basic_smoothing("wait , what ?!") == "wait, what?!"


def test_validate_merge_candidate():
    segments = make_segments(("a", "A", 0, 1), ("b", "A", 1, 2), ("c", "B", 2, 3))
    order = ["a", "b", "c"]
    assert validate_merge_candidate(segments[:2], order) == (True, "")
    valid, reason = validate_merge_candidate([segments[0], segments[2]], order)
    assert not valid and "consecutive" in reason
    valid, reason = validate_merge_candidate(segments[1:], order)
    assert not valid and "speakers" in reason
    assert not validate_merge_candidate(segments[:1], order)[0]
