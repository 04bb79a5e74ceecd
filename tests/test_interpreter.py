import pytest

from segmerge.completion_client import CompletionResult
from segmerge.merge_tool.interpreter import (
    ByIds,
    ByMergeId,
    ByPairIndex,
    BySingleId,
    classify,
    coerce_confidence,
    interpret_response,
    normalize_item,
)
from segmerge.merge_tool.local_ids import LocalIdContext
from segmerge.merge_tool.pairs import collect_pairs
from segmerge.merge_tool.recovery import (
    STANDARD_STRATEGIES,
    apply_first_success,
    iter_array_items,
    repair_json,
)

from helpers import chain, ok, unparsed


@pytest.fixture
def context():
    ctx = LocalIdContext()
    collect_pairs(chain(4), ctx, 2.0, True)
    return ctx


def test_preamble_around_array_is_recovered_by_substring(context):
    text = 'Some preamble text [{"segmentIds":[1,2],"confidence":0.9}] trailing'
    batch = interpret_response(unparsed(text), context, batch_index=0)
    assert batch.recovery_strategy == "json-substring"
    assert [s.segment_ids for s in batch.suggestions] == [["s1", "s2"]]
    assert batch.suggestions[0].confidence == 0.9
    assert [issue.level for issue in batch.issues] == ["warn"]
    assert "json-substring" in batch.issues[0].message


def test_unknown_real_id_drops_only_that_item(context):
    items = [
        {"segmentIds": ["missing-id", "s2"], "confidence": 0.9},
        {"segmentIds": [2, 3], "confidence": 0.8},
    ]
    batch = interpret_response(ok(items), context, batch_index=0)
    assert [s.segment_ids for s in batch.suggestions] == [["s2", "s3"]]
    assert len(batch.issues) == 1
    assert batch.issues[0].level == "warn"
    assert "missing-id" in batch.issues[0].message


def test_truncated_array_is_recovered_item_by_item(context):
    text = '[{"segmentIds":[1,2],"confidence":0.9},{"segmentIds":[3,4],"confidence":'
    outcome = apply_first_success(text, STANDARD_STRATEGIES)
    assert outcome.strategy == "partial-array"
    assert outcome.items == [{"segmentIds": [1, 2], "confidence": 0.9}]


def test_cut_off_array_after_preamble_keeps_complete_items(context):
    text = 'Here are the merges:\n[{"segmentIds": [1, 2], "confidence": 0.9}, {"segmentIds": [2, 3'
    batch = interpret_response(unparsed(text), context, batch_index=0)
    assert not batch.fatal
    assert batch.recovery_strategy == "partial-array"
    assert [s.segment_ids for s in batch.suggestions] == [["s1", "s2"]]


def test_lenient_parse_repairs_common_slips():
    text = "```json\n[{segmentIds: [1, 2], 'reason': 'x',},]\n```"
    outcome = apply_first_success(text, STANDARD_STRATEGIES)
    assert outcome.strategy == "lenient-parse"
    assert outcome.items[0]["segmentIds"] == [1, 2]
    assert outcome.items[0]["confidence"] == 0.5


def test_repair_json_closes_brackets():
    assert repair_json('[{"a": 1}, {"b": [2, 3') == '[{"a": 1}, {"b": [2, 3]}]'


def test_iter_array_items_stops_at_truncation():
    literals = iter_array_items('[{"a": "}"}, {"b": {"c": 1}}, {"d":')
    assert literals == ['{"a": "}"}', '{"b": {"c": 1}}']


def test_unrecoverable_text_is_one_error(context):
    batch = interpret_response(unparsed("I could not find any merges, sorry."), context, batch_index=3)
    assert batch.fatal
    assert batch.suggestions == []
    assert len(batch.issues) == 1
    assert batch.issues[0].level == "error"
    assert batch.issues[0].context["batchIndex"] == 3


def test_transport_failure_carries_error_code(context):
    result = CompletionResult(success=False, error="LM Studio error 503", error_code="http_503")
    batch = interpret_response(result, context, batch_index=0)
    assert batch.fatal
    assert batch.issues[0].context["errorCode"] == "http_503"


@pytest.mark.parametrize(
    "item,expected",
    [
        ({"segmentIds": [1, 2]}, ByIds((1, 2))),
        ({"ids": "1, 2"}, ByIds(("1", "2"))),
        ({"segmentIds": "2-3"}, ByIds(("2-3",))),
        ({"pairIndex": 2}, ByPairIndex(2)),
        ({"mergeId": "merge-1"}, ByMergeId("merge-1")),
        ({"segmentId": 3}, BySingleId(3)),
        ({"reason": "nothing to point at"}, None),
    ],
)
def test_classify(item, expected):
    assert classify(item) == expected


@pytest.mark.parametrize(
    "item,expected_ids",
    [
        ({"pairIndex": 2}, ["s2", "s3"]),
        ({"pairIndex": "3"}, ["s3", "s4"]),
        ({"mergeId": "1-2"}, ["s1", "s2"]),
        ({"mergeId": "pair-3"}, ["s3", "s4"]),
        ({"segmentId": 2}, ["s2", "s3"]),
        ({"segmentIds": "1-3"}, ["s1", "s2", "s3"]),
        ({"segmentIds": ["[1]", "s2"]}, ["s1", "s2"]),
    ],
)
def test_reference_variants_resolve_to_real_ids(context, item, expected_ids):
    suggestion, problem = normalize_item(item, context)
    assert problem is None
    assert suggestion.segment_ids == expected_ids


@pytest.mark.parametrize(
    "item",
    [
        {"pairIndex": 9},
        {"segmentIds": [1, 7]},
        {"segmentIds": [1]},
        {"segmentId": 4},
        {"mergeId": "abc"},
        {"segmentIds": [True, 2]},
        {"segmentA": {"id": 3}, "segmentB": {"id": 4}},
    ],
)
def test_unresolvable_references_are_reported(context, item):
    suggestion, problem = normalize_item(item, context)
    assert suggestion is None
    assert problem


def test_item_fields_are_normalized(context):
    suggestion, _ = normalize_item(
        {
            "segmentIds": [1, 2],
            "conf": "1.7",
            "explanation": "continues",
            "smoothed_text": "part 1 part 2",
            "changes": ["joined", "lowercased"],
        },
        context,
    )
    assert suggestion.confidence == 1.0
    assert suggestion.reason == "continues"
    assert suggestion.smoothed_text == "part 1 part 2"
    assert suggestion.smoothing_changes == "joined; lowercased"


def test_coerce_confidence_defaults():
    assert coerce_confidence(None) == 0.5
    assert coerce_confidence("high") == 0.5
    assert coerce_confidence(-3) == 0.0
    assert coerce_confidence(0.42) == 0.42
