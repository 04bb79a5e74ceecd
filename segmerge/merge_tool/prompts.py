from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from segmerge.completion_client import render_template

from .local_ids import LocalIdContext
from .models import Segment, SegmentPair
from .pairs import detect_incorrect_sentence_break, ends_incomplete, format_time_range

FEATURE_ID = "segment-merge"
DETAILED_TEMPLATE_THRESHOLD = 10

MERGE_SYSTEM_PROMPT = (
    "You review transcript segments and decide which consecutive segments belong together.\n\n"
    "Every pair you receive was already filtered by speaker and by time gap. Judge the content only:\n"
    "- Does the sentence of the first segment continue in the second?\n"
    "- Do both segments carry the same thought?\n"
    "- Would a single segment read better?\n\n"
    "Recognizers often insert a period and a capital letter in the middle of a sentence, e.g. "
    '"So what we\'re trying to." + "Achieve here is better". Such pairs should be merged.\n'
    "Do not merge two complete, unrelated sentences, a change of topic, or a deliberate pause.\n\n"
    "Confidence: 0.9-1.0 obvious continuation, 0.7-0.89 likely, 0.5-0.69 possible, below 0.5 unlikely.\n\n"
    "Answer with a JSON array only. Each element must look like:\n"
    '{"segmentIds": [1, 2], "confidence": 0.95, "reason": "Sentence continues"}\n'
    "segmentIds are the numbers shown in square brackets. When smoothing is requested, add "
    '"smoothedText" (the corrected merged text) and "smoothingChanges" (a short note on what changed).\n'
    "Do not use pairIndex, mergeId or nested segment objects. If nothing should be merged, answer []."
)

MERGE_USER_TEMPLATE = (
    "Analyze these transcript segment pairs for potential merges.\n\n"
    "CONTEXT:\n"
    "- Maximum time gap allowed: {{maxTimeGap}} seconds\n"
    "- Text smoothing: {{#if enableSmoothing}}ENABLED, provide smoothed merged text{{else}}DISABLED{{/if}}\n\n"
    "SEGMENT PAIRS TO ANALYZE:\n"
    "{{segmentPairs}}\n\n"
    "{{#if enableSmoothing}}"
    "SMOOTHING:\n"
    "Remove wrong sentence breaks, fix capitalization at the join, keep the speaker's wording "
    'and change as little as possible. Explain the edit in "smoothingChanges".\n\n'
    "{{/if}}"
    "Return your merge suggestions as a JSON array."
)

MERGE_USER_TEMPLATE_COMPACT = (
    "Analyze these pre-filtered transcript segment pairs for potential merges.\n\n"
    "CONTEXT:\n"
    "- Maximum time gap allowed: {{maxTimeGap}} seconds\n"
    "- Text smoothing: {{#if enableSmoothing}}ENABLED, provide smoothed merged text{{else}}DISABLED{{/if}}\n\n"
    "Only the pairs below may be suggested. The full segment list is context for your reasons.\n\n"
    "SEGMENT PAIRS TO ANALYZE:\n"
    "{{segmentPairs}}\n\n"
    "SEGMENTS FOR CONTEXT:\n"
    "{{segments}}\n\n"
    "Return merge suggestions as a JSON array with segmentIds, confidence, reason"
    "{{#if enableSmoothing}}, smoothedText, smoothingChanges{{/if}}."
)


@dataclass
class BuiltPrompt:
    variables: Dict[str, str]
    system_prompt: str
    user_template: str
    pair_count: int
    prompt_tokens: int = 0

    @property
    def has_eligible_pairs(self) -> bool:
        return self.pair_count > 0 and bool(self.variables.get("segmentPairs", "").strip())


def select_user_template(segment_count: int) -> str:
    if segment_count > DETAILED_TEMPLATE_THRESHOLD:
        return MERGE_USER_TEMPLATE
    return MERGE_USER_TEMPLATE_COMPACT


def format_pair_block(pair: SegmentPair) -> str:
    first, second = pair.segment_a, pair.segment_b
    lines = [
        f"--- Pair {pair.pair_index} ---",
        f"Segment A [{pair.local_id_a}]:",
        f"  Speaker: {first.speaker}",
        f"  Time: {format_time_range(first.start, first.end)}",
        f'  Text: "{first.text}"',
        "",
        f"Segment B [{pair.local_id_b}]:",
        f"  Speaker: {second.speaker}",
        f"  Time: {format_time_range(second.start, second.end)}",
        f'  Text: "{second.text}"',
        "",
        f"Gap: {pair.gap:.2f}s",
    ]
    hints: List[str] = []
    if ends_incomplete(first.text):
        hints.append("segment A ends mid-sentence")
    if detect_incorrect_sentence_break(first, second):
        hints.append("possible wrong sentence break")
    if hints:
        lines.append(f"Hint: {', '.join(hints)}")
    return "\n".join(lines)


def format_pairs(pairs: Sequence[SegmentPair]) -> str:
    return "\n\n".join(format_pair_block(pair) for pair in pairs)


def format_segment_listing(segments: Sequence[Segment], context: LocalIdContext) -> str:
    lines = []
    for segment in segments:
        local_id = context.get_or_assign(segment.id)
        time_range = format_time_range(segment.start, segment.end)
        lines.append(f'[{local_id}] [{segment.speaker}] ({time_range}): "{segment.text}"')
    return "\n".join(lines)


def pair_mapping_json(pairs: Sequence[SegmentPair]) -> str:
    return json.dumps(
        [
            {
                "pairIndex": pair.pair_index,
                "segmentIds": [pair.segment_a.id, pair.segment_b.id],
                "localIds": [pair.local_id_a, pair.local_id_b],
            }
            for pair in pairs
        ],
        ensure_ascii=False,
    )


def build_prompt(
    segments: Sequence[Segment],
    pairs: Sequence[SegmentPair],
    context: LocalIdContext,
    max_time_gap: float,
    enable_smoothing: bool,
    token_counter: Optional[Callable[[str], int]] = None,
) -> BuiltPrompt:
    """Assemble template variables for one batch. Only local IDs reach the model."""
    variables = {
        "segmentPairs": format_pairs(pairs),
        "segmentPairsJson": pair_mapping_json(pairs),
        "segments": format_segment_listing(segments, context),
        "maxTimeGap": f"{max_time_gap:g}",
        "enableSmoothing": "true" if enable_smoothing else "false",
    }
    user_template = select_user_template(len(segments))
    built = BuiltPrompt(
        variables=variables,
        system_prompt=MERGE_SYSTEM_PROMPT,
        user_template=user_template,
        pair_count=len(pairs),
    )
    if token_counter is not None and pairs:
        built.prompt_tokens = token_counter(MERGE_SYSTEM_PROMPT) + token_counter(
            render_template(user_template, variables)
        )
    return built

