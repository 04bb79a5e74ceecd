from __future__ import annotations

import re
import uuid
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from .models import (
    ConfidenceLevel,
    Issue,
    RawSuggestion,
    Segment,
    SegmentPair,
    SmoothingInfo,
    Suggestion,
    SuggestionStatus,
)
from .pairs import time_gap

DEFAULT_REASON = "Segments appear to belong together"
DEFAULT_SMOOTHING_NOTE = "Text was smoothed"

_WHITESPACE_RE = re.compile(r"\s+")
_SPACE_BEFORE_PUNCT_RE = re.compile(r"\s+([.,!?;:])")
_REPEATED_PUNCT_RE = re.compile(r"([.!?])\s*\1+")


def generate_suggestion_id() -> str:
    return f"merge-{uuid.uuid4().hex[:12]}"


def concatenate_texts(segments: Sequence[Segment], separator: str = " ") -> str:
    return separator.join(segment.text.strip() for segment in segments)


def apply_basic_smoothing(text: str) -> str:
    """Collapse whitespace and duplicated sentence punctuation without touching wording."""
    collapsed = _WHITESPACE_RE.sub(" ", text)
    collapsed = _SPACE_BEFORE_PUNCT_RE.sub(r"\1", collapsed)
    return _REPEATED_PUNCT_RE.sub(r"\1", collapsed).strip()


def create_smoothing_info(
    merged_text: str,
    smoothed_text: Optional[str],
    changes: Optional[str],
) -> Optional[SmoothingInfo]:
    smoothed_text = (smoothed_text or "").strip()
    if not smoothed_text or smoothed_text == merged_text:
        return None
    return SmoothingInfo(
        original_concatenated=merged_text,
        smoothed_text=smoothed_text,
        changes=changes or DEFAULT_SMOOTHING_NOTE,
    )


def validate_merge_candidate(segments: Sequence[Segment], ordered_ids: Sequence[str]) -> Tuple[bool, str]:
    """Check that the candidate segments are consecutive in ``ordered_ids`` and share a speaker."""
    if len(segments) < 2:
        return False, "At least two segments are required."
    positions = {segment_id: index for index, segment_id in enumerate(ordered_ids)}
    try:
        indices = sorted(positions[segment.id] for segment in segments)
    except KeyError as exc:
        return False, f"Segment {exc.args[0]!r} is not part of the transcript."
    if any(later - earlier != 1 for earlier, later in zip(indices, indices[1:])):
        return False, "Segments are not consecutive."
    if len({segment.speaker for segment in segments}) > 1:
        return False, "Segments belong to different speakers."
    return True, ""


def build_suggestions(
    raw_suggestions: Sequence[RawSuggestion],
    batch_segments: Sequence[Segment],
    pairs: Sequence[SegmentPair],
    batch_index: int,
    recovery_strategy: Optional[str] = None,
    id_factory: Callable[[], str] = generate_suggestion_id,
) -> Tuple[List[Suggestion], List[Issue]]:
    """Enrich resolved suggestions with text, timing and confidence band.

    A suggestion survives only if its segments are contiguous in the batch and every
    neighbouring link is one of the batch's eligible pairs.
    """
    positions = {segment.id: index for index, segment in enumerate(batch_segments)}
    eligible_links = {(pair.segment_a.id, pair.segment_b.id) for pair in pairs}
    seen: set[Tuple[str, ...]] = set()
    suggestions: List[Suggestion] = []
    issues: List[Issue] = []

    def _drop(raw: RawSuggestion, message: str) -> None:
        issues.append(
            Issue(
                "warn",
                f"Dropped suggestion: {message}.",
                {"batchIndex": batch_index, "segmentIds": list(raw.segment_ids)},
            )
        )

    for raw in raw_suggestions:
        unique_ids = list(dict.fromkeys(raw.segment_ids))
        missing = [segment_id for segment_id in unique_ids if segment_id not in positions]
        if missing:
            _drop(raw, f"segments {missing} are not part of batch {batch_index}")
            continue
        if len(unique_ids) < 2:
            _drop(raw, "fewer than two distinct segments")
            continue
        ordered = sorted(unique_ids, key=positions.__getitem__)
        indices = [positions[segment_id] for segment_id in ordered]
        if any(later - earlier != 1 for earlier, later in zip(indices, indices[1:])):
            _drop(raw, "segments are not adjacent")
            continue
        if any(link not in eligible_links for link in zip(ordered, ordered[1:])):
            _drop(raw, "segments do not form an eligible pair")
            continue
        key = tuple(ordered)
        if key in seen:
            _drop(raw, "duplicate of an earlier suggestion")
            continue
        seen.add(key)

        segments = [batch_segments[index] for index in indices]
        merged_text = concatenate_texts(segments)
        confidence = min(1.0, max(0.0, raw.confidence))
        suggestions.append(
            Suggestion(
                id=id_factory(),
                segment_ids=ordered,
                confidence=confidence,
                confidence_level=ConfidenceLevel.from_score(confidence),
                reason=raw.reason or DEFAULT_REASON,
                merged_text=merged_text,
                time_range=(
                    min(segment.start for segment in segments),
                    max(segment.end for segment in segments),
                ),
                speaker=segments[0].speaker,
                time_gap=time_gap(segments[0], segments[1]),
                smoothing=create_smoothing_info(merged_text, raw.smoothed_text, raw.smoothing_changes),
                batch_index=batch_index,
                recovery_strategy=recovery_strategy,
            )
        )
    return suggestions, issues


def filter_by_confidence(suggestions: Iterable[Suggestion], min_confidence: ConfidenceLevel) -> List[Suggestion]:
    return [item for item in suggestions if item.confidence_level.meets(min_confidence)]


def filter_by_status(suggestions: Iterable[Suggestion], status: SuggestionStatus) -> List[Suggestion]:
    return [item for item in suggestions if item.status == status]


def group_by_confidence(suggestions: Iterable[Suggestion]) -> Dict[ConfidenceLevel, List[Suggestion]]:
    groups: Dict[ConfidenceLevel, List[Suggestion]] = {level: [] for level in reversed(ConfidenceLevel)}
    for item in suggestions:
        groups[item.confidence_level].append(item)
    return groups


def count_by_confidence(suggestions: Iterable[Suggestion]) -> Dict[str, int]:
    return {level.value: len(items) for level, items in group_by_confidence(suggestions).items()}
