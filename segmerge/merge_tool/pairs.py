from __future__ import annotations

import re
from typing import List, Sequence

from .local_ids import LocalIdContext
from .models import Segment, SegmentPair

_SENTENCE_END_RE = re.compile(r"[.!?]$")
_CAPITAL_START_RE = re.compile(r"^[A-ZÄÖÜА-ЯЁ]")
_INCOMPLETE_END_RES = (
    re.compile(
        r"\b(and|but|or|because|since|while|when|if|that|which|who|whom|whose|where|what|how|why|"
        r"so|as|than|the|a|an|to|of|in|on|at|for|with|by)$",
        re.IGNORECASE,
    ),
    re.compile(r",$"),
    re.compile(r"-$"),
    re.compile(r"\.{2,}$"),
)
# Words that ASR tends to capitalize after a spurious period.
_USUALLY_LOWERCASE = frozenset(
    """
    about above after again all also and as before below but down during each few for from
    further here how if in into just more most no nor not now off on once only or other out
    over own same so some such than that then there through to too under up very what when
    where which with
    """.split()
)


def time_gap(first: Segment, second: Segment) -> float:
    return second.start - first.end


def is_gap_acceptable(gap: float, max_time_gap: float) -> bool:
    return 0 <= gap <= max_time_gap


def format_time(seconds: float) -> str:
    minutes = int(seconds // 60)
    remainder = seconds - minutes * 60
    return f"{minutes:02d}:{remainder:04.1f}"


def format_time_range(start: float, end: float) -> str:
    return f"{format_time(start)} - {format_time(end)}"


def ends_with_sentence_punctuation(text: str) -> bool:
    return bool(_SENTENCE_END_RE.search(text.strip()))


def starts_with_capital(text: str) -> bool:
    return bool(_CAPITAL_START_RE.match(text.strip()))


def ends_incomplete(text: str) -> bool:
    trimmed = text.strip().lower()
    return any(pattern.search(trimmed) for pattern in _INCOMPLETE_END_RES)


def detect_incorrect_sentence_break(first: Segment, second: Segment) -> bool:
    """Heuristic for a sentence that was split in two by the recognizer."""
    text_a = first.text.strip()
    text_b = second.text.strip()
    if ends_with_sentence_punctuation(text_a):
        if starts_with_capital(text_b):
            words = text_b.split()
            if words and words[0].lower().strip(",.") in _USUALLY_LOWERCASE:
                return True
            return False
        return bool(text_b)
    return not text_a.endswith(",")


def collect_pairs(
    segments: Sequence[Segment],
    context: LocalIdContext,
    max_time_gap: float,
    same_speaker_only: bool,
) -> List[SegmentPair]:
    """Return the eligible adjacent pairs of one batch, registering each in ``context``.

    Every segment of the batch receives a local ID, including ones that end up in no pair,
    so the full segment listing in the prompt can reference them.
    """
    for segment in segments:
        context.get_or_assign(segment.id)
    pairs: List[SegmentPair] = []
    for first, second in zip(segments, segments[1:]):
        if same_speaker_only and first.speaker != second.speaker:
            continue
        gap = time_gap(first, second)
        if not is_gap_acceptable(gap, max_time_gap):
            continue
        pair_index = len(pairs) + 1
        context.register_pair(pair_index, first.id, second.id)
        pairs.append(
            SegmentPair(
                pair_index=pair_index,
                segment_a=first,
                segment_b=second,
                gap=gap,
                local_id_a=context.get_or_assign(first.id),
                local_id_b=context.get_or_assign(second.id),
            )
        )
    return pairs
