from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence

from .models import Segment

MIN_BATCH_SIZE = 2


@dataclass(frozen=True)
class SegmentBatch:
    index: int
    start: int
    segments: List[Segment]

    @property
    def end(self) -> int:
        """Index of the last segment of the batch in the full list (inclusive)."""
        return self.start + len(self.segments) - 1

    @property
    def adjacent_pair_count(self) -> int:
        return max(0, len(self.segments) - 1)


def partition(segments: Sequence[Segment], batch_size: int) -> List[SegmentBatch]:
    """Split segments into ordered batches that overlap by one segment.

    Consecutive batches share their boundary segment, so each adjacent pair of the full
    list lies inside exactly one batch.
    """
    size = max(MIN_BATCH_SIZE, int(batch_size or 0))
    total = len(segments)
    if total < MIN_BATCH_SIZE:
        return []
    batches: List[SegmentBatch] = []
    start = 0
    while start < total - 1:
        chunk = list(segments[start : start + size])
        batches.append(SegmentBatch(index=len(batches), start=start, segments=chunk))
        start += size - 1
    return batches
