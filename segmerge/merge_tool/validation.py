from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Callable, List, Sequence

from .models import Issue, Segment


@dataclass(frozen=True)
class ValidationRule:
    check: Callable[[Sequence[Segment]], bool]
    level: str
    message: str

    def issue(self) -> Issue:
        return Issue(self.level, self.message)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _has_ids(segments: Sequence[Segment]) -> bool:
    return all(isinstance(segment.id, str) and segment.id.strip() for segment in segments)


def _unique_ids(segments: Sequence[Segment]) -> bool:
    ids = [segment.id for segment in segments]
    return len(ids) == len(set(ids))


def _ordered_times(segments: Sequence[Segment]) -> bool:
    return all(
        segment.start < segment.end
        for segment in segments
        if _is_number(segment.start) and _is_number(segment.end)
    )


MERGE_VALIDATION_RULES: List[ValidationRule] = [
    ValidationRule(
        lambda segments: len(segments) >= 2,
        "warn",
        "At least 2 segments required for merge analysis",
    ),
    ValidationRule(_has_ids, "error", "All segments must have valid IDs"),
    ValidationRule(_unique_ids, "error", "Segment IDs must be unique"),
    ValidationRule(
        lambda segments: all(isinstance(segment.text, str) for segment in segments),
        "error",
        "All segments must have text",
    ),
    ValidationRule(
        lambda segments: all(_is_number(segment.start) and _is_number(segment.end) for segment in segments),
        "error",
        "All segments must have valid timestamps",
    ),
    ValidationRule(_ordered_times, "error", "Segment start time must be before end time"),
]


def validate_with_rules(segments: Sequence[Segment], rules: Sequence[ValidationRule] = MERGE_VALIDATION_RULES) -> List[Issue]:
    return [rule.issue() for rule in rules if not rule.check(segments)]


def has_errors(issues: Sequence[Issue]) -> bool:
    return any(issue.level == "error" for issue in issues)
