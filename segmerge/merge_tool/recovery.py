from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from segmerge.completion_client import strip_code_fences

IDENTIFYING_FIELDS = (
    "segmentIds",
    "segment_ids",
    "ids",
    "segmentId",
    "segment_id",
    "pairIndex",
    "pair_index",
    "pairId",
    "pair",
    "mergeId",
    "merge_id",
)
ITEM_DEFAULTS: Dict[str, Any] = {"confidence": 0.5, "reason": ""}

_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
_BARE_KEY_RE = re.compile(r"([{,]\s*)([A-Za-z_][A-Za-z0-9_]*)\s*:")
_CLOSERS = {"{": "}", "[": "]"}


@dataclass(frozen=True)
class RecoveryStrategy:
    name: str
    try_parse: Callable[[str], Optional[List[Dict[str, Any]]]]


@dataclass
class RecoveryOutcome:
    items: List[Dict[str, Any]]
    strategy: Optional[str] = None
    attempted: int = 0

    @property
    def recovered(self) -> bool:
        return self.strategy is not None


def has_identifying_field(item: Any) -> bool:
    return isinstance(item, dict) and any(key in item for key in IDENTIFYING_FIELDS)


def apply_first_success(text: str, strategies: Sequence[RecoveryStrategy]) -> RecoveryOutcome:
    """Run strategies in order and keep the first one that yields at least one item."""
    for position, strategy in enumerate(strategies, start=1):
        items = strategy.try_parse(text)
        if items:
            return RecoveryOutcome(items=items, strategy=strategy.name, attempted=position)
    return RecoveryOutcome(items=[], strategy=None, attempted=len(strategies))


def repair_json(text: str) -> str:
    """Fix the usual model slips: bare keys, single quotes, trailing commas, missing closers."""
    repaired = text.strip()
    if "'" in repaired and '"' not in repaired:
        repaired = repaired.replace("'", '"')
    repaired = _BARE_KEY_RE.sub(r'\1"\2":', repaired)
    repaired = _TRAILING_COMMA_RE.sub(r"\1", repaired)
    return _close_open_brackets(repaired)


def _close_open_brackets(text: str) -> str:
    stack: List[str] = []
    in_string = False
    escaped = False
    for char in text:
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in _CLOSERS:
            stack.append(_CLOSERS[char])
        elif char in "}]" and stack and stack[-1] == char:
            stack.pop()
    suffix = '"' if in_string else ""
    closed = (text + suffix).rstrip()
    if closed.endswith(","):
        closed = closed[:-1]
    return closed + "".join(reversed(stack))


def _as_item_list(parsed: Any) -> List[Any]:
    if isinstance(parsed, list):
        return parsed
    if isinstance(parsed, dict):
        for key in ("suggestions", "merges", "items", "results", "data"):
            if isinstance(parsed.get(key), list):
                return parsed[key]
        return [parsed]
    return []


def _with_defaults(item: Dict[str, Any]) -> Dict[str, Any]:
    enriched = dict(item)
    for key, value in ITEM_DEFAULTS.items():
        enriched.setdefault(key, value)
    return enriched


def lenient_parse(text: str) -> Optional[List[Dict[str, Any]]]:
    candidate = strip_code_fences(text)
    if not candidate or candidate[0] not in "[{":
        return None
    try:
        parsed = json.loads(candidate)
    except ValueError:
        try:
            parsed = json.loads(repair_json(candidate))
        except ValueError:
            return None
    items = [_with_defaults(item) for item in _as_item_list(parsed) if has_identifying_field(item)]
    return items or None


def iter_array_items(text: str) -> List[str]:
    """Return the complete top-level object literals of an array, stopping at the first truncated one."""
    items: List[str] = []
    depth = 0
    in_string = False
    escaped = False
    item_start: Optional[int] = None
    for position, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in "[{":
            if depth == 1 and char == "{":
                item_start = position
            depth += 1
        elif char in "]}":
            depth -= 1
            if depth == 1 and char == "}" and item_start is not None:
                items.append(text[item_start : position + 1])
                item_start = None
            elif depth <= 0:
                break
    return items


def _array_substring(text: str) -> Optional[str]:
    first = text.find("[")
    last = text.rfind("]")
    if first == -1 or last <= first:
        return None
    return text[first : last + 1]


def _parses(text: Optional[str]) -> bool:
    if text is None:
        return False
    try:
        json.loads(text)
    except ValueError:
        return False
    return True


def partial_array(text: str) -> Optional[List[Dict[str, Any]]]:
    """Collect the complete leading items of a cut-off array, even after a preamble.

    Declines when the bracketed span already parses as a whole; ``json_substring`` owns that case.
    """
    candidate = strip_code_fences(text)
    start = candidate.find("[")
    if start == -1 or _parses(_array_substring(candidate)):
        return None
    recovered: List[Dict[str, Any]] = []
    for literal in iter_array_items(candidate[start:]):
        try:
            item = json.loads(literal)
        except ValueError:
            try:
                item = json.loads(_TRAILING_COMMA_RE.sub(r"\1", literal))
            except ValueError:
                break
        if not has_identifying_field(item):
            break
        recovered.append(item)
    return recovered or None


def json_substring(text: str) -> Optional[List[Dict[str, Any]]]:
    span = _array_substring(text)
    if span is None:
        return None
    try:
        parsed = json.loads(span)
    except ValueError:
        return None
    if not isinstance(parsed, list):
        return None
    items = [item for item in parsed if isinstance(item, dict)]
    return items or None


STANDARD_STRATEGIES = (
    RecoveryStrategy("lenient-parse", lenient_parse),
    RecoveryStrategy("partial-array", partial_array),
    RecoveryStrategy("json-substring", json_substring),
)
