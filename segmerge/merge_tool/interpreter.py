"""Turns completion output into ``RawSuggestion`` objects keyed by real segment IDs.

Items reference segments in several shapes. Each shape is classified into one of the
reference variants below and resolved by a single dispatcher against the batch's
``LocalIdContext``. Numeric tokens are always local IDs; non-numeric strings must be real
IDs that belong to the batch.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from segmerge.completion_client import CompletionResult

from .local_ids import LocalIdContext
from .models import Issue, RawSuggestion
from .recovery import STANDARD_STRATEGIES, RecoveryStrategy, apply_first_success

logger = logging.getLogger(__name__)

_RANGE_RE = re.compile(r"^\s*\[?(\d+)\]?\s*-\s*\[?(\d+)\]?\s*$")
_LOCAL_TOKEN_RE = re.compile(r"^\s*\[?(\d+)\]?\s*$")
_MERGE_ID_PREFIX_RE = re.compile(r"^\s*(?:merge|pair)[-_#\s]*", re.IGNORECASE)


@dataclass(frozen=True)
class ByIds:
    tokens: Tuple[Any, ...]


@dataclass(frozen=True)
class BySingleId:
    token: Any


@dataclass(frozen=True)
class ByPairIndex:
    index: Any


@dataclass(frozen=True)
class ByMergeId:
    merge_id: Any


Reference = Union[ByIds, BySingleId, ByPairIndex, ByMergeId]


@dataclass
class InterpretedBatch:
    raw_items: List[Dict[str, Any]] = field(default_factory=list)
    suggestions: List[RawSuggestion] = field(default_factory=list)
    issues: List[Issue] = field(default_factory=list)
    recovery_strategy: Optional[str] = None
    fatal: bool = False


def _first_present(item: Dict[str, Any], keys: Sequence[str]) -> Any:
    for key in keys:
        value = item.get(key)
        if value is not None and value != "":
            return value
    return None


def classify(item: Dict[str, Any]) -> Optional[Reference]:
    ids = _first_present(item, ("segmentIds", "segment_ids", "ids"))
    if ids is not None:
        if isinstance(ids, (list, tuple)):
            return ByIds(tuple(ids))
        if isinstance(ids, str) and "," in ids:
            return ByIds(tuple(part.strip() for part in ids.split(",") if part.strip()))
        if isinstance(ids, str) and _RANGE_RE.match(ids):
            return ByIds((ids,))
        return BySingleId(ids)
    pair_index = _first_present(item, ("pairIndex", "pair_index", "pairId", "pair"))
    if pair_index is not None:
        return ByPairIndex(pair_index)
    merge_id = _first_present(item, ("mergeId", "merge_id"))
    if merge_id is not None:
        return ByMergeId(merge_id)
    single = _first_present(item, ("segmentId", "segment_id"))
    if single is not None:
        return BySingleId(single)
    return None


def _as_int(token: Any) -> Optional[int]:
    if isinstance(token, bool):
        return None
    if isinstance(token, int):
        return token
    if isinstance(token, float) and token.is_integer():
        return int(token)
    if isinstance(token, str):
        match = _LOCAL_TOKEN_RE.match(token)
        if match:
            return int(match.group(1))
    return None


def _resolve_token(token: Any, context: LocalIdContext) -> List[str]:
    """Resolve one token to real IDs. Empty means unresolvable."""
    local = _as_int(token)
    if local is not None:
        real = context.real_id_for(local)
        return [real] if real is not None else []
    if not isinstance(token, str):
        return []
    text = token.strip()
    if context.has_real_id(text):
        return [text]
    match = _RANGE_RE.match(text)
    if match:
        first, last = int(match.group(1)), int(match.group(2))
        if first >= last:
            return []
        resolved = [context.real_id_for(local_id) for local_id in range(first, last + 1)]
        if any(real is None for real in resolved):
            return []
        return [real for real in resolved if real is not None]
    return []


def resolve(reference: Reference, context: LocalIdContext) -> Tuple[Optional[List[str]], str]:
    """Return ``(real_ids, "")`` or ``(None, reason)``."""
    if isinstance(reference, ByIds):
        real_ids: List[str] = []
        for token in reference.tokens:
            resolved = _resolve_token(token, context)
            if not resolved:
                return None, f"unknown segment reference {token!r}"
            real_ids.extend(resolved)
        if len(real_ids) < 2:
            return None, "fewer than two segment references"
        return real_ids, ""
    if isinstance(reference, ByPairIndex):
        index = _as_int(reference.index)
        pair = context.pair_ids(index) if index is not None else None
        if pair is None:
            return None, f"unknown pair index {reference.index!r}"
        return list(pair), ""
    if isinstance(reference, ByMergeId):
        raw = reference.merge_id
        if isinstance(raw, str):
            raw = _MERGE_ID_PREFIX_RE.sub("", raw)
        if isinstance(raw, str) and _RANGE_RE.match(raw):
            return resolve(ByIds((raw,)), context)
        return resolve(ByPairIndex(raw), context)
    if isinstance(reference, BySingleId):
        resolved = _resolve_token(reference.token, context)
        if len(resolved) >= 2:
            return resolved, ""
        if not resolved:
            return None, f"unknown segment reference {reference.token!r}"
        for pair_index in range(1, context.pair_count + 1):
            pair = context.pair_ids(pair_index)
            if pair is not None and pair[0] == resolved[0]:
                return list(pair), ""
        return None, f"segment {resolved[0]!r} does not start an eligible pair"
    raise TypeError(f"Unsupported reference: {reference!r}")


def coerce_confidence(value: Any) -> float:
    if isinstance(value, bool) or value is None:
        return 0.5
    try:
        score = float(value)
    except (TypeError, ValueError):
        return 0.5
    if score != score:  # NaN
        return 0.5
    return min(1.0, max(0.0, score))


def _text_field(item: Dict[str, Any], keys: Sequence[str]) -> Optional[str]:
    value = _first_present(item, keys)
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        parts = [str(part).strip() for part in value if str(part).strip()]
        return "; ".join(parts) if parts else None
    text = str(value).strip()
    return text or None


def normalize_item(item: Any, context: LocalIdContext) -> Tuple[Optional[RawSuggestion], Optional[str]]:
    if not isinstance(item, dict):
        return None, "item is not an object"
    reference = classify(item)
    if reference is None:
        return None, "item does not reference any segment"
    real_ids, reason = resolve(reference, context)
    if real_ids is None:
        return None, reason
    return (
        RawSuggestion(
            segment_ids=real_ids,
            confidence=coerce_confidence(_first_present(item, ("confidence", "conf", "score"))),
            reason=_text_field(item, ("reason", "explanation", "note")) or "",
            smoothed_text=_text_field(item, ("smoothedText", "smoothed_text", "smooth")),
            smoothing_changes=_text_field(item, ("smoothingChanges", "smoothing_changes", "changes")),
        ),
        None,
    )


def interpret_response(
    result: CompletionResult,
    context: LocalIdContext,
    batch_index: int,
    strategies: Sequence[RecoveryStrategy] = STANDARD_STRATEGIES,
) -> InterpretedBatch:
    """Extract candidate items from one completion result and resolve their references.

    Never raises: every problem becomes an ``Issue`` on the returned batch.
    """
    batch = InterpretedBatch()
    if result.success and result.data is not None:
        batch.raw_items = [item for item in result.data if isinstance(item, dict)]
        skipped = len(result.data) - len(batch.raw_items)
        if skipped:
            batch.issues.append(
                Issue(
                    "warn",
                    f"Ignored {skipped} non-object item(s) in the response.",
                    {"batchIndex": batch_index},
                )
            )
    elif result.raw_response:
        outcome = apply_first_success(result.raw_response, strategies)
        if outcome.recovered:
            batch.raw_items = outcome.items
            batch.recovery_strategy = outcome.strategy
            batch.issues.append(
                Issue(
                    "warn",
                    f"Data recovered using {outcome.strategy} strategy",
                    {"batchIndex": batch_index, "itemCount": len(outcome.items)},
                )
            )
        else:
            batch.fatal = True
            batch.issues.append(
                Issue(
                    "error",
                    "Could not parse the model response.",
                    {
                        "batchIndex": batch_index,
                        "errorCode": result.error_code or "parse_error",
                        "attemptedStrategies": outcome.attempted,
                    },
                )
            )
            return batch
    else:
        batch.fatal = True
        batch.issues.append(
            Issue(
                "error",
                result.error or "Completion failed without a response.",
                {"batchIndex": batch_index, "errorCode": result.error_code or "unknown"},
            )
        )
        return batch

    for position, item in enumerate(batch.raw_items):
        suggestion, problem = normalize_item(item, context)
        if suggestion is None:
            logger.debug("Dropping item %s of batch %s: %s", position, batch_index, problem)
            batch.issues.append(
                Issue(
                    "warn",
                    f"Dropped suggestion: {problem}.",
                    {"batchIndex": batch_index, "itemIndex": position},
                )
            )
            continue
        batch.suggestions.append(suggestion)
    return batch
