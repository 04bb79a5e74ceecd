from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import time
from typing import Any, Callable, Dict, List, Optional, Tuple


class ConfidenceLevel(str, Enum):
    """Coarse confidence bands, ordered low < medium < high."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @classmethod
    def from_flag(cls, flag: str) -> "ConfidenceLevel":
        normalized = (flag or "").strip().lower()
        for level in cls:
            if level.value == normalized:
                return level
        raise ValueError(f"Unsupported confidence level: {flag}")

    @classmethod
    def from_score(cls, score: float) -> "ConfidenceLevel":
        if score >= 0.8:
            return cls.HIGH
        if score >= 0.5:
            return cls.MEDIUM
        return cls.LOW

    @property
    def rank(self) -> int:
        return _CONFIDENCE_RANK[self]

    def meets(self, minimum: "ConfidenceLevel") -> bool:
        return self.rank >= minimum.rank


_CONFIDENCE_RANK = {
    ConfidenceLevel.LOW: 0,
    ConfidenceLevel.MEDIUM: 1,
    ConfidenceLevel.HIGH: 2,
}


class SuggestionStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class BatchState(str, Enum):
    """Lifecycle of one batch inside the coordinator."""

    PENDING = "pending"
    PREPARED = "prepared"
    SKIPPED = "skipped"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def completed(self) -> bool:
        return self in {BatchState.SKIPPED, BatchState.SUCCEEDED, BatchState.FAILED}


@dataclass(frozen=True)
class Segment:
    id: str
    text: str
    speaker: str
    start: float
    end: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "speaker": self.speaker,
            "start": self.start,
            "end": self.end,
        }


@dataclass(frozen=True)
class SegmentPair:
    pair_index: int
    segment_a: Segment
    segment_b: Segment
    gap: float
    local_id_a: int
    local_id_b: int


@dataclass
class Issue:
    level: str  # "warn" or "error"
    message: str
    context: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"level": self.level, "message": self.message}
        if self.context:
            payload["context"] = dict(self.context)
        return payload


@dataclass
class RawSuggestion:
    segment_ids: List[str]
    confidence: float
    reason: str = ""
    smoothed_text: Optional[str] = None
    smoothing_changes: Optional[str] = None


@dataclass
class SmoothingInfo:
    original_concatenated: str
    smoothed_text: str
    changes: str
    applied: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "applied": self.applied,
            "originalConcatenated": self.original_concatenated,
            "smoothedText": self.smoothed_text,
            "changes": self.changes,
        }


@dataclass
class Suggestion:
    id: str
    segment_ids: List[str]
    confidence: float
    confidence_level: ConfidenceLevel
    reason: str
    merged_text: str
    time_range: Tuple[float, float]
    speaker: str
    time_gap: float
    status: SuggestionStatus = SuggestionStatus.PENDING
    smoothing: Optional[SmoothingInfo] = None
    batch_index: Optional[int] = None
    recovery_strategy: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "segmentIds": list(self.segment_ids),
            "confidence": self.confidence,
            "confidenceLevel": self.confidence_level.value,
            "reason": self.reason,
            "mergedText": self.merged_text,
            "timeRange": {"start": self.time_range[0], "end": self.time_range[1]},
            "speaker": self.speaker,
            "timeGap": round(self.time_gap, 3),
            "status": self.status.value,
        }
        if self.smoothing is not None:
            payload["smoothing"] = self.smoothing.to_dict()
        if self.recovery_strategy:
            payload["recoveryStrategy"] = self.recovery_strategy
        return payload


@dataclass
class RetryEvent:
    attempt: int
    error_message: str
    attempt_duration_ms: float


@dataclass
class BatchLogEntry:
    batch_index: int
    segment_range: Tuple[int, int]
    segment_count: int
    pair_count: int = 0
    state: BatchState = BatchState.PENDING
    raw_item_count: int = 0
    normalized_count: int = 0
    suggestion_count: int = 0
    duration_ms: float = 0.0
    fatal: bool = False
    error: Optional[str] = None
    error_code: Optional[str] = None
    recovery_strategy: Optional[str] = None
    prompt_tokens: int = 0
    retry_events: List[RetryEvent] = field(default_factory=list)
    request_variables: Optional[Dict[str, str]] = None
    raw_response: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "batchIndex": self.batch_index,
            "segmentRange": list(self.segment_range),
            "segmentCount": self.segment_count,
            "pairCount": self.pair_count,
            "state": self.state.value,
            "rawItemCount": self.raw_item_count,
            "normalizedCount": self.normalized_count,
            "suggestionCount": self.suggestion_count,
            "durationMs": round(self.duration_ms, 1),
            "fatal": self.fatal,
            "promptTokens": self.prompt_tokens,
            "retries": [
                {
                    "attempt": event.attempt,
                    "errorMessage": event.error_message,
                    "attemptDurationMs": round(event.attempt_duration_ms, 1),
                }
                for event in self.retry_events
            ],
        }
        if self.error:
            payload["error"] = self.error
            payload["errorCode"] = self.error_code
        if self.recovery_strategy:
            payload["recoveryStrategy"] = self.recovery_strategy
        return payload


@dataclass
class AnalysisSummary:
    analyzed: int = 0
    found: int = 0
    by_confidence: Dict[str, int] = field(
        default_factory=lambda: {level.value: 0 for level in reversed(ConfidenceLevel)}
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "analyzed": self.analyzed,
            "found": self.found,
            "byConfidence": dict(self.by_confidence),
        }


@dataclass
class AnalysisResult:
    suggestions: List[Suggestion] = field(default_factory=list)
    summary: AnalysisSummary = field(default_factory=AnalysisSummary)
    issues: List[Issue] = field(default_factory=list)
    batch_log: List[BatchLogEntry] = field(default_factory=list)
    cancelled: bool = False
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None

    def complete(self) -> None:
        self.finished_at = time.time()

    def to_dict(self, include_batch_log: bool = False) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "suggestions": [item.to_dict() for item in self.suggestions],
            "summary": self.summary.to_dict(),
            "issues": [issue.to_dict() for issue in self.issues],
        }
        if self.cancelled:
            payload["cancelled"] = True
        if include_batch_log:
            payload["batchLog"] = [entry.to_dict() for entry in self.batch_log]
        if self.finished_at is not None:
            payload["durationSeconds"] = round(self.finished_at - self.started_at, 2)
        return payload


ProgressCallback = Callable[[int, int, List[Suggestion], int, BatchLogEntry], None]


@dataclass
class MergeAnalysisRequest:
    segments: List[Segment]
    max_time_gap: float = 2.0
    min_confidence: ConfidenceLevel = ConfidenceLevel.MEDIUM
    same_speaker_only: bool = True
    enable_smoothing: bool = True
    batch_size: int = 20
    concurrency: Optional[int] = None
    provider_id: Optional[str] = None
    model: Optional[str] = None
    prompt_token_limit: Optional[int] = None
    debug: bool = False
