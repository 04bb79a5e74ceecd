"""Merge-candidate analysis for transcript segments powered by LM Studio compatible models."""

from .models import (
    AnalysisResult,
    ConfidenceLevel,
    Issue,
    MergeAnalysisRequest,
    Segment,
    Suggestion,
    SuggestionStatus,
)
from .engine import MergeAnalyzer, analyze_merge_candidates

__all__ = [
    "AnalysisResult",
    "ConfidenceLevel",
    "Issue",
    "MergeAnalysisRequest",
    "MergeAnalyzer",
    "Segment",
    "Suggestion",
    "SuggestionStatus",
    "analyze_merge_candidates",
]
