from __future__ import annotations

import threading
from pathlib import Path
from typing import Callable, Optional, Sequence

from segmerge.completion_client import CompletionClient
from segmerge.token_utils import build_token_counter

from .batching import partition
from .context import AnalysisContext, LogCallback
from .coordinator import BatchCoordinator, BatchSettings
from .models import (
    AnalysisResult,
    AnalysisSummary,
    ConfidenceLevel,
    Issue,
    MergeAnalysisRequest,
    ProgressCallback,
    Segment,
)
from .prompts import FEATURE_ID, MERGE_SYSTEM_PROMPT, MERGE_USER_TEMPLATE
from .suggestions import count_by_confidence
from .validation import has_errors, validate_with_rules

DEFAULT_CONCURRENCY = 2


class MergeAnalyzer:
    def __init__(
        self,
        client: CompletionClient,
        *,
        default_concurrency: int = DEFAULT_CONCURRENCY,
        log_callback: Optional[LogCallback] = None,
        log_path: Optional[Path] = None,
        token_counter: Optional[Callable[[str], int]] = None,
    ):
        self.client = client
        self.client.register_feature(FEATURE_ID, MERGE_SYSTEM_PROMPT, MERGE_USER_TEMPLATE)
        self.default_concurrency = default_concurrency
        self._log_callback = log_callback
        self._log_path = log_path
        self._token_counter = token_counter

    def analyze(
        self,
        request: MergeAnalysisRequest,
        cancel_event: Optional[threading.Event] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> AnalysisResult:
        context = AnalysisContext(self._log_callback, debug=request.debug, log_path=self._log_path)
        result = AnalysisResult()

        result.issues.extend(validate_with_rules(request.segments))
        if has_errors(result.issues) or len(request.segments) < 2:
            for issue in result.issues:
                context.log("error" if issue.level == "error" else "warning", issue.message)
            result.complete()
            return result

        concurrency = request.concurrency if request.concurrency is not None else self.default_concurrency
        concurrency = max(1, int(concurrency))
        batches = partition(request.segments, request.batch_size)
        context.log(
            "info",
            f"Analyzing {len(request.segments)} segment(s) in {len(batches)} batch(es) "
            f"with concurrency {concurrency}.",
        )
        token_counter = self._token_counter or build_token_counter(
            request.model or self._provider_model(request.provider_id)
        )
        coordinator = BatchCoordinator(
            self.client,
            BatchSettings(
                max_time_gap=request.max_time_gap,
                min_confidence=request.min_confidence,
                same_speaker_only=request.same_speaker_only,
                enable_smoothing=request.enable_smoothing,
                provider_id=request.provider_id,
                model=request.model,
                prompt_token_limit=request.prompt_token_limit,
                debug=request.debug,
            ),
            concurrency=concurrency,
            context=context,
            token_counter=token_counter,
            cancel_event=cancel_event,
        )
        report = coordinator.run(batches, on_progress)

        for outcome in report.outcomes:
            result.batch_log.append(outcome.log_entry)
            result.suggestions.extend(outcome.suggestions)
            result.issues.extend(outcome.issues)
        result.cancelled = report.cancelled
        if report.cancelled:
            processed = len(report.completed)
            result.issues.append(
                Issue(
                    "warn",
                    "Analysis cancelled before all batches completed.",
                    {"processedBatches": processed, "totalBatches": len(batches)},
                )
            )
            context.log("warning", f"Analysis cancelled after {processed}/{len(batches)} batch(es).")
        result.summary = AnalysisSummary(
            analyzed=report.analyzed,
            found=len(result.suggestions),
            by_confidence=count_by_confidence(result.suggestions),
        )
        result.complete()
        context.log(
            "success",
            f"Found {result.summary.found} merge suggestion(s) across {result.summary.analyzed} analyzed pair(s).",
        )
        return result

    def _provider_model(self, provider_id: Optional[str]) -> Optional[str]:
        settings = self.client.provider(provider_id)
        return settings.model if settings else None


def analyze_merge_candidates(
    client: CompletionClient,
    segments: Sequence[Segment],
    max_time_gap: float = 2.0,
    min_confidence: ConfidenceLevel | str = ConfidenceLevel.MEDIUM,
    same_speaker_only: bool = True,
    enable_smoothing: bool = True,
    batch_size: int = 20,
    concurrency: Optional[int] = None,
    provider_id: Optional[str] = None,
    model: Optional[str] = None,
    cancel_event: Optional[threading.Event] = None,
    on_progress: Optional[ProgressCallback] = None,
    log_callback: Optional[LogCallback] = None,
    token_counter: Optional[Callable[[str], int]] = None,
) -> AnalysisResult:
    if not isinstance(min_confidence, ConfidenceLevel):
        min_confidence = ConfidenceLevel.from_flag(min_confidence)
    request = MergeAnalysisRequest(
        segments=list(segments),
        max_time_gap=max_time_gap,
        min_confidence=min_confidence,
        same_speaker_only=same_speaker_only,
        enable_smoothing=enable_smoothing,
        batch_size=batch_size,
        concurrency=concurrency,
        provider_id=provider_id,
        model=model,
    )
    analyzer = MergeAnalyzer(client, log_callback=log_callback, token_counter=token_counter)
    return analyzer.analyze(request, cancel_event=cancel_event, on_progress=on_progress)
