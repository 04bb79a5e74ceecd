from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from segmerge.completion_client import CompletionClient, ExecuteOptions, PromptTemplate

from .batching import SegmentBatch
from .context import AnalysisContext
from .interpreter import interpret_response
from .local_ids import LocalIdContext
from .models import (
    BatchLogEntry,
    BatchState,
    ConfidenceLevel,
    Issue,
    ProgressCallback,
    RetryEvent,
    SegmentPair,
    Suggestion,
)
from .pairs import collect_pairs
from .prompts import FEATURE_ID, BuiltPrompt, build_prompt
from .suggestions import build_suggestions, filter_by_confidence

logger = logging.getLogger(__name__)

PREPARE_YIELD_EVERY = 10
EMIT_YIELD_EVERY = 10
_QUEUE_SENTINEL = object()


@dataclass
class BatchSettings:
    max_time_gap: float
    min_confidence: ConfidenceLevel
    same_speaker_only: bool
    enable_smoothing: bool
    provider_id: Optional[str] = None
    model: Optional[str] = None
    prompt_token_limit: Optional[int] = None
    debug: bool = False


@dataclass
class PreparedBatch:
    batch: SegmentBatch
    context: LocalIdContext
    pairs: List[SegmentPair]
    prompt: BuiltPrompt
    log_entry: BatchLogEntry


@dataclass
class BatchOutcome:
    index: int
    state: BatchState
    log_entry: BatchLogEntry
    analyzed: int = 0
    processed_until: int = 0
    suggestions: List[Suggestion] = field(default_factory=list)
    issues: List[Issue] = field(default_factory=list)


@dataclass
class CoordinatorReport:
    outcomes: List[BatchOutcome]
    cancelled: bool = False

    @property
    def completed(self) -> List[BatchOutcome]:
        return [outcome for outcome in self.outcomes if outcome.state.completed]

    @property
    def analyzed(self) -> int:
        return sum(outcome.analyzed for outcome in self.completed)


class BatchCoordinator:
    """Runs prepared batches through a fixed pool of worker threads.

    Workers pull batches from a shared queue in index order and publish outcomes to a
    results queue. The calling thread buffers outcomes by batch index and reports progress
    strictly in ascending order, whatever order the calls finish in.
    """

    def __init__(
        self,
        client: CompletionClient,
        settings: BatchSettings,
        *,
        concurrency: int = 1,
        context: Optional[AnalysisContext] = None,
        token_counter: Optional[Callable[[str], int]] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.client = client
        self.settings = settings
        self.concurrency = max(1, int(concurrency or 1))
        self.context = context or AnalysisContext()
        self.token_counter = token_counter
        self.cancel_event = cancel_event or threading.Event()
        self._abort = threading.Event()
        self._total = 0

    def _cancelled(self) -> bool:
        return self.cancel_event.is_set() or self._abort.is_set()

    def prepare(self, batch: SegmentBatch) -> PreparedBatch:
        context = LocalIdContext()
        pairs = collect_pairs(
            batch.segments,
            context,
            self.settings.max_time_gap,
            self.settings.same_speaker_only,
        )
        prompt = build_prompt(
            batch.segments,
            pairs,
            context,
            self.settings.max_time_gap,
            self.settings.enable_smoothing,
            token_counter=self.token_counter,
        )
        entry = BatchLogEntry(
            batch_index=batch.index,
            segment_range=(batch.start, batch.end),
            segment_count=len(batch.segments),
            pair_count=len(pairs),
            state=BatchState.PREPARED,
            prompt_tokens=prompt.prompt_tokens,
        )
        limit = self.settings.prompt_token_limit
        if limit and prompt.prompt_tokens > limit:
            self.context.log(
                "warning",
                f"Batch {batch.index + 1}: prompt is about {prompt.prompt_tokens} tokens, above the {limit} token limit.",
            )
        return PreparedBatch(batch=batch, context=context, pairs=pairs, prompt=prompt, log_entry=entry)

    def run(self, batches: Sequence[SegmentBatch], on_progress: Optional[ProgressCallback] = None) -> CoordinatorReport:
        self._total = len(batches)
        buffered: Dict[int, BatchOutcome] = {}
        work: "queue.Queue[PreparedBatch | object]" = queue.Queue()
        results: "queue.Queue[BatchOutcome]" = queue.Queue()
        expected = 0

        for position, batch in enumerate(batches, start=1):
            try:
                prepared = self.prepare(batch)
            except Exception as exc:
                logger.exception("Preparing batch %s failed.", batch.index)
                buffered[batch.index] = self._preparation_failure(batch, exc)
                continue
            if not prepared.prompt.has_eligible_pairs:
                prepared.log_entry.state = BatchState.SKIPPED
                self.context.debug(f"Batch {batch.index + 1}/{self._total}: no eligible pairs, skipped.")
                buffered[batch.index] = self._outcome(prepared, BatchState.SKIPPED)
            else:
                work.put(prepared)
                expected += 1
            if position % PREPARE_YIELD_EVERY == 0:
                time.sleep(0)

        worker_count = min(self.concurrency, expected)
        workers = [
            threading.Thread(
                target=self._worker,
                args=(work, results),
                name=f"merge-batch-{slot}",
                daemon=True,
            )
            for slot in range(worker_count)
        ]
        for _ in workers:
            work.put(_QUEUE_SENTINEL)
        for worker in workers:
            worker.start()
        if worker_count:
            self.context.debug(f"Dispatching {expected} batch(es) to {worker_count} worker(s).")

        outcomes: List[BatchOutcome] = []
        next_index = 0
        emitted = 0
        interrupted = False
        try:
            received = 0
            while True:
                while next_index in buffered:
                    outcome = buffered.pop(next_index)
                    outcomes.append(outcome)
                    next_index += 1
                    if outcome.state == BatchState.CANCELLED:
                        continue
                    if on_progress is not None:
                        on_progress(
                            outcome.index,
                            self._total,
                            list(outcome.suggestions),
                            outcome.processed_until,
                            outcome.log_entry,
                        )
                    emitted += 1
                    if emitted % EMIT_YIELD_EVERY == 0:
                        time.sleep(0)
                if received >= expected:
                    break
                outcome = results.get()
                received += 1
                buffered[outcome.index] = outcome
        except KeyboardInterrupt:
            interrupted = True
            raise
        finally:
            self._abort.set()
            # Workers are daemons; on interrupt they are left to finish their current call.
            if not interrupted:
                for worker in workers:
                    worker.join()
        cancelled = any(outcome.state == BatchState.CANCELLED for outcome in outcomes)
        return CoordinatorReport(outcomes=outcomes, cancelled=cancelled)

    def _worker(self, work: "queue.Queue[PreparedBatch | object]", results: "queue.Queue[BatchOutcome]") -> None:
        while True:
            item = work.get()
            if item is _QUEUE_SENTINEL:
                return
            prepared = item  # type: PreparedBatch
            if self._cancelled():
                results.put(self._outcome(prepared, BatchState.CANCELLED))
                continue
            try:
                outcome = self._execute(prepared)
            except Exception as exc:
                logger.exception("Batch %s failed unexpectedly.", prepared.batch.index)
                prepared.log_entry.error = str(exc)
                prepared.log_entry.error_code = "internal_error"
                prepared.log_entry.fatal = True
                outcome = self._outcome(
                    prepared,
                    BatchState.FAILED,
                    issues=[
                        Issue(
                            "error",
                            f"Batch {prepared.batch.index + 1} failed: {exc}",
                            {"batchIndex": prepared.batch.index, "errorCode": "internal_error"},
                        )
                    ],
                )
            results.put(outcome)

    def _execute(self, prepared: PreparedBatch) -> BatchOutcome:
        batch, entry = prepared.batch, prepared.log_entry
        label = f"Batch {batch.index + 1}/{self._total}"
        entry.state = BatchState.EXECUTING
        started = time.monotonic()

        def on_retry(attempt: int, error_message: str, attempt_duration_ms: float) -> None:
            entry.retry_events.append(RetryEvent(attempt, error_message, attempt_duration_ms))
            self.context.log("warning", f"{label}: attempt {attempt} failed ({error_message}). Retrying...")

        if self.settings.debug:
            entry.request_variables = dict(prepared.prompt.variables)
        result = self.client.execute(
            FEATURE_ID,
            prepared.prompt.variables,
            ExecuteOptions(
                provider_id=self.settings.provider_id,
                model=self.settings.model,
                custom_prompt=PromptTemplate(prepared.prompt.system_prompt, prepared.prompt.user_template),
                signal=self.cancel_event,
                on_retry=on_retry,
            ),
        )
        entry.duration_ms = (time.monotonic() - started) * 1000.0
        if self.settings.debug:
            entry.raw_response = result.raw_response
        if result.error_code == "cancelled":
            self.context.debug(f"{label}: cancelled while waiting for the provider.")
            return self._outcome(prepared, BatchState.CANCELLED)

        interpreted = interpret_response(result, prepared.context, batch.index)
        entry.raw_item_count = len(interpreted.raw_items)
        entry.normalized_count = len(interpreted.suggestions)
        entry.recovery_strategy = interpreted.recovery_strategy
        if interpreted.fatal:
            entry.fatal = True
            entry.error = result.error or "Unparseable response"
            entry.error_code = result.error_code
            self.context.log("error", f"{label} failed: {entry.error} [{entry.error_code}]")
            return self._outcome(prepared, BatchState.FAILED, issues=interpreted.issues)

        suggestions, issues = build_suggestions(
            interpreted.suggestions,
            batch.segments,
            prepared.pairs,
            batch.index,
            recovery_strategy=interpreted.recovery_strategy,
        )
        kept = filter_by_confidence(suggestions, self.settings.min_confidence)
        entry.suggestion_count = len(kept)
        self.context.log(
            "info",
            f"{label}: {len(prepared.pairs)} pair(s), {len(kept)} suggestion(s) kept of {len(suggestions)}.",
        )
        return self._outcome(
            prepared,
            BatchState.SUCCEEDED,
            suggestions=kept,
            issues=interpreted.issues + issues,
        )

    @staticmethod
    def _outcome(
        prepared: PreparedBatch,
        state: BatchState,
        *,
        suggestions: Optional[List[Suggestion]] = None,
        issues: Optional[List[Issue]] = None,
    ) -> BatchOutcome:
        prepared.log_entry.state = state
        batch = prepared.batch
        return BatchOutcome(
            index=batch.index,
            state=state,
            log_entry=prepared.log_entry,
            analyzed=batch.adjacent_pair_count if state.completed else 0,
            processed_until=batch.end + 1,
            suggestions=list(suggestions or []),
            issues=list(issues or []),
        )

    @staticmethod
    def _preparation_failure(batch: SegmentBatch, exc: Exception) -> BatchOutcome:
        entry = BatchLogEntry(
            batch_index=batch.index,
            segment_range=(batch.start, batch.end),
            segment_count=len(batch.segments),
            state=BatchState.FAILED,
            fatal=True,
            error=str(exc),
            error_code="internal_error",
        )
        return BatchOutcome(
            index=batch.index,
            state=BatchState.FAILED,
            log_entry=entry,
            analyzed=batch.adjacent_pair_count,
            processed_until=batch.end + 1,
            issues=[
                Issue(
                    "error",
                    f"Batch {batch.index + 1} could not be prepared: {exc}",
                    {"batchIndex": batch.index, "errorCode": "internal_error"},
                )
            ],
        )
