import json
import threading
from typing import Callable, List

from segmerge.completion_client import CompletionClient, CompletionResult, ProviderSettings
from segmerge.merge_tool.models import Segment


class ScriptedClient(CompletionClient):
    """Completion client that answers from a Python callable instead of HTTP."""

    def __init__(self, responder: Callable):
        super().__init__(
            {"fake": ProviderSettings(provider_id="fake", base_url="http://127.0.0.1:9/v1", model="fake-model")}
        )
        self.responder = responder
        self.calls: List[dict] = []
        self._lock = threading.Lock()

    def execute(self, feature_id, variables, options=None):
        with self._lock:
            self.calls.append({"feature_id": feature_id, "variables": dict(variables), "options": options})
        return self.responder(variables, options)


def ok(items) -> CompletionResult:
    return CompletionResult(success=True, data=list(items), raw_response=json.dumps(items))


def unparsed(text: str) -> CompletionResult:
    return CompletionResult(success=False, raw_response=text, error="not JSON", error_code="parse_error")


def make_segments(*specs) -> List[Segment]:
    """Build segments from (id, speaker, start, end[, text]) tuples."""
    segments = []
    for spec in specs:
        segment_id, speaker, start, end = spec[:4]
        text = spec[4] if len(spec) > 4 else f"text of {segment_id}"
        segments.append(Segment(id=segment_id, text=text, speaker=speaker, start=start, end=end))
    return segments


def chain(count: int, speaker: str = "A", step: float = 1.0, gap: float = 0.2) -> List[Segment]:
    segments = []
    cursor = 0.0
    for index in range(1, count + 1):
        segments.append(
            Segment(id=f"s{index}", text=f"part {index}", speaker=speaker, start=cursor, end=cursor + step)
        )
        cursor += step + gap
    return segments
