from __future__ import annotations

import argparse
import json
import signal
import sys
import threading
from datetime import datetime
from pathlib import Path
from typing import Iterable, List

from segmerge.completion_client import CompletionClient
from segmerge.config import AppConfig, DEFAULT_CONFIG_PATH

from .cli import add_merge_arguments, apply_connection_overrides, build_merge_request, default_output_path
from .engine import MergeAnalyzer
from .models import BatchLogEntry, Suggestion


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m segmerge.merge_tool",
        description="Suggest merges of adjacent transcript segments using an OpenAI-compatible model.",
    )
    add_merge_arguments(parser)
    return parser


def load_config(path_override: Path | None) -> AppConfig:
    return AppConfig(path_override or DEFAULT_CONFIG_PATH)


def main(argv: Iterable[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    config = load_config(getattr(args, "config", None))
    if config.load_warning:
        _console_log("warning", config.load_warning)
    apply_connection_overrides(args, config)
    try:
        request = build_merge_request(args, config)
        client = CompletionClient.from_config(config)
    except ValueError as exc:
        parser.error(str(exc))
    if request.provider_id and client.provider(request.provider_id) is None:
        parser.error(f"Unknown provider: {request.provider_id}")

    output_path = args.output or default_output_path(args.input)
    log_path = output_path.with_suffix(".log")
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    if log_path.exists():
        log_path = output_path.with_name(f"{output_path.stem}_{timestamp}.log")
    analyzer = MergeAnalyzer(
        client,
        default_concurrency=config.get("ai_request_concurrency"),
        log_callback=_console_log,
        log_path=log_path,
    )
    cancel_event = threading.Event()
    previous_handler = signal.getsignal(signal.SIGINT)

    def _request_cancel(signum, frame) -> None:
        if cancel_event.is_set():
            raise KeyboardInterrupt
        _console_log("warning", "Cancelling... press Ctrl+C again to abort immediately.")
        cancel_event.set()

    def _on_progress(
        batch_index: int,
        total_batches: int,
        suggestions: List[Suggestion],
        processed: int,
        entry: BatchLogEntry,
    ) -> None:
        _console_log(
            "info",
            f"[{batch_index + 1}/{total_batches}] {entry.state.value}: "
            f"{len(suggestions)} suggestion(s), {processed}/{len(request.segments)} segment(s) processed.",
        )

    signal.signal(signal.SIGINT, _request_cancel)
    try:
        result = analyzer.analyze(request, cancel_event=cancel_event, on_progress=_on_progress)
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    output_path.parent.mkdir(parents=True, exist_ok=True)
    with output_path.open("w", encoding="utf-8") as handle:
        json.dump(result.to_dict(include_batch_log=request.debug), handle, indent=2, ensure_ascii=False)
    summary = result.summary
    print(
        f"Analyzed {summary.analyzed} pair(s), found {summary.found} suggestion(s) "
        f"(high {summary.by_confidence['high']}, medium {summary.by_confidence['medium']}, "
        f"low {summary.by_confidence['low']}). Report saved to {output_path}."
    )
    print(f"Detailed log: {log_path}")
    if any(issue.level == "error" for issue in result.issues):
        return 1
    return 0


def _console_log(level: str, message: str) -> None:
    timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    if level.lower() == "success":
        prefix = "[OK]"
    elif level.lower() == "warning":
        prefix = "[WARN]"
    elif level.lower() == "error":
        prefix = "[ERR]"
    elif level.lower() == "debug":
        prefix = "[DBG]"
    else:
        prefix = "[INFO]"
    print(f"{prefix} [{timestamp}] {message}")


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
