from __future__ import annotations

import argparse
from argparse import ArgumentParser
from pathlib import Path

from segmerge.config import AppConfig

from .loaders import load_segments
from .models import ConfidenceLevel, MergeAnalysisRequest


def add_merge_arguments(parser: ArgumentParser) -> None:
    parser.add_argument("input", type=Path, help="Transcript with segments (.srt or .json).")
    parser.add_argument(
        "-o",
        "--output",
        type=Path,
        default=None,
        help="Where to write the JSON report (default: <input>.merge.json).",
    )
    parser.add_argument("--max-gap", type=float, default=None, help="Largest pause in seconds between merge candidates.")
    parser.add_argument(
        "--min-confidence",
        choices=[level.value for level in ConfidenceLevel],
        default=None,
        help="Drop suggestions below this confidence band (default: config).",
    )
    parser.add_argument(
        "--same-speaker",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Only pair segments of the same speaker.",
    )
    parser.add_argument(
        "--smoothing",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Ask the model for smoothed merged text.",
    )
    parser.add_argument("--batch-size", type=int, default=None, help="Segments per request (default: config).")
    parser.add_argument("--concurrency", type=int, default=None, help="Parallel requests (default: config).")
    parser.add_argument("--provider", default=None, help="Provider id from config (default: lmstudio).")
    parser.add_argument("--model", default=None, help="Override the model identifier.")
    parser.add_argument("--base-url", default=None, help="Override the LM Studio base URL.")
    parser.add_argument("--api-key", default=None, help="Optional API key for the LM Studio provider.")
    parser.add_argument("--config", type=Path, default=None, help="Path to config.json (user profile by default).")
    parser.add_argument("--debug", action="store_true", help="Log per-batch details and keep raw responses in the report.")


def apply_connection_overrides(args: argparse.Namespace, config: AppConfig) -> None:
    """Fold --base-url/--api-key into the in-memory settings without persisting them."""
    if args.base_url:
        config.settings["lmstudio_base_url"] = args.base_url
    if args.api_key:
        config.settings["lmstudio_api_key"] = args.api_key


def build_merge_request(args: argparse.Namespace, config: AppConfig) -> MergeAnalysisRequest:
    input_path: Path = args.input
    if not input_path.is_file():
        raise ValueError(f"Input file does not exist: {input_path}")
    segments = load_segments(input_path)
    max_gap = args.max_gap if args.max_gap is not None else config.get("merge_max_time_gap")
    if max_gap < 0:
        raise ValueError("--max-gap must not be negative.")
    batch_size = args.batch_size if args.batch_size is not None else config.get("merge_batch_size")
    if batch_size < 2:
        raise ValueError("--batch-size must be at least 2.")
    concurrency = args.concurrency if args.concurrency is not None else config.get("ai_request_concurrency")
    if concurrency < 1:
        raise ValueError("--concurrency must be at least 1.")
    same_speaker = args.same_speaker if args.same_speaker is not None else config.get("merge_same_speaker_only")
    smoothing = args.smoothing if args.smoothing is not None else config.get("merge_enable_smoothing")
    min_confidence = ConfidenceLevel.from_flag(args.min_confidence or config.get("merge_min_confidence"))
    return MergeAnalysisRequest(
        segments=segments,
        max_time_gap=float(max_gap),
        min_confidence=min_confidence,
        same_speaker_only=bool(same_speaker),
        enable_smoothing=bool(smoothing),
        batch_size=int(batch_size),
        concurrency=int(concurrency),
        provider_id=args.provider or None,
        model=args.model or None,
        prompt_token_limit=config.get("merge_prompt_token_limit") or None,
        debug=bool(args.debug or config.get("debug_logging")),
    )


def default_output_path(input_path: Path) -> Path:
    return input_path.with_name(f"{input_path.stem}.merge.json")
