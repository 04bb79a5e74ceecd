from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any, Iterable, List, Optional

import srt

from .models import Segment

DEFAULT_SPEAKER = "SPEAKER_00"
_SPEAKER_PREFIX_RE = re.compile(r"^\s*(?:\[(?P<bracket>[^\]]{1,40})\]|(?P<plain>[A-Za-z0-9_ .-]{1,40}?)):\s+(?P<text>.+)$", re.DOTALL)


def _read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        return path.read_text(encoding="utf-8", errors="replace")


def split_speaker(content: str, default_speaker: str = DEFAULT_SPEAKER) -> tuple[str, str]:
    """Split a ``Speaker: text`` (or ``[Speaker]: text``) line into speaker and text."""
    match = _SPEAKER_PREFIX_RE.match(content)
    if not match:
        return default_speaker, content.strip()
    speaker = (match.group("bracket") or match.group("plain") or "").strip()
    return speaker or default_speaker, match.group("text").strip()


def segments_from_srt(raw: str, default_speaker: str = DEFAULT_SPEAKER) -> List[Segment]:
    segments: List[Segment] = []
    for entry in srt.parse(raw):
        content = " ".join(line.strip() for line in entry.content.splitlines() if line.strip())
        if not content:
            continue
        speaker, text = split_speaker(content, default_speaker)
        segments.append(
            Segment(
                id=str(entry.index),
                text=text,
                speaker=speaker,
                start=entry.start.total_seconds(),
                end=entry.end.total_seconds(),
            )
        )
    return segments


def _coerce_time(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return value
    return value


def segments_from_records(records: Iterable[Any], default_speaker: str = DEFAULT_SPEAKER) -> List[Segment]:
    segments: List[Segment] = []
    for position, record in enumerate(records, start=1):
        if not isinstance(record, dict):
            raise ValueError(f"Segment #{position} is not a JSON object.")
        raw_id = record.get("id", position)
        speaker = record.get("speaker") or record.get("speakerId") or default_speaker
        segments.append(
            Segment(
                id="" if raw_id is None else str(raw_id),
                text=record.get("text"),
                speaker=str(speaker),
                start=_coerce_time(record.get("start")),
                end=_coerce_time(record.get("end")),
            )
        )
    return segments


def load_segments(path: Path, default_speaker: str = DEFAULT_SPEAKER) -> List[Segment]:
    """Load segments from an ``.srt`` file or a JSON list (optionally under ``segments``)."""
    suffix = path.suffix.lower()
    raw = _read_text(path)
    if suffix == ".srt":
        try:
            segments = segments_from_srt(raw, default_speaker)
        except srt.SRTParseError as exc:
            raise ValueError(f"Invalid SRT file {path}: {exc}") from exc
        if not segments:
            raise ValueError(f"SRT file contains no subtitle lines: {path}")
        return segments
    if suffix == ".json":
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Invalid JSON in {path}: {exc}") from exc
        records: Optional[Any] = data.get("segments") if isinstance(data, dict) else data
        if not isinstance(records, list):
            raise ValueError(f"Expected a list of segments in {path}.")
        return segments_from_records(records, default_speaker)
    raise ValueError(f"Unsupported transcript format: {path.suffix}")
