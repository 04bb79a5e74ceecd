from __future__ import annotations

from functools import lru_cache
from typing import Callable, List, Optional

import tiktoken

TokenCounter = Callable[[str], int]
_MODEL_ENCODING_ALIASES: dict[str, str] = {
    "gpt-4o": "o200k_base",
    "gpt-4o-mini": "o200k_base",
}


def build_token_counter(model_hint: Optional[str]) -> TokenCounter:
    """
    Return a callable that counts prompt tokens with the tiktoken encoding closest to the model.
    Local models rarely map to an OpenAI encoding, so unknown names use cl100k_base and
    a character heuristic covers encodings that cannot be loaded at all.
    """

    encoding = _resolve_encoding(model_hint)
    if encoding is None:
        return heuristic_tokens

    def _count(text: str) -> int:
        if not text:
            return 1
        return max(1, len(encoding.encode_ordinary(text)))

    return _count


@lru_cache(maxsize=8)
def _resolve_encoding(model_hint: Optional[str]):
    encoding_name = "cl100k_base"
    for candidate in _model_hint_candidates(model_hint):
        alias = _MODEL_ENCODING_ALIASES.get(candidate)
        if alias:
            encoding_name = alias
            break
        if not candidate:
            continue
        try:
            encoding_name = tiktoken.encoding_name_for_model(candidate)
            break
        except KeyError:
            continue
    try:
        return tiktoken.get_encoding(encoding_name)
    except (ValueError, OSError):
        # Encodings are downloaded on first use; offline hosts fall back to the heuristic.
        return None


def heuristic_tokens(text: str) -> int:
    if not text:
        return 1
    ascii_chars = 0
    non_ascii_chars = 0
    for char in text:
        if char.isascii():
            ascii_chars += 1
        else:
            non_ascii_chars += 1
    ascii_estimate = (ascii_chars + 3) // 4 if ascii_chars else 0
    non_ascii_estimate = non_ascii_chars + max(1, non_ascii_chars // 5) if non_ascii_chars else 0
    return max(1, ascii_estimate + non_ascii_estimate)


def _model_hint_candidates(model_hint: Optional[str]) -> List[str]:
    if not model_hint:
        return [""]
    raw = model_hint.strip().lower()
    if not raw:
        return [""]
    candidates = [raw]
    if ":" in raw:
        prefix = raw.split(":", 1)[0]
        if prefix not in candidates:
            candidates.append(prefix)
    if "/" in raw:
        suffix = raw.rsplit("/", 1)[-1]
        if suffix not in candidates:
            candidates.append(suffix)
    return candidates
