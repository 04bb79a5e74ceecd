from __future__ import annotations

import json
import logging
import re
import threading
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple
from urllib.parse import urlparse

import requests
from requests import Response, Session
from requests.exceptions import RequestException

if TYPE_CHECKING:
    from segmerge.config import AppConfig

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER_ID = "lmstudio"
RETRYABLE_STATUS_CODES = frozenset({408, 409, 425, 429, 500, 502, 503, 504, 520, 521, 522, 524})
_LIST_KEYS = ("suggestions", "merges", "items", "results", "data")
_IF_BLOCK_RE = re.compile(r"\{\{#if\s+(\w+)\s*\}\}(.*?)(?:\{\{else\}\}(.*?))?\{\{/if\}\}", re.DOTALL)
_PLACEHOLDER_RE = re.compile(r"\{\{\s*(\w+)\s*\}\}")
_FALSY_FLAGS = frozenset({"", "false", "0", "no", "off", "none", "null"})

RetryCallback = Callable[[int, str, float], None]


class CompletionError(RuntimeError):
    """Raised inside the client when a provider call fails; surfaced to callers as a result."""

    def __init__(self, message: str, *, code: str, retryable: bool = True):
        super().__init__(message)
        self.code = code
        self.retryable = retryable


class CompletionCancelled(CompletionError):
    def __init__(self, message: str = "Request cancelled."):
        super().__init__(message, code="cancelled", retryable=False)


@dataclass(slots=True)
class ProviderSettings:
    provider_id: str
    base_url: str
    model: str
    api_key: str = ""
    timeout: float = 120.0
    temperature: float = 0.2
    top_p: float = 0.9
    max_completion_tokens: Optional[int] = None
    max_attempts: int = 3

    @classmethod
    def from_dict(cls, provider_id: str, raw: Mapping[str, Any]) -> "ProviderSettings":
        def _optional_int(value: Any) -> Optional[int]:
            try:
                parsed = int(value)
            except (TypeError, ValueError):
                return None
            return parsed if parsed > 0 else None

        return cls(
            provider_id=provider_id,
            base_url=str(raw.get("base_url") or raw.get("baseUrl") or "").strip(),
            model=str(raw.get("model") or "").strip(),
            api_key=str(raw.get("api_key") or raw.get("apiKey") or "").strip(),
            timeout=float(raw.get("timeout") or 120.0),
            temperature=float(raw.get("temperature", 0.2)),
            top_p=float(raw.get("top_p", 0.9)),
            max_completion_tokens=_optional_int(raw.get("max_completion_tokens")),
            max_attempts=max(1, int(raw.get("max_attempts") or 3)),
        )


@dataclass(frozen=True)
class PromptTemplate:
    system_prompt: str
    user_template: str


@dataclass
class ExecuteOptions:
    provider_id: Optional[str] = None
    model: Optional[str] = None
    custom_prompt: Optional[PromptTemplate] = None
    signal: Optional[threading.Event] = None
    on_retry: Optional[RetryCallback] = None
    max_tokens: Optional[int] = None


@dataclass
class CompletionResult:
    success: bool
    data: Optional[List[Any]] = None
    raw_response: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


def render_template(template: str, variables: Mapping[str, Any]) -> str:
    """Expand ``{{#if name}}..{{else}}..{{/if}}`` blocks, then ``{{name}}`` placeholders.

    Flags are false when missing or when their string form is one of ``false``, ``0``, ``no``
    or empty. Unknown placeholders are left in place.
    """

    def _if_block(match: re.Match) -> str:
        name, truthy, falsy = match.group(1), match.group(2), match.group(3) or ""
        return truthy if _flag_enabled(variables.get(name)) else falsy

    def _placeholder(match: re.Match) -> str:
        name = match.group(1)
        if name not in variables:
            return match.group(0)
        return str(variables[name])

    expanded = _IF_BLOCK_RE.sub(_if_block, template)
    return _PLACEHOLDER_RE.sub(_placeholder, expanded)


def _flag_enabled(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() not in _FALSY_FLAGS


def _is_local_url(url: str) -> bool:
    normalized = url or ""
    parsed = urlparse(normalized if "://" in normalized else f"http://{normalized}")
    host = (parsed.hostname or "").lower()
    return host in {"127.0.0.1", "localhost"} or host.startswith("192.168.") or host.startswith("10.")


def validate_provider_settings(
    settings: ProviderSettings,
    *,
    require_api_key: Optional[bool] = None,
) -> tuple[bool, str]:
    missing: list[str] = []
    if not settings.base_url.strip():
        missing.append("URL")
    if not settings.model.strip():
        missing.append("model")
    enforce_key = (
        require_api_key
        if require_api_key is not None
        else bool(settings.base_url and not _is_local_url(settings.base_url))
    )
    if enforce_key and not settings.api_key.strip():
        missing.append("API key")
    if missing:
        return False, f"Provider '{settings.provider_id}' settings incomplete: {', '.join(missing)} required."
    return True, ""


class CompletionClient:
    """OpenAI-compatible chat completion client shared by every analysis feature.

    ``execute`` never raises for provider problems. Failures come back as a
    ``CompletionResult`` with ``success=False`` and an ``error_code``.
    """

    def __init__(
        self,
        providers: Mapping[str, ProviderSettings],
        default_provider_id: Optional[str] = None,
        session: Optional[Session] = None,
    ):
        if not providers:
            raise ValueError("At least one completion provider is required.")
        self.providers: Dict[str, ProviderSettings] = dict(providers)
        self.default_provider_id = default_provider_id or next(iter(self.providers))
        if self.default_provider_id not in self.providers:
            raise ValueError(f"Unknown default provider: {self.default_provider_id}")
        self._session = session or requests.Session()
        self._features: Dict[str, PromptTemplate] = {}

    @classmethod
    def from_config(cls, config: "AppConfig", session: Optional[Session] = None) -> "CompletionClient":
        providers: Dict[str, ProviderSettings] = {
            DEFAULT_PROVIDER_ID: ProviderSettings(
                provider_id=DEFAULT_PROVIDER_ID,
                base_url=config.get("lmstudio_base_url"),
                model=config.get("lmstudio_model"),
                api_key=config.get("lmstudio_api_key") or "",
                timeout=config.get("lmstudio_timeout"),
                temperature=config.get("lmstudio_temperature"),
                max_completion_tokens=config.get("lmstudio_max_completion_tokens") or None,
                max_attempts=config.get("lmstudio_max_attempts"),
            )
        }
        for provider_id, raw in config.get("providers").items():
            providers[provider_id] = ProviderSettings.from_dict(provider_id, raw)
        default_id = config.get("default_provider_id") or DEFAULT_PROVIDER_ID
        if default_id not in providers:
            logger.warning("Default provider '%s' is not configured; using '%s'.", default_id, DEFAULT_PROVIDER_ID)
            default_id = DEFAULT_PROVIDER_ID
        return cls(providers, default_provider_id=default_id, session=session)

    def register_feature(self, feature_id: str, system_prompt: str, user_template: str) -> None:
        self._features[feature_id] = PromptTemplate(system_prompt=system_prompt, user_template=user_template)

    def provider(self, provider_id: Optional[str] = None) -> Optional[ProviderSettings]:
        return self.providers.get(provider_id or self.default_provider_id)

    def execute(
        self,
        feature_id: str,
        variables: Mapping[str, Any],
        options: Optional[ExecuteOptions] = None,
    ) -> CompletionResult:
        options = options or ExecuteOptions()
        started = time.monotonic()
        settings = self.provider(options.provider_id)
        metadata: Dict[str, Any] = {
            "featureId": feature_id,
            "providerId": options.provider_id or self.default_provider_id,
            "model": options.model or (settings.model if settings else None),
            "retryAttempts": 0,
        }

        def _finish(result: CompletionResult) -> CompletionResult:
            metadata["durationMs"] = round((time.monotonic() - started) * 1000.0, 1)
            result.metadata = metadata
            return result

        if settings is None:
            return _finish(
                CompletionResult(
                    success=False,
                    error=f"Unknown provider: {options.provider_id}",
                    error_code="unknown_provider",
                )
            )
        prompt = options.custom_prompt or self._features.get(feature_id)
        if prompt is None:
            return _finish(
                CompletionResult(
                    success=False,
                    error=f"No prompt registered for feature '{feature_id}'.",
                    error_code="unknown_feature",
                )
            )
        model = options.model or settings.model
        valid, problem = validate_provider_settings(
            ProviderSettings(
                provider_id=settings.provider_id,
                base_url=settings.base_url,
                model=model,
                api_key=settings.api_key,
            )
        )
        if not valid:
            return _finish(CompletionResult(success=False, error=problem, error_code="configuration_error"))

        messages = [
            {"role": "system", "content": render_template(prompt.system_prompt, variables)},
            {"role": "user", "content": render_template(prompt.user_template, variables)},
        ]
        payload: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": settings.temperature,
            "top_p": settings.top_p,
        }
        requested_limit = options.max_tokens or settings.max_completion_tokens
        if requested_limit and requested_limit > 0:
            payload["max_tokens"] = int(requested_limit)

        def _count_retry(attempt: int, message: str, duration_ms: float) -> None:
            metadata["retryAttempts"] = attempt
            if options.on_retry is not None:
                options.on_retry(attempt, message, duration_ms)

        try:
            data = self._post(settings, "chat/completions", payload, options.signal, _count_retry)
        except CompletionError as exc:
            return _finish(CompletionResult(success=False, error=str(exc), error_code=exc.code))

        usage = data.get("usage")
        if isinstance(usage, dict):
            metadata["tokenUsage"] = {
                "prompt": usage.get("prompt_tokens"),
                "completion": usage.get("completion_tokens"),
                "total": usage.get("total_tokens"),
            }
        content = self._message_content(data)
        if content is None:
            return _finish(
                CompletionResult(
                    success=False,
                    error=f"Unexpected response format: {self._clip_text(json.dumps(data, ensure_ascii=False))}",
                    error_code="invalid_response",
                )
            )
        items = parse_json_content(content)
        if items is None:
            return _finish(
                CompletionResult(
                    success=False,
                    raw_response=content,
                    error="Response content is not a JSON array.",
                    error_code="parse_error",
                )
            )
        return _finish(CompletionResult(success=True, data=items, raw_response=content))

    def _post(
        self,
        settings: ProviderSettings,
        path: str,
        payload: dict,
        signal: Optional[threading.Event] = None,
        on_retry: Optional[RetryCallback] = None,
    ) -> dict:
        url = self._url(settings, path)
        max_attempts = max(1, settings.max_attempts)
        attempt = 1
        last_error: Optional[CompletionError] = None
        while attempt <= max_attempts:
            self._raise_if_cancelled(signal)
            attempt_started = time.monotonic()
            error: Optional[CompletionError] = None
            try:
                response: Response = self._session.post(
                    url, json=payload, headers=self._headers(settings), timeout=settings.timeout or 120.0
                )
            except RequestException as exc:
                error = CompletionError(
                    f"Failed to reach {settings.provider_id}: {exc}",
                    code="network_error",
                    retryable=self._should_retry(attempt, max_attempts),
                )
            self._raise_if_cancelled(signal)
            if error is None:
                error, data = self._inspect_response(settings, response, attempt, max_attempts)
                if error is None:
                    return data
            if not error.retryable:
                raise error
            last_error = error
            duration_ms = (time.monotonic() - attempt_started) * 1000.0
            logger.debug("Attempt %s/%s to %s failed: %s", attempt, max_attempts, url, error)
            if on_retry is not None:
                on_retry(attempt, str(error), duration_ms)
            self._wait(self._retry_delay(attempt), signal)
            attempt += 1
        if last_error:
            raise last_error
        raise CompletionError(f"{settings.provider_id} request failed.", code="network_error", retryable=False)

    def _inspect_response(
        self,
        settings: ProviderSettings,
        response: Response,
        attempt: int,
        max_attempts: int,
    ) -> Tuple[Optional[CompletionError], Optional[dict]]:
        if response.status_code >= 400:
            return (
                CompletionError(
                    f"{settings.provider_id} error {response.status_code}: {self._clip_text(response.text)}",
                    code=f"http_{response.status_code}",
                    retryable=self._should_retry(attempt, max_attempts, response.status_code),
                ),
                None,
            )
        try:
            data = response.json()
        except ValueError:
            data = self._extract_json_payload(response.text)
            if data is None:
                return (
                    CompletionError(
                        f"Invalid JSON response from {settings.provider_id}: {self._clip_text(response.text)}",
                        code="invalid_response",
                        retryable=self._should_retry(attempt, max_attempts),
                    ),
                    None,
                )
        if not isinstance(data, dict):
            return (
                CompletionError(
                    f"Unexpected response body from {settings.provider_id}: {self._clip_text(response.text)}",
                    code="invalid_response",
                    retryable=False,
                ),
                None,
            )
        provider_error = self._provider_error_payload(settings, data)
        if provider_error:
            message, status = provider_error
            return (
                CompletionError(
                    message,
                    code="provider_error",
                    retryable=self._should_retry(attempt, max_attempts, status),
                ),
                None,
            )
        return None, data

    @staticmethod
    def _raise_if_cancelled(signal: Optional[threading.Event]) -> None:
        if signal is not None and signal.is_set():
            raise CompletionCancelled()

    def _wait(self, seconds: float, signal: Optional[threading.Event]) -> None:
        if signal is None:
            time.sleep(seconds)
            return
        if signal.wait(seconds):
            raise CompletionCancelled()

    @staticmethod
    def _headers(settings: ProviderSettings) -> dict:
        headers = {"Content-Type": "application/json"}
        if settings.api_key:
            headers["Authorization"] = f"Bearer {settings.api_key}"
        return headers

    @staticmethod
    def _url(settings: ProviderSettings, path: str) -> str:
        base = settings.base_url.rstrip("/")
        return f"{base}/{path.lstrip('/')}"

    @staticmethod
    def _message_content(data: dict) -> Optional[str]:
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            return None
        if not isinstance(content, str):
            return None
        return content.strip()

    @staticmethod
    def _clip_text(text: str, limit: int = 800) -> str:
        snippet = (text or "").strip()
        if not snippet:
            return "<empty response>"
        if len(snippet) <= limit:
            return snippet
        return f"{snippet[:limit]}…"

    @staticmethod
    def _retry_delay(attempt: int) -> float:
        return min(5.0, 0.5 * attempt)

    @staticmethod
    def _should_retry(attempt: int, max_attempts: int, status_code: Optional[int] = None) -> bool:
        if attempt >= max_attempts:
            return False
        if status_code is None:
            return True
        if status_code in RETRYABLE_STATUS_CODES:
            return True
        return 500 <= status_code < 600

    @staticmethod
    def _extract_json_payload(body: str) -> Optional[dict]:
        stripped = (body or "").strip()
        if not stripped:
            return None
        for candidate in CompletionClient._json_candidates(stripped):
            try:
                loaded = json.loads(candidate)
            except ValueError:
                continue
            if isinstance(loaded, dict):
                return loaded
        return CompletionClient._parse_sse_chunks(stripped)

    @staticmethod
    def _json_candidates(body: str) -> Iterator[str]:
        yield body
        if body.startswith("```"):
            inner = strip_code_fences(body)
            if inner:
                yield inner
        first = body.find("{")
        last = body.rfind("}")
        if 0 <= first < last:
            yield body[first : last + 1]

    @staticmethod
    def _parse_sse_chunks(body: str) -> Optional[dict]:
        lines = [line.strip() for line in body.splitlines() if line.strip()]
        if not any(line.startswith("data:") for line in lines):
            return None
        content_parts: List[str] = []
        finish_reason: Optional[str] = None
        for line in lines:
            if not line.startswith("data:"):
                continue
            chunk_text = line[5:].strip()
            if chunk_text == "[DONE]":
                break
            try:
                chunk = json.loads(chunk_text)
            except ValueError:
                continue
            choices = chunk.get("choices") if isinstance(chunk, dict) else None
            if not isinstance(choices, list) or not choices:
                continue
            choice = choices[0]
            delta = choice.get("delta") or {}
            if delta.get("content"):
                content_parts.append(delta["content"])
            finish_reason = choice.get("finish_reason") or finish_reason
        if not content_parts:
            return None
        return {
            "choices": [
                {
                    "index": 0,
                    "message": {"role": "assistant", "content": "".join(content_parts)},
                    "finish_reason": finish_reason,
                }
            ]
        }

    @staticmethod
    def _provider_error_payload(settings: ProviderSettings, payload: dict) -> Optional[tuple[str, Optional[int]]]:
        error_block = payload.get("error")
        if isinstance(error_block, str) and error_block.strip():
            return f"{settings.provider_id} error: {error_block.strip()}", None
        if not isinstance(error_block, dict):
            return None
        message = str(error_block.get("message") or "Unknown provider error")
        metadata = error_block.get("metadata")
        details: list[str] = []
        if isinstance(metadata, dict):
            if metadata.get("provider_name"):
                details.append(f"provider={metadata['provider_name']}")
            if metadata.get("raw"):
                details.append(str(metadata["raw"]))
        if details:
            message = f"{message} ({'; '.join(details)})"
        code: Optional[int]
        try:
            code = int(str(error_block.get("code")))
        except (TypeError, ValueError):
            code = None
        if code is not None:
            return f"{settings.provider_id} error {code}: {message}", code
        return f"{settings.provider_id} error: {message}", None


def strip_code_fences(text: str) -> str:
    stripped = (text or "").strip()
    if not stripped.startswith("```"):
        return stripped
    return "\n".join(line for line in stripped.splitlines() if not line.strip().startswith("```")).strip()


def parse_json_content(content: str) -> Optional[List[Any]]:
    """Strictly parse assistant content into a list of items.

    Only code fences are tolerated. A JSON object carrying a list under one of the usual
    wrapper keys is unwrapped, any other object becomes a one-item list.
    """
    candidate = strip_code_fences(content)
    if not candidate:
        return None
    try:
        parsed = json.loads(candidate)
    except ValueError:
        return None
    if isinstance(parsed, list):
        return parsed
    if isinstance(parsed, dict):
        for key in _LIST_KEYS:
            value = parsed.get(key)
            if isinstance(value, list):
                return value
        return [parsed]
    return None
