import json
import os
import shutil
from pathlib import Path
from typing import Any, Dict

CONFIG_ROOT_DIR = Path.home() / ".segmerge"


def get_default_config_dir() -> Path:
    env_override = os.getenv("SEGMERGE_CONFIG_DIR")
    if env_override:
        return Path(env_override).expanduser()
    return CONFIG_ROOT_DIR


def get_default_config_path() -> Path:
    return get_default_config_dir() / "config.json"


DEFAULT_CONFIG_PATH = get_default_config_path()

_INT_KEYS = {
    "lmstudio_max_attempts",
    "lmstudio_max_completion_tokens",
    "ai_request_concurrency",
    "merge_batch_size",
    "merge_prompt_token_limit",
}
_FLOAT_KEYS = {"lmstudio_timeout", "lmstudio_temperature", "merge_max_time_gap"}
_BOOL_KEYS = {"merge_same_speaker_only", "merge_enable_smoothing", "debug_logging"}


class AppConfig:
    """Settings store: reads, validates and persists the JSON configuration file."""

    def __init__(self, config_path: Path):
        self.config_path = config_path
        self.load_warning: str | None = None
        self.defaults: Dict[str, Any] = {
            "lmstudio_base_url": "http://127.0.0.1:1234/v1",
            "lmstudio_model": "google/gemma-3n-e4b",
            "lmstudio_api_key": "",
            "lmstudio_timeout": 120.0,
            "lmstudio_max_attempts": 3,
            "lmstudio_temperature": 0.2,
            "lmstudio_max_completion_tokens": 0,
            "providers": {},
            "default_provider_id": "lmstudio",
            "ai_request_concurrency": 2,
            "merge_batch_size": 20,
            "merge_max_time_gap": 2.0,
            "merge_min_confidence": "medium",
            "merge_same_speaker_only": True,
            "merge_enable_smoothing": True,
            "merge_prompt_token_limit": 8192,
            "debug_logging": False,
        }
        self.settings = self.load_config()

    def _preserve_corrupt_config(self) -> Path | None:
        """Keep a copy of the unreadable config so users can inspect what went wrong."""
        if not self.config_path.exists():
            return None
        suffix = self.config_path.suffix or ".json"
        backup = self.config_path.with_suffix(suffix + ".corrupt")
        counter = 1
        while backup.exists():
            backup = self.config_path.with_suffix(f"{suffix}.corrupt{counter}")
            counter += 1
        try:
            shutil.copy2(self.config_path, backup)
            return backup
        except OSError:
            return None

    def load_config(self) -> Dict[str, Any]:
        """Load the config from disk and merge it over the defaults."""
        self.load_warning = None
        if self.config_path.exists():
            try:
                with open(self.config_path, "r", encoding="utf-8") as f:
                    raw_settings = json.load(f)
                if isinstance(raw_settings, dict):
                    return {**self.defaults, **raw_settings}
                self.load_warning = f"Config at {self.config_path} is not a JSON object. Using defaults."
            except (json.JSONDecodeError, IOError) as exc:
                backup = self._preserve_corrupt_config()
                note = f"Failed to parse config at {self.config_path}: {exc}. Using defaults."
                if backup:
                    note += f" Saved unreadable copy as {backup.name}."
                self.load_warning = note
        return dict(self.defaults)

    def save_config(self):
        """Write the current settings, creating parent directories when needed."""
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_path, "w", encoding="utf-8") as f:
                json.dump(self.settings, f, indent=4, ensure_ascii=False)
        except IOError:
            self.load_warning = f"Could not write config to {self.config_path}."

    def get(self, key: str) -> Any:
        """Return a setting coerced to the type of its default."""
        if key == "lmstudio_api_key":
            return self.settings.get(key) or os.getenv("SEGMERGE_API_KEY", "")
        if key == "providers":
            value = self.settings.get(key)
            return dict(value) if isinstance(value, dict) else {}
        if key in _INT_KEYS:
            try:
                return int(self.settings.get(key, self.defaults.get(key, 0)))
            except (TypeError, ValueError):
                return int(self.defaults.get(key, 0))
        if key in _FLOAT_KEYS:
            try:
                return float(self.settings.get(key, self.defaults.get(key, 0.0)))
            except (TypeError, ValueError):
                return float(self.defaults.get(key, 0.0))
        if key in _BOOL_KEYS:
            return bool(self.settings.get(key, self.defaults.get(key, False)))
        if key == "merge_min_confidence":
            value = str(self.settings.get(key) or "").strip().lower()
            return value if value in {"low", "medium", "high"} else self.defaults[key]
        return self.settings.get(key, self.defaults.get(key))

    def set(self, key: str, value: Any):
        """Update a setting and persist the file immediately."""
        self.settings[key] = value
        self.save_config()
