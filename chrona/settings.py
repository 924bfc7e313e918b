"""
Configuration for the analysis pipeline.

Settings live in a JSON file inside the data directory and are re-read at the
start of every tick and every batch, so edits apply from the next cycle on.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from .validators import DEFAULT_CATEGORIES

logger = logging.getLogger(__name__)

API_KEY_ENV = "CHRONA_GEMINI_API_KEY"
MOCK_ENV = "CHRONA_GEMINI_MOCK"


@dataclass(frozen=True)
class Settings:
    capture_interval_sec: float = 10.0

    tick_interval_sec: int = 60
    lookback_sec: int = 24 * 60 * 60
    batch_target_duration_sec: int = 30 * 60
    batch_max_gap_sec: int = 5 * 60
    min_batch_duration_sec: int = 5 * 60
    card_window_lookback_sec: int = 60 * 60

    categories: tuple[str, ...] = DEFAULT_CATEGORIES

    gemini_model: str = "gemini-2.5-flash"
    gemini_request_timeout_sec: float = 60.0
    gemini_max_attempts: int = 3
    gemini_log_bodies: bool = False
    gemini_mock: bool = False
    gemini_api_key: str = field(default="", repr=False)

    prompt_preamble_transcribe: str = ""
    prompt_preamble_cards: str = ""

    @property
    def has_api_key(self) -> bool:
        return bool(self.gemini_api_key.strip())


_POSITIVE_NUMBERS = {
    "capture_interval_sec",
    "tick_interval_sec",
    "lookback_sec",
    "batch_target_duration_sec",
    "batch_max_gap_sec",
    "min_batch_duration_sec",
    "card_window_lookback_sec",
    "gemini_request_timeout_sec",
    "gemini_max_attempts",
}


class SettingsStore:
    """Read and write ``settings.json``; every read returns a fresh snapshot."""

    def __init__(self, settings_file: Path):
        self.settings_file = Path(settings_file)

    def load(self) -> Settings:
        stored = self._read_file()
        settings = _merge(Settings(), stored)

        env_key = os.environ.get(API_KEY_ENV, "").strip()
        if env_key:
            settings = dataclasses.replace(settings, gemini_api_key=env_key)
        if _truthy(os.environ.get(MOCK_ENV)):
            settings = dataclasses.replace(settings, gemini_mock=True)
        return settings

    def update(self, **changes: Any) -> Settings:
        known = {item.name for item in fields(Settings)}
        unknown = set(changes) - known
        if unknown:
            raise ValueError(f"Unknown settings: {', '.join(sorted(unknown))}")

        stored = self._read_file()
        stored.update(changes)
        merged = _merge(Settings(), stored)

        payload = dataclasses.asdict(merged)
        payload["categories"] = list(merged.categories)
        self.settings_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.settings_file, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2)
            handle.write("\n")
        return self.load()

    def _read_file(self) -> dict[str, Any]:
        if not self.settings_file.exists():
            return {}
        try:
            with open(self.settings_file, "r", encoding="utf-8") as handle:
                parsed = json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("settings.load_failed path=%s error=%s", self.settings_file, exc)
            return {}
        if not isinstance(parsed, dict):
            logger.warning("settings.load_failed path=%s error=not an object", self.settings_file)
            return {}
        return parsed


def _merge(base: Settings, stored: dict[str, Any]) -> Settings:
    changes: dict[str, Any] = {}
    for item in fields(Settings):
        if item.name not in stored:
            continue
        default = getattr(base, item.name)
        value = _coerce(item.name, stored[item.name], default)
        if value is not None:
            changes[item.name] = value
    return dataclasses.replace(base, **changes)


def _coerce(name: str, value: Any, default: Any) -> Any:
    if isinstance(default, bool):
        return value if isinstance(value, bool) else None
    if isinstance(default, (int, float)):
        if isinstance(value, bool):
            return None
        try:
            number = type(default)(value)
        except (TypeError, ValueError):
            return None
        if name in _POSITIVE_NUMBERS and number <= 0:
            return None
        return number
    if isinstance(default, tuple):
        if not isinstance(value, list):
            return None
        names = tuple(str(entry).strip() for entry in value if str(entry).strip())
        return names or None
    if isinstance(default, str):
        return value if isinstance(value, str) else None
    return None


def _truthy(value: str | None) -> bool:
    return (value or "").strip().lower() not in {"", "0", "false", "no", "off"}
