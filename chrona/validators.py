from __future__ import annotations

import json
import math
import re
from typing import Any, Iterable

from .models import SYSTEM_CATEGORY, NewCard, Observation, TranscriptionResult

DEFAULT_CATEGORIES = ("Work", "Personal", "Distraction", "Idle")

_FENCE_RE = re.compile(r"^```(?:json)?\s*([\s\S]*?)\s*```$", re.IGNORECASE)
_MMSS_RE = re.compile(r"^([0-9]{1,2}):([0-9]{2})$")


class ModelResponseError(RuntimeError):
    """The model answered, but not with something the pipeline can use."""


def strip_code_fences(text: str) -> str:
    trimmed = text.strip()
    match = _FENCE_RE.match(trimmed)
    if match:
        return match.group(1).strip()
    return text


def parse_transcription_json(
    text: str,
    batch_start_ts: int,
    batch_end_ts: int,
    interval_seconds: float,
    model_id: str | None = None,
) -> TranscriptionResult:
    """Turn a transcription response into absolute, clamped observations.

    ``start``/``end`` are positions in the compressed time-lapse, so every
    video second stands for ``interval_seconds`` of real time.
    """
    root = _decode_object(text)
    raw_observations = root.get("observations")
    if not isinstance(raw_observations, list):
        raise ModelResponseError("Invalid JSON: observations must be an array")

    observations: list[Observation] = []
    for index, entry in enumerate(raw_observations):
        if not isinstance(entry, dict):
            raise ModelResponseError(f"Invalid observation at index {index}: expected object")
        start_sec = _parse_mmss(entry.get("start"), "start", index)
        end_sec = _parse_mmss(entry.get("end"), "end", index)
        body = entry.get("observation")
        if not isinstance(body, str) or not body.strip():
            raise ModelResponseError(f"Invalid observation at index {index}: missing text")

        real_start = batch_start_ts + start_sec * interval_seconds
        real_end = batch_start_ts + end_sec * interval_seconds
        clamped_start = int(round(_clamp(real_start, batch_start_ts, batch_end_ts)))
        clamped_end = int(round(_clamp(real_end, batch_start_ts, batch_end_ts)))
        if clamped_end <= clamped_start:
            continue

        app_sites = entry.get("appSites")
        observations.append(
            Observation(
                start_ts=clamped_start,
                end_ts=clamped_end,
                text=body.strip(),
                metadata=json.dumps({"appSites": app_sites}) if app_sites else None,
                model_id=model_id,
            )
        )

    observations.sort(key=lambda row: row.start_ts)

    detailed = root.get("detailedTranscription")
    return TranscriptionResult(
        observations=observations,
        detailed_transcription=detailed if isinstance(detailed, str) else None,
        model_id=model_id,
    )


def parse_cards_json(
    text: str,
    window_start_ts: int,
    window_end_ts: int,
    allowed_categories: Iterable[str] = DEFAULT_CATEGORIES,
) -> list[NewCard]:
    """Validate generated cards against the requested window.

    Cards may extend outside ``[window_start_ts, window_end_ts)`` but have to
    intersect it. Fractional bounds widen to whole seconds. A card starting
    before the end of an earlier accepted card is dropped. A response with no
    usable card is an error: an empty result would silently blank the window.
    """
    root = _decode_object(text)
    raw_cards = root.get("cards")
    if not isinstance(raw_cards, list):
        raise ModelResponseError("Invalid JSON: cards must be an array")

    allowed = {name.strip() for name in allowed_categories if name and name.strip()}
    allowed.discard(SYSTEM_CATEGORY)

    cards: list[NewCard] = []
    for entry in raw_cards:
        if not isinstance(entry, dict):
            continue
        start_raw = _finite_number(entry.get("startTs"))
        end_raw = _finite_number(entry.get("endTs"))
        if start_raw is None or end_raw is None:
            continue
        title = str(entry.get("title") or "").strip()
        if not title:
            continue
        category = str(entry.get("category") or "").strip()
        if category not in allowed:
            continue

        start_raw, end_raw = min(start_raw, end_raw), max(start_raw, end_raw)
        if end_raw <= start_raw:
            continue
        if end_raw <= window_start_ts or start_raw >= window_end_ts:
            continue

        app_sites = _normalize_app_sites(entry.get("appSites"))
        cards.append(
            NewCard(
                start_ts=math.floor(start_raw),
                end_ts=math.ceil(end_raw),
                category=category,
                title=title,
                subcategory=_nullable_string(entry.get("subcategory")),
                summary=_nullable_string(entry.get("summary")),
                detailed_summary=_nullable_string(entry.get("detailedSummary")),
                metadata=json.dumps({"appSites": app_sites}) if app_sites else None,
            )
        )

    cards.sort(key=lambda card: card.start_ts)
    accepted: list[NewCard] = []
    for card in cards:
        # New cards may not overlap each other; the earliest one wins.
        if accepted and card.start_ts < accepted[-1].end_ts:
            continue
        accepted.append(card)

    if not accepted:
        raise ModelResponseError("Model returned no valid cards")
    return accepted


def _decode_object(text: str) -> dict[str, Any]:
    try:
        parsed = json.loads(strip_code_fences(text))
    except (TypeError, json.JSONDecodeError) as exc:
        raise ModelResponseError("Model response was not valid JSON") from exc
    if not isinstance(parsed, dict):
        raise ModelResponseError("Invalid JSON (expected object)")
    return parsed


def _parse_mmss(value: Any, field_name: str, index: int) -> int:
    match = _MMSS_RE.match(value.strip()) if isinstance(value, str) else None
    if match is None:
        raise ModelResponseError(f"Invalid {field_name} at index {index}: {value!r} is not MM:SS")
    minutes = int(match.group(1))
    seconds = int(match.group(2))
    if seconds > 59:
        raise ModelResponseError(f"Invalid {field_name} at index {index}: {value!r} is not MM:SS")
    return minutes * 60 + seconds


def _finite_number(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _nullable_string(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _normalize_app_sites(value: Any) -> dict[str, str | None] | None:
    if not isinstance(value, dict):
        return None
    return {
        "primary": _nullable_string(value.get("primary")),
        "secondary": _nullable_string(value.get("secondary")),
    }


def _clamp(value: float, low: float, high: float) -> float:
    if value < low:
        return low
    if value > high:
        return high
    return value
