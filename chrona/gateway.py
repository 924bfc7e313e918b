from __future__ import annotations

import base64
import copy
import dataclasses
import json
import logging
import re
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Sequence
from urllib.parse import quote

import requests

from .database import ChronaDatabase
from .models import ActivityCard, ModelCallRecord, NewCard, Observation, TranscriptionResult
from .settings import Settings
from .validators import parse_cards_json, parse_transcription_json, strip_code_fences
from .video import build_compressed_timeline_video

logger = logging.getLogger(__name__)

PROVIDER = "gemini"
GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
BACKOFF_BASE_SECONDS = 0.5
MOCK_MODEL = "mock"

_KEY_PARAM_RE = re.compile(r"([?&]key=)[^&]+", re.IGNORECASE)


class ModelRequestError(RuntimeError):
    def __init__(self, message: str, http_status: int | None = None):
        super().__init__(message)
        self.http_status = http_status


class MissingApiKeyError(RuntimeError):
    pass


@dataclass(frozen=True)
class HttpResult:
    text: str
    latency_ms: int
    http_status: int


class ModelGateway:
    """Calls the Gemini ``generateContent`` endpoint for the two pipeline operations.

    Every attempt is bounded by the configured timeout and written to the
    ``model_calls`` audit table. Failed attempts are retried with exponential
    backoff; once the budget is spent the last error is raised. Parsing and
    validation of the model text is left to :mod:`chrona.validators`.
    """

    def __init__(
        self,
        db: ChronaDatabase,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._db = db
        self._session = session or requests.Session()
        self._sleep = sleep

    def transcribe_batch(
        self,
        settings: Settings,
        batch_id: int,
        batch_start_ts: int,
        batch_end_ts: int,
        image_paths: Sequence[Path],
        interval_seconds: float,
    ) -> TranscriptionResult:
        if settings.gemini_mock:
            mock_json = json.dumps(
                {
                    "observations": [
                        {
                            "start": "00:00",
                            "end": "00:06",
                            "observation": "Mock transcription: user is working in apps on screen.",
                        }
                    ]
                }
            )
            return parse_transcription_json(
                mock_json, batch_start_ts, batch_end_ts, interval_seconds, model_id=MOCK_MODEL
            )

        url = self._endpoint(settings)
        prompt = build_transcription_prompt(interval_seconds, settings.prompt_preamble_transcribe)

        with tempfile.TemporaryDirectory(prefix="chrona-gemini-") as tmp_dir:
            video_path = build_compressed_timeline_video(
                image_paths,
                Path(tmp_dir) / f"batch-{batch_id}.mp4",
            )
            video_b64 = base64.b64encode(video_path.read_bytes()).decode("ascii")

        payload = {
            "contents": [
                {
                    "role": "user",
                    "parts": [
                        {"text": prompt},
                        {"inline_data": {"mime_type": "video/mp4", "data": video_b64}},
                    ],
                }
            ],
            "generationConfig": {"temperature": 0.1},
        }

        result = self._post_with_retry(
            settings=settings,
            url=url,
            payload=payload,
            call_group_id=_call_group_id(batch_id, "transcribe"),
            batch_id=batch_id,
            operation="transcribe",
        )
        return parse_transcription_json(
            extract_gemini_text(result.text),
            batch_start_ts,
            batch_end_ts,
            interval_seconds,
            model_id=settings.gemini_model,
        )

    def generate_cards(
        self,
        settings: Settings,
        batch_id: int,
        window_start_ts: int,
        window_end_ts: int,
        observations: Sequence[Observation],
        context_cards: Sequence[ActivityCard],
    ) -> list[NewCard]:
        if settings.gemini_mock:
            end_ts = max(window_start_ts + 60, window_end_ts - 60)
            start_ts = max(window_start_ts, end_ts - 15 * 60)
            mock_json = json.dumps(
                {
                    "cards": [
                        {
                            "startTs": start_ts,
                            "endTs": end_ts,
                            "category": settings.categories[0] if settings.categories else "Work",
                            "subcategory": "Mock",
                            "title": "Mock activity",
                            "summary": "Mock card generation result.",
                        }
                    ]
                }
            )
            return parse_cards_json(mock_json, window_start_ts, window_end_ts, settings.categories)

        url = self._endpoint(settings)
        prompt = build_card_generation_prompt(
            window_start_ts=window_start_ts,
            window_end_ts=window_end_ts,
            observations=observations,
            context_cards=context_cards,
            categories=settings.categories,
            preamble=settings.prompt_preamble_cards,
        )
        payload = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {"temperature": 0.2},
        }

        result = self._post_with_retry(
            settings=settings,
            url=url,
            payload=payload,
            call_group_id=_call_group_id(batch_id, "generate_cards"),
            batch_id=batch_id,
            operation="generate_cards",
        )
        return parse_cards_json(
            extract_gemini_text(result.text),
            window_start_ts,
            window_end_ts,
            settings.categories,
        )

    def test_api_key(self, settings: Settings) -> tuple[bool, str]:
        if settings.gemini_mock:
            return True, "Mock mode is enabled (skipping real request)"
        if not settings.has_api_key:
            return False, "No Gemini API key configured"

        payload = {
            "contents": [{"role": "user", "parts": [{"text": "Reply with exactly: OK"}]}],
            "generationConfig": {"temperature": 0.0},
        }
        try:
            result = self._post_with_retry(
                settings=settings,
                url=self._endpoint(settings),
                payload=payload,
                call_group_id=f"test_key:{int(time.time() * 1000)}",
                batch_id=None,
                operation="test_key",
            )
        except ModelRequestError as exc:
            return False, str(exc)

        if "ok" in extract_gemini_text(result.text).lower():
            return True, "Key verified"
        return True, f"Received response (HTTP {result.http_status})"

    def _endpoint(self, settings: Settings) -> str:
        if not settings.has_api_key:
            raise MissingApiKeyError(
                "Missing Gemini API key (set CHRONA_GEMINI_API_KEY or gemini_api_key in settings)"
            )
        base = GEMINI_URL.format(model=quote(settings.gemini_model, safe=".-_"))
        return f"{base}?key={quote(settings.gemini_api_key.strip(), safe='')}"

    def _post_with_retry(
        self,
        settings: Settings,
        url: str,
        payload: dict[str, Any],
        call_group_id: str,
        batch_id: int | None,
        operation: str,
    ) -> HttpResult:
        body = json.dumps(payload)
        logged_body = _loggable_body(payload) if settings.gemini_log_bodies else None
        redacted_url = redact_key_in_url(url)
        max_attempts = max(1, int(settings.gemini_max_attempts))
        attempt = 0

        while True:
            attempt += 1
            started = time.monotonic()
            record = ModelCallRecord(
                batch_id=batch_id,
                call_group_id=call_group_id,
                attempt=attempt,
                provider=PROVIDER,
                model=settings.gemini_model,
                operation=operation,
                status="failure",
                request_url=redacted_url,
                request_body=logged_body,
            )
            try:
                response = self._session.post(
                    url,
                    data=body,
                    headers={"Content-Type": "application/json"},
                    timeout=settings.gemini_request_timeout_sec,
                )
            except requests.RequestException as exc:
                kind = "timeout" if isinstance(exc, requests.Timeout) else "transport"
                message = redact_key_in_url(str(exc))
                self._db.insert_model_call(
                    dataclasses.replace(
                        record,
                        latency_ms=_elapsed_ms(started),
                        error_kind=kind,
                        error_message=message,
                    )
                )
                last_error = ModelRequestError(f"Gemini request failed ({kind}): {message}")
                last_error.__cause__ = exc
            else:
                text = response.text
                ok = 200 <= response.status_code < 300
                latency_ms = _elapsed_ms(started)
                self._db.insert_model_call(
                    dataclasses.replace(
                        record,
                        status="success" if ok else "failure",
                        latency_ms=latency_ms,
                        http_status=response.status_code,
                        response_body=text if settings.gemini_log_bodies else None,
                        error_kind=None if ok else "http",
                        error_message=None if ok else summarize_error_body(text),
                    )
                )
                if ok:
                    return HttpResult(text=text, latency_ms=latency_ms, http_status=response.status_code)
                last_error = ModelRequestError(
                    f"Gemini HTTP {response.status_code}: {summarize_error_body(text)}",
                    http_status=response.status_code,
                )

            logger.warning(
                "gateway.request_failed operation=%s attempt=%s/%s url=%s error=%s",
                operation,
                attempt,
                max_attempts,
                redacted_url,
                last_error,
            )
            if attempt >= max_attempts:
                raise last_error
            self._sleep(BACKOFF_BASE_SECONDS * 2 ** (attempt - 1))


def build_transcription_prompt(interval_seconds: float, preamble: str = "") -> str:
    lines = ["Return valid JSON only."]
    if preamble.strip():
        lines.append(f"\nUser instructions:\n{preamble.strip()}\n")
    lines += [
        "",
        "You are given a video that is a compressed timeline of screenshots at 1 frame per second.",
        f"Each second of video corresponds to {interval_seconds:g} seconds of real time.",
        "",
        "Task: produce a list of time-aligned, factual observations describing what is visible.",
        "Avoid speculation. Keep observations concise.",
        "",
        "Output format:",
        '{"observations":[{"start":"MM:SS","end":"MM:SS","observation":"...",'
        '"appSites":{"primary":"...","secondary":"..."}}]}',
        "",
        "Rules:",
        "- start/end are video times in MM:SS.",
        "- Segments must be monotonically non-decreasing and end >= start.",
        "- Include appSites when confident; otherwise use nulls.",
        "- Do not include any extra keys outside the JSON.",
    ]
    return "\n".join(lines)


def build_card_generation_prompt(
    window_start_ts: int,
    window_end_ts: int,
    observations: Sequence[Observation],
    context_cards: Sequence[ActivityCard],
    categories: Sequence[str],
    preamble: str = "",
) -> str:
    observation_rows = [
        {"startTs": row.start_ts, "endTs": row.end_ts, "observation": row.text}
        for row in observations
    ]
    context_rows = [
        {
            "startTs": card.start_ts,
            "endTs": card.end_ts,
            "category": card.category,
            "subcategory": card.subcategory,
            "title": card.title,
            "summary": card.summary,
        }
        for card in context_cards
    ]
    category_list = ", ".join(categories)

    lines = ["Return valid JSON only."]
    if preamble.strip():
        lines.append(f"\nUser instructions:\n{preamble.strip()}\n")
    lines += [
        "",
        "You are generating timeline activity cards based on timestamped observations.",
        f"Window: [{window_start_ts}, {window_end_ts}] (unix seconds).",
        "",
        f"Allowed categories: {category_list}",
        "Use Idle when the user appears inactive based on evidence in observations.",
        "Do not use Idle to fill gaps in the window or gaps between observations.",
        "",
        "Observations (JSON array):",
        json.dumps(observation_rows),
        "",
        "Existing cards overlapping the window (JSON array):",
        json.dumps(context_rows),
        "",
        "Output format:",
        '{"cards":[{"startTs":0,"endTs":0,"category":"one of the allowed categories",'
        '"subcategory":"string","title":"string","summary":"string","detailedSummary":"string",'
        '"appSites":{"primary":"string|null","secondary":"string|null"}}]}',
        "",
        "General Rules:",
        "- Use unix seconds for startTs/endTs.",
        "- Each card must satisfy endTs > startTs.",
        "- Do not output any text outside the JSON.",
        "",
        "Rules for Overlapping:",
        "- If there are existing cards that overlap the window, either:",
        "- Option 1: If the user appears to be continuing the same activity, create a replacement "
        "card with the same start boundary and a new end boundary.",
        "- Option 2: If the user appears to be doing a different activity, do not replace the "
        "existing card. Create a new card, which must not overlap the existing card.",
        "- New cards must never overlap existing cards unless the new card is an extended version "
        "of an existing card (see Option 1). Overlaps cause the new card to replace the existing card.",
        "- Only create cards within the window, unless the new card is an extended version of an "
        "existing card (see Option 1).",
        "- New cards must never overlap other new cards.",
    ]
    return "\n".join(lines)


def extract_gemini_text(raw: str) -> str:
    """Pull the model text out of the response envelope, or hand back the raw body."""
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return raw
    if not isinstance(data, dict):
        return raw
    candidates = data.get("candidates")
    if not isinstance(candidates, list) or not candidates or not isinstance(candidates[0], dict):
        return raw
    content = candidates[0].get("content") or {}
    for part in content.get("parts") or []:
        text = part.get("text") if isinstance(part, dict) else None
        if isinstance(text, str) and text.strip():
            return strip_code_fences(text)
    return raw


def redact_key_in_url(url: str) -> str:
    return _KEY_PARAM_RE.sub(r"\1REDACTED", url)


def summarize_error_body(text: str) -> str:
    trimmed = text.strip()
    if not trimmed:
        return "empty response body"
    return trimmed[:400] + "..." if len(trimmed) > 400 else trimmed


def _loggable_body(payload: dict[str, Any]) -> str:
    # Inline media is replaced by its size.
    clone = copy.deepcopy(payload)
    for content in clone.get("contents", []):
        for part in content.get("parts", []):
            inline = part.get("inline_data")
            if isinstance(inline, dict) and isinstance(inline.get("data"), str):
                inline["data"] = f"<{len(inline['data'])} base64 chars>"
    return json.dumps(clone)


def _call_group_id(batch_id: int, operation: str) -> str:
    return f"batch:{batch_id}:{operation}:{int(time.time() * 1000)}"


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)

