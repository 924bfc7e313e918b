from __future__ import annotations

from dataclasses import dataclass, field

SYSTEM_CATEGORY = "System"


class BatchStatus:
    PENDING = "pending"
    PROCESSING_TRANSCRIBE = "processing_transcribe"
    TRANSCRIBED = "transcribed"
    GENERATING_CARDS = "generating_cards"
    DONE = "done"
    FAILED = "failed"
    FAILED_EMPTY = "failed_empty"
    SKIPPED_SHORT = "skipped_short"

    ALL = (
        PENDING,
        PROCESSING_TRANSCRIBE,
        TRANSCRIBED,
        GENERATING_CARDS,
        DONE,
        FAILED,
        FAILED_EMPTY,
        SKIPPED_SHORT,
    )


@dataclass(frozen=True)
class CaptureEvent:
    id: int
    captured_at: int
    image_ref: str
    file_size: int | None = None


@dataclass(frozen=True)
class PendingBatch:
    start_ts: int
    end_ts: int
    event_ids: tuple[int, ...]


@dataclass(frozen=True)
class Batch:
    id: int
    start_ts: int
    end_ts: int
    status: str
    reason: str | None
    created_at: str

    @property
    def duration_seconds(self) -> int:
        return self.end_ts - self.start_ts


@dataclass(frozen=True)
class Observation:
    start_ts: int
    end_ts: int
    text: str
    metadata: str | None = None
    model_id: str | None = None
    batch_id: int | None = None


@dataclass(frozen=True)
class NewCard:
    start_ts: int
    end_ts: int
    category: str
    title: str
    subcategory: str | None = None
    summary: str | None = None
    detailed_summary: str | None = None
    metadata: str | None = None


@dataclass(frozen=True)
class ActivityCard:
    id: int
    batch_id: int | None
    start_ts: int
    end_ts: int
    day_key: str
    start_display: str
    end_display: str
    category: str
    subcategory: str | None
    title: str
    summary: str | None
    detailed_summary: str | None
    metadata: str | None
    video_ref: str | None
    is_deleted: bool

    @property
    def is_system(self) -> bool:
        return self.category == SYSTEM_CATEGORY


@dataclass(frozen=True)
class ModelCallRecord:
    call_group_id: str
    attempt: int
    provider: str
    model: str | None
    operation: str
    status: str
    request_url: str
    batch_id: int | None = None
    request_method: str = "POST"
    latency_ms: int | None = None
    http_status: int | None = None
    request_body: str | None = None
    response_body: str | None = None
    error_kind: str | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class ReplaceResult:
    inserted_card_ids: list[int]
    removed_video_refs: list[str]


@dataclass(frozen=True)
class TranscriptionResult:
    observations: list[Observation]
    detailed_transcription: str | None = None
    model_id: str | None = None


@dataclass(frozen=True)
class TickResult:
    created_batch_ids: list[int] = field(default_factory=list)
    unprocessed_count: int = 0
