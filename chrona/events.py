from __future__ import annotations

import logging
import queue
from dataclasses import dataclass

logger = logging.getLogger(__name__)

BATCH_STATUS_CHANGED = "batch_status_changed"
TIMELINE_CHANGED = "timeline_changed"


@dataclass(frozen=True)
class BatchStatusChanged:
    batch_id: int
    status: str
    reason: str | None = None


@dataclass(frozen=True)
class TimelineChanged:
    day_key: str
    inserted_card_ids: tuple[int, ...] = ()
    removed_video_refs: tuple[str, ...] = ()


class AnalysisEvents:
    """Observer for pipeline notifications. The base class ignores everything."""

    def batch_status_changed(self, event: BatchStatusChanged) -> None:
        pass

    def timeline_changed(self, event: TimelineChanged) -> None:
        pass


class LoggingEvents(AnalysisEvents):
    def batch_status_changed(self, event: BatchStatusChanged) -> None:
        logger.info(
            "events.batch_status batch=%s status=%s reason=%s", event.batch_id, event.status, event.reason
        )

    def timeline_changed(self, event: TimelineChanged) -> None:
        logger.info(
            "events.timeline_changed day=%s inserted=%s removed_videos=%s",
            event.day_key,
            len(event.inserted_card_ids),
            len(event.removed_video_refs),
        )


class QueueEvents(AnalysisEvents):
    """Publish ``(name, payload)`` tuples for consumers on other threads."""

    def __init__(self, events: queue.Queue[tuple[str, object]] | None = None):
        self.events: queue.Queue[tuple[str, object]] = events if events is not None else queue.Queue()

    def batch_status_changed(self, event: BatchStatusChanged) -> None:
        self.events.put((BATCH_STATUS_CHANGED, event))

    def timeline_changed(self, event: TimelineChanged) -> None:
        self.events.put((TIMELINE_CHANGED, event))

    def drain(self) -> list[tuple[str, object]]:
        drained: list[tuple[str, object]] = []
        while True:
            try:
                drained.append(self.events.get_nowait())
            except queue.Empty:
                return drained
