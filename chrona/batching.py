from __future__ import annotations

from typing import Sequence

from .models import CaptureEvent, PendingBatch


def group_into_batches(
    events: Sequence[CaptureEvent],
    target_duration_sec: int,
    max_gap_sec: int,
) -> list[PendingBatch]:
    """Group capture events into contiguous windows.

    A new window starts when the gap to the previous event exceeds
    ``max_gap_sec`` or when adding the event would stretch the window past
    ``target_duration_sec``. The trailing window is dropped while it is still
    shorter than ``target_duration_sec`` so it can keep accumulating events
    until the next tick.
    """
    if not events:
        return []

    ordered = sorted(events, key=lambda event: (event.captured_at, event.id))

    grouped: list[dict[str, object]] = []
    previous_ts: int | None = None
    for event in ordered:
        ts = int(event.captured_at)
        if grouped:
            current = grouped[-1]
            gap = ts - previous_ts if previous_ts is not None else 0
            duration_if_added = ts - int(current["start_ts"])
            if gap <= max_gap_sec and duration_if_added <= target_duration_sec:
                current["end_ts"] = ts
                current["event_ids"].append(event.id)
                previous_ts = ts
                continue

        grouped.append({"start_ts": ts, "end_ts": ts, "event_ids": [event.id]})
        previous_ts = ts

    last = grouped[-1]
    if int(last["end_ts"]) - int(last["start_ts"]) < target_duration_sec:
        grouped.pop()

    return [
        PendingBatch(
            start_ts=int(group["start_ts"]),
            end_ts=int(group["end_ts"]),
            event_ids=tuple(group["event_ids"]),
        )
        for group in grouped
    ]
