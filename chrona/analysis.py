from __future__ import annotations

import json
import logging
import threading
import time
from pathlib import Path
from typing import Callable

from .batching import group_into_batches
from .database import ChronaDatabase
from .events import AnalysisEvents, BatchStatusChanged, TimelineChanged
from .gateway import ModelGateway
from .models import SYSTEM_CATEGORY, Batch, BatchStatus, NewCard, TickResult
from .paths import resolve_image_ref
from .settings import Settings, SettingsStore
from .timefmt import day_key_from_unix_seconds

logger = logging.getLogger(__name__)


class AnalysisService:
    """Turns unprocessed capture events into timeline cards.

    A tick groups fresh capture events into batches and then drains every
    pending batch through transcription and card generation. Ticks and drains
    each have their own single-flight guard. The drain handles one batch at a
    time, and the batch being worked on is kept in ``active_batch_id`` so a
    failure can be attributed to it.
    """

    def __init__(
        self,
        db: ChronaDatabase,
        settings_store: SettingsStore,
        data_dir: Path,
        events: AnalysisEvents | None = None,
        gateway: ModelGateway | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._db = db
        self._settings_store = settings_store
        self._data_dir = Path(data_dir)
        self._events = events or AnalysisEvents()
        self._gateway = gateway or ModelGateway(db)
        self._clock = clock

        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._lifecycle_lock = threading.Lock()

        self._tick_guard = threading.Lock()
        self._tick_in_flight: threading.Event | None = None
        self._drain_lock = threading.Lock()
        self.active_batch_id: int | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> bool:
        with self._lifecycle_lock:
            if self.is_running:
                return False
            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._run_tick_loop,
                name="chrona-analysis",
                daemon=True,
            )
            self._thread.start()
        logger.info("analysis.start")
        return True

    def stop(self, timeout_seconds: float | None = 5.0) -> None:
        """Stop scheduling ticks. A tick already running is left to finish.

        ``timeout_seconds=None`` blocks until that tick has returned, which is
        required before the store is closed.
        """
        with self._lifecycle_lock:
            thread = self._thread
            if thread is None:
                return
            self._stop_event.set()

        thread.join(timeout=timeout_seconds)

        with self._lifecycle_lock:
            if self._thread is thread and not thread.is_alive():
                self._thread = None
        logger.info("analysis.stop")

    def run_tick_now(self) -> TickResult:
        with self._tick_guard:
            in_flight = self._tick_in_flight
            if in_flight is None:
                done = threading.Event()
                self._tick_in_flight = done

        if in_flight is not None:
            in_flight.wait()
            return TickResult()

        try:
            return self._tick()
        finally:
            with self._tick_guard:
                self._tick_in_flight = None
            done.set()

    def drain_pending_batches(self) -> int:
        """Process pending batches oldest first; returns how many reached ``done``.

        Stops at the first failure; later pending batches wait for the next call.
        """
        if not self._drain_lock.acquire(blocking=False):
            logger.debug("analysis.drain_skipped reason=in_flight")
            return 0

        completed = 0
        try:
            settings = self._settings_store.load()
            if not settings.gemini_mock and not settings.has_api_key:
                logger.warning("analysis.gemini_key_missing pending batches left untouched")
                return 0

            while True:
                batch = self._db.fetch_next_batch_by_status(BatchStatus.PENDING)
                if batch is None:
                    return completed
                self.active_batch_id = batch.id
                if self._process_batch(batch):
                    completed += 1
                self.active_batch_id = None
        except Exception as exc:  # noqa: BLE001
            failed_id = self.active_batch_id
            logger.error("analysis.batch_failed batch=%s error=%s", failed_id, exc, exc_info=True)
            if failed_id is not None:
                self._fail_batch(failed_id, str(exc) or type(exc).__name__)
            return completed
        finally:
            self.active_batch_id = None
            self._drain_lock.release()

    def _run_tick_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_tick_now()
            except Exception as exc:  # noqa: BLE001
                logger.error("analysis.tick_failed error=%s", exc, exc_info=True)

            interval = self._settings_store.load().tick_interval_sec
            if self._stop_event.wait(interval):
                break

    def _tick(self) -> TickResult:
        settings = self._settings_store.load()
        now = int(self._clock())
        unprocessed = self._db.fetch_unprocessed_events(now - settings.lookback_sec)

        groups = group_into_batches(
            unprocessed,
            target_duration_sec=settings.batch_target_duration_sec,
            max_gap_sec=settings.batch_max_gap_sec,
        )

        created: list[int] = []
        for group in groups:
            if not group.event_ids:
                continue
            batch_id = self._db.create_batch_with_events(group.start_ts, group.end_ts, group.event_ids)
            created.append(batch_id)

            if not self._db.get_batch_events(batch_id):
                self._set_status(batch_id, BatchStatus.FAILED_EMPTY, "no_events_linked")
                continue
            if group.end_ts - group.start_ts < settings.min_batch_duration_sec:
                self._set_status(
                    batch_id,
                    BatchStatus.SKIPPED_SHORT,
                    f"duration_lt_{settings.min_batch_duration_sec}s",
                )
                continue
            self._events.batch_status_changed(BatchStatusChanged(batch_id, BatchStatus.PENDING))

        logger.info(
            "analysis.tick unprocessed=%s created_batches=%s",
            len(unprocessed),
            len(created),
        )

        self.drain_pending_batches()
        return TickResult(created_batch_ids=created, unprocessed_count=len(unprocessed))

    def _process_batch(self, batch: Batch) -> bool:
        settings = self._settings_store.load()
        events = self._db.get_batch_events(batch.id)
        if not events:
            self._set_status(batch.id, BatchStatus.FAILED_EMPTY, "empty")
            return False

        self._set_status(batch.id, BatchStatus.PROCESSING_TRANSCRIBE)
        transcription = self._gateway.transcribe_batch(
            settings,
            batch_id=batch.id,
            batch_start_ts=batch.start_ts,
            batch_end_ts=batch.end_ts,
            image_paths=[resolve_image_ref(self._data_dir, event.image_ref) for event in events],
            interval_seconds=settings.capture_interval_sec,
        )
        self._db.insert_observations(batch.id, transcription.observations)
        if transcription.detailed_transcription or transcription.model_id:
            self._db.set_batch_transcription(
                batch.id,
                transcription.detailed_transcription,
                json.dumps({"model": transcription.model_id}),
            )

        count = len(transcription.observations)
        if count == 0:
            self._set_status(batch.id, BatchStatus.DONE, "0_observations")
            return True

        self._set_status(batch.id, BatchStatus.TRANSCRIBED, f"observations={count}")
        self._generate_cards(batch, settings)
        self._set_status(batch.id, BatchStatus.DONE)
        return True

    def _generate_cards(self, batch: Batch, settings: Settings) -> None:
        window_end = batch.end_ts
        window_start = window_end - settings.card_window_lookback_sec

        self._set_status(batch.id, BatchStatus.GENERATING_CARDS)
        observations = self._db.fetch_observations_in_range(window_start, window_end)
        context = self._db.fetch_cards_in_range(window_start, window_end, include_system=False)

        cards = self._gateway.generate_cards(
            settings,
            batch_id=batch.id,
            window_start_ts=window_start,
            window_end_ts=window_end,
            observations=observations,
            context_cards=context,
        )
        result = self._db.replace_cards_in_range(window_start, window_end, batch.id, cards)
        self._events.timeline_changed(
            TimelineChanged(
                day_key=day_key_from_unix_seconds(window_end),
                inserted_card_ids=tuple(result.inserted_card_ids),
                removed_video_refs=tuple(result.removed_video_refs),
            )
        )

    def _fail_batch(self, batch_id: int, reason: str) -> None:
        batch = self._db.get_batch(batch_id)
        if batch is None:
            return
        self._set_status(batch_id, BatchStatus.FAILED, reason)

        if batch.end_ts <= batch.start_ts:
            return
        error_card = NewCard(
            start_ts=batch.start_ts,
            end_ts=batch.end_ts,
            category=SYSTEM_CATEGORY,
            subcategory="Error",
            title="Processing failed",
            summary=reason,
        )
        result = self._db.replace_cards_in_range(batch.start_ts, batch.end_ts, batch_id, [error_card])
        self._events.timeline_changed(
            TimelineChanged(
                day_key=day_key_from_unix_seconds(batch.end_ts),
                inserted_card_ids=tuple(result.inserted_card_ids),
                removed_video_refs=tuple(result.removed_video_refs),
            )
        )

    def _set_status(self, batch_id: int, status: str, reason: str | None = None) -> None:
        self._db.set_batch_status(batch_id, status, reason)
        self._events.batch_status_changed(BatchStatusChanged(batch_id, status, reason))
