from __future__ import annotations

import sqlite3
import tempfile
import threading
import unittest
from pathlib import Path

from chrona.database import SCHEMA_VERSION, ChronaDatabase
from chrona.models import BatchStatus, ModelCallRecord, NewCard, Observation
from chrona.timefmt import day_key_from_unix_seconds, format_clock_ascii

BASE = 1_767_348_000  # 2026-01-02 10:00 UTC


def _card(start: int, end: int, title: str = "Coding", category: str = "Work", **extra: object) -> NewCard:
    return NewCard(start_ts=start, end_ts=end, category=category, title=title, **extra)


class DatabaseTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.db = ChronaDatabase(Path(self._tmp.name) / "db" / "chrona.sqlite3")

    def tearDown(self) -> None:
        self.db.close()
        self._tmp.cleanup()

    def _batch(self, start: int = BASE, end: int = BASE + 1800) -> int:
        event_id = self.db.insert_capture_event(start, f"recordings/screenshots/{start}.jpg")
        return self.db.create_batch_with_events(start, end, [event_id])


class CaptureAndBatchTests(DatabaseTestCase):
    def test_linked_events_are_no_longer_unprocessed(self) -> None:
        ids = [self.db.insert_capture_event(BASE + offset, f"shots\\{offset}.jpg", 2048) for offset in (0, 10, 20)]
        old = self.db.insert_capture_event(BASE - 10_000, "shots/old.jpg")

        unprocessed = self.db.fetch_unprocessed_events(BASE - 100)
        self.assertEqual([event.id for event in unprocessed], ids)
        self.assertNotIn(old, [event.id for event in unprocessed])
        self.assertEqual(unprocessed[0].image_ref, "shots/0.jpg")
        self.assertEqual(unprocessed[0].file_size, 2048)

        batch_id = self.db.create_batch_with_events(BASE, BASE + 10, ids[:2])

        self.assertEqual([event.id for event in self.db.fetch_unprocessed_events(BASE - 100)], [ids[2]])
        self.assertEqual([event.id for event in self.db.get_batch_events(batch_id)], ids[:2])

        batch = self.db.get_batch(batch_id)
        self.assertIsNotNone(batch)
        self.assertEqual(batch.status, BatchStatus.PENDING)
        self.assertEqual(batch.duration_seconds, 10)

    def test_batch_creation_is_all_or_nothing(self) -> None:
        event_id = self.db.insert_capture_event(BASE, "a.jpg")

        with self.assertRaises(sqlite3.IntegrityError):
            self.db.create_batch_with_events(BASE, BASE + 60, [event_id, 9999])

        self.assertEqual(self.db.fetch_recent_batches(), [])
        self.assertEqual([event.id for event in self.db.fetch_unprocessed_events(0)], [event_id])

    def test_status_updates_and_pending_order(self) -> None:
        later = self._batch(BASE + 3600, BASE + 5400)
        earlier = self._batch(BASE, BASE + 1800)

        self.assertEqual(self.db.fetch_next_batch_by_status(BatchStatus.PENDING).id, earlier)

        self.db.set_batch_status(earlier, BatchStatus.FAILED, "boom")
        self.assertEqual(self.db.fetch_next_batch_by_status(BatchStatus.PENDING).id, later)
        self.assertEqual(self.db.get_batch(earlier).reason, "boom")

        with self.assertRaises(ValueError):
            self.db.set_batch_status(later, "exploded")

        self.assertEqual([batch.id for batch in self.db.fetch_recent_batches(limit=1)], [earlier])

    def test_observations_range_query(self) -> None:
        batch_id = self._batch()
        self.db.insert_observations(
            batch_id,
            [
                Observation(BASE, BASE + 60, "Terminal", model_id="m"),
                Observation(BASE + 600, BASE + 900, "Docs"),
            ],
        )

        rows = self.db.fetch_observations_in_range(BASE + 30, BASE + 700)
        self.assertEqual([row.text for row in rows], ["Terminal", "Docs"])
        self.assertEqual(rows[0].batch_id, batch_id)
        self.assertEqual(self.db.fetch_observations_in_range(BASE + 60, BASE + 600), [])

    def test_newer_schema_is_refused(self) -> None:
        path = Path(self._tmp.name) / "future.sqlite3"
        conn = sqlite3.connect(path)
        conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION + 1}")
        conn.close()

        with self.assertRaises(RuntimeError):
            ChronaDatabase(path)

    def test_reopen_keeps_data(self) -> None:
        self._batch()
        path = self.db.path
        self.db.close()

        self.db = ChronaDatabase(path)
        self.assertEqual(len(self.db.fetch_recent_batches()), 1)

    def test_closed_database_rejects_calls(self) -> None:
        self.db.close()
        with self.assertRaises(RuntimeError):
            self.db.fetch_recent_batches()


class ReconcilerTests(DatabaseTestCase):
    def test_replace_soft_deletes_overlaps_and_inserts(self) -> None:
        first = self._batch()
        self.db.replace_cards_in_range(BASE, BASE + 1800, first, [_card(BASE, BASE + 1200)])
        old = self.db.fetch_cards_in_range(BASE, BASE + 1800)[0]
        self.db.set_card_video_ref(old.id, "videos/old.mp4")

        second = self._batch(BASE + 1800, BASE + 3600)
        result = self.db.replace_cards_in_range(
            BASE,
            BASE + 3600,
            second,
            [_card(BASE, BASE + 2400, title="Coding, extended"), _card(BASE + 2400, BASE + 3000, "Lunch", "Personal")],
        )

        self.assertEqual(result.removed_video_refs, ["videos/old.mp4"])
        self.assertEqual(len(result.inserted_card_ids), 2)
        self.assertTrue(self.db.get_card(old.id).is_deleted)

        active = self.db.fetch_cards_in_range(BASE, BASE + 3600)
        self.assertEqual([card.title for card in active], ["Coding, extended", "Lunch"])
        self.assertTrue(all(card.batch_id == second for card in active))

    def test_inserted_cards_carry_display_fields(self) -> None:
        batch_id = self._batch()
        result = self.db.replace_cards_in_range(BASE, BASE + 1800, batch_id, [_card(BASE, BASE + 900)])

        card = self.db.get_card(result.inserted_card_ids[0])
        self.assertEqual(card.start_display, format_clock_ascii(BASE))
        self.assertEqual(card.end_display, format_clock_ascii(BASE + 900))
        self.assertEqual(card.day_key, day_key_from_unix_seconds(BASE))
        self.assertEqual([c.id for c in self.db.fetch_cards_for_day(card.day_key)], [card.id])

    def test_system_cards_of_other_batches_survive(self) -> None:
        failed = self._batch()
        self.db.replace_cards_in_range(
            BASE, BASE + 1800, failed, [_card(BASE, BASE + 1800, "Processing failed", "System")]
        )

        other = self._batch(BASE + 1800, BASE + 3600)
        self.db.replace_cards_in_range(BASE, BASE + 3600, other, [_card(BASE + 1800, BASE + 3000)])

        active = self.db.fetch_cards_in_range(BASE, BASE + 3600)
        self.assertEqual([card.category for card in active], ["System", "Work"])
        self.assertTrue(active[0].is_system)
        self.assertEqual(
            [card.category for card in self.db.fetch_cards_in_range(BASE, BASE + 3600, include_system=False)],
            ["Work"],
        )

        # The owning batch replaces its own error card.
        self.db.replace_cards_in_range(BASE, BASE + 1800, failed, [_card(BASE, BASE + 1800, "Recovered")])
        titles = [card.title for card in self.db.fetch_cards_in_range(BASE, BASE + 3600)]
        self.assertEqual(titles, ["Recovered", "Coding"])

    def test_failed_replace_leaves_previous_cards(self) -> None:
        batch_id = self._batch()
        self.db.replace_cards_in_range(BASE, BASE + 1800, batch_id, [_card(BASE, BASE + 600)])

        with self.assertRaises(sqlite3.IntegrityError):
            self.db.replace_cards_in_range(
                BASE, BASE + 1800, batch_id, [_card(BASE, BASE + 900), _card(BASE + 900, BASE + 900)]
            )

        active = self.db.fetch_cards_in_range(BASE, BASE + 1800)
        self.assertEqual([(card.start_ts, card.end_ts) for card in active], [(BASE, BASE + 600)])
        self.assertEqual(self.db.count_search_index_rows(), 1)

    def test_overlapping_new_cards_are_rejected(self) -> None:
        batch_id = self._batch()
        self.db.replace_cards_in_range(BASE, BASE + 1800, batch_id, [_card(BASE, BASE + 600)])

        with self.assertRaises(ValueError):
            self.db.replace_cards_in_range(
                BASE,
                BASE + 1800,
                batch_id,
                [_card(BASE, BASE + 600, "A"), _card(BASE + 200, BASE + 900, "B", "Personal")],
            )

        at_instant = self.db.fetch_cards_in_range(BASE + 300, BASE + 301, include_system=False)
        self.assertEqual([(card.title, card.start_ts, card.end_ts) for card in at_instant], [("Coding", BASE, BASE + 600)])

    def test_system_card_may_share_range_with_new_card(self) -> None:
        batch_id = self._batch()
        result = self.db.replace_cards_in_range(
            BASE,
            BASE + 1800,
            batch_id,
            [_card(BASE, BASE + 1800, "Processing failed", "System"), _card(BASE, BASE + 600)],
        )
        self.assertEqual(len(result.inserted_card_ids), 2)

    def test_concurrent_replacements_never_overlap(self) -> None:
        batch_id = self._batch()
        errors: list[BaseException] = []

        def writer(offset: int) -> None:
            try:
                for round_index in range(15):
                    start = BASE + offset + round_index
                    self.db.replace_cards_in_range(
                        BASE,
                        BASE + 3600,
                        batch_id,
                        [_card(start, start + 600, f"w{offset}"), _card(start + 600, start + 1200, f"w{offset}b")],
                    )
            except BaseException as exc:  # noqa: BLE001
                errors.append(exc)

        threads = [threading.Thread(target=writer, args=(offset,)) for offset in (0, 50, 100, 150)]
        for thread in threads:
            thread.start()

        samples = []
        while any(thread.is_alive() for thread in threads):
            samples.append(self.db.fetch_cards_in_range(BASE, BASE + 3600, include_system=False))
        for thread in threads:
            thread.join()
        samples.append(self.db.fetch_cards_in_range(BASE, BASE + 3600, include_system=False))

        self.assertEqual(errors, [])
        for cards in samples:
            ordered = sorted(cards, key=lambda card: card.start_ts)
            for left, right in zip(ordered, ordered[1:]):
                self.assertLessEqual(left.end_ts, right.start_ts)
        self.assertEqual(len(samples[-1]), 2)


class SearchTests(DatabaseTestCase):
    def test_search_follows_inserts_deletes_and_category_edits(self) -> None:
        batch_id = self._batch()
        result = self.db.replace_cards_in_range(
            BASE,
            BASE + 1800,
            batch_id,
            [_card(BASE, BASE + 900, "Refactoring parser", summary="Split tokenizer module")],
        )
        card_id = result.inserted_card_ids[0]

        self.assertEqual([card.id for card in self.db.search_cards("tokeniz")], [card_id])
        self.assertEqual(self.db.search_cards("Work")[0].id, card_id)
        self.assertEqual(self.db.search_cards("   "), [])

        self.db.update_card_category(card_id, "Personal", "Hobby")
        self.assertEqual(self.db.search_cards("Work"), [])
        self.assertEqual(self.db.search_cards("hobby")[0].category, "Personal")
        self.assertEqual(self.db.count_search_index_rows(), 1)

        self.db.replace_cards_in_range(BASE, BASE + 1800, batch_id, [_card(BASE, BASE + 600, "Email triage")])
        self.assertEqual(self.db.search_cards("parser"), [])
        self.assertEqual(len(self.db.search_cards("email")), 1)
        self.assertEqual(self.db.count_search_index_rows(), 1)

    def test_search_query_punctuation_is_ignored(self) -> None:
        batch_id = self._batch()
        self.db.replace_cards_in_range(BASE, BASE + 1800, batch_id, [_card(BASE, BASE + 600, "Code review")])

        self.assertEqual(len(self.db.search_cards("code-review) \"")), 1)


class ModelCallTests(DatabaseTestCase):
    def test_model_calls_round_trip(self) -> None:
        batch_id = self._batch()
        record = ModelCallRecord(
            call_group_id="batch:1:transcribe:1",
            attempt=1,
            provider="gemini",
            model="gemini-2.5-flash",
            operation="transcribe",
            status="failure",
            request_url="https://example.test?key=REDACTED",
            batch_id=batch_id,
            latency_ms=12,
            http_status=503,
            error_kind="http",
            error_message="unavailable",
        )
        self.db.insert_model_call(record)
        self.db.insert_model_call(ModelCallRecord("test_key:1", 1, "gemini", None, "test_key", "success", "u"))

        self.assertEqual(self.db.fetch_model_calls(batch_id=batch_id), [record])
        self.assertEqual(len(self.db.fetch_model_calls()), 2)


if __name__ == "__main__":
    unittest.main()
