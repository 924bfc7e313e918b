from __future__ import annotations

import json
import unittest

from chrona.validators import (
    ModelResponseError,
    parse_cards_json,
    parse_transcription_json,
    strip_code_fences,
)


def _cards_payload(*cards: dict) -> str:
    return json.dumps({"cards": list(cards)})


def _card(start: object, end: object, category: str = "Work", title: str = "Writing code") -> dict:
    return {"startTs": start, "endTs": end, "category": category, "title": title, "summary": "s"}


class TranscriptionParsingTests(unittest.TestCase):
    def test_video_time_expands_by_capture_interval(self) -> None:
        text = json.dumps({"observations": [{"start": "00:00", "end": "00:02", "observation": "Editing"}]})

        result = parse_transcription_json(text, batch_start_ts=1000, batch_end_ts=2800, interval_seconds=10)

        self.assertEqual(len(result.observations), 1)
        row = result.observations[0]
        self.assertEqual((row.start_ts, row.end_ts), (1000, 1020))
        self.assertEqual(row.text, "Editing")

    def test_end_is_clamped_to_batch_end(self) -> None:
        text = json.dumps({"observations": [{"start": "00:01", "end": "99:59", "observation": "Reading"}]})

        result = parse_transcription_json(text, batch_start_ts=1000, batch_end_ts=1100, interval_seconds=10)

        self.assertEqual((result.observations[0].start_ts, result.observations[0].end_ts), (1010, 1100))

    def test_segments_collapsed_by_clamping_are_dropped(self) -> None:
        text = json.dumps(
            {
                "observations": [
                    {"start": "00:05", "end": "00:04", "observation": "Backwards"},
                    {"start": "20:00", "end": "21:00", "observation": "Past the end"},
                    {"start": "00:00", "end": "00:01", "observation": "Kept"},
                ]
            }
        )

        result = parse_transcription_json(text, batch_start_ts=0, batch_end_ts=100, interval_seconds=10)

        self.assertEqual([row.text for row in result.observations], ["Kept"])

    def test_fenced_response_with_app_sites_and_detail(self) -> None:
        body = json.dumps(
            {
                "observations": [
                    {
                        "start": "00:03",
                        "end": "00:06",
                        "observation": "Browsing docs",
                        "appSites": {"primary": "docs.python.org", "secondary": None},
                    },
                    {"start": "00:00", "end": "00:03", "observation": "Terminal"},
                ],
                "detailedTranscription": "long form",
            }
        )
        text = f"```json\n{body}\n```"

        result = parse_transcription_json(text, 0, 600, 10, model_id="gemini-test")

        self.assertEqual([row.text for row in result.observations], ["Terminal", "Browsing docs"])
        self.assertEqual(result.detailed_transcription, "long form")
        self.assertEqual(result.observations[0].model_id, "gemini-test")
        self.assertIn("docs.python.org", result.observations[1].metadata)

    def test_malformed_entries_raise(self) -> None:
        bad_payloads = [
            "not json",
            json.dumps([1, 2]),
            json.dumps({"observations": {}}),
            json.dumps({"observations": ["text"]}),
            json.dumps({"observations": [{"start": "0:0", "end": "00:02", "observation": "x"}]}),
            json.dumps({"observations": [{"start": "00:00", "end": "00:75", "observation": "x"}]}),
            json.dumps({"observations": [{"start": "00:00", "end": "00:02", "observation": "  "}]}),
        ]
        for payload in bad_payloads:
            with self.subTest(payload=payload):
                with self.assertRaises(ModelResponseError):
                    parse_transcription_json(payload, 0, 600, 10)

    def test_empty_observation_list_is_valid(self) -> None:
        result = parse_transcription_json('{"observations": []}', 0, 600, 10)
        self.assertEqual(result.observations, [])


class CardParsingTests(unittest.TestCase):
    def test_card_extending_past_window_is_kept_unclamped(self) -> None:
        cards = parse_cards_json(_cards_payload(_card(900, 2100)), 1000, 2000)

        self.assertEqual(len(cards), 1)
        self.assertEqual((cards[0].start_ts, cards[0].end_ts), (900, 2100))

    def test_card_touching_only_window_end_is_rejected(self) -> None:
        payload = _cards_payload(_card(2000, 2100), _card(1000, 1500, title="Inside"))

        cards = parse_cards_json(payload, 1000, 2000)

        self.assertEqual([card.title for card in cards], ["Inside"])

    def test_system_category_from_model_is_dropped(self) -> None:
        payload = _cards_payload(
            _card(1000, 1200, category="System", title="Fake error"),
            _card(1200, 1400, category="Personal", title="Lunch"),
        )

        cards = parse_cards_json(payload, 1000, 2000, allowed_categories=("Work", "Personal", "System"))

        self.assertEqual([card.category for card in cards], ["Personal"])

    def test_invalid_entries_are_skipped_and_bounds_swapped(self) -> None:
        payload = _cards_payload(
            "not a card",
            _card("abc", 1200),
            _card(True, 1200),
            _card(1000, 1000, title="Zero length"),
            _card(1000, 1200, title=" "),
            _card(1000, 1200, category="Gaming"),
            _card(1800, 1500.7, title="Reversed"),
        )

        cards = parse_cards_json(payload, 1000, 2000)

        self.assertEqual(len(cards), 1)
        self.assertEqual((cards[0].start_ts, cards[0].end_ts, cards[0].title), (1500, 1800, "Reversed"))

    def test_results_are_sorted_and_metadata_normalized(self) -> None:
        later = _card(1500, 1800, title="Later")
        earlier = dict(_card(1000, 1500, title="Earlier"), appSites={"primary": "github.com"})

        cards = parse_cards_json(_cards_payload(later, earlier), 1000, 2000)

        self.assertEqual([card.title for card in cards], ["Earlier", "Later"])
        self.assertEqual(
            json.loads(cards[0].metadata),
            {"appSites": {"primary": "github.com", "secondary": None}},
        )
        self.assertIsNone(cards[1].metadata)

    def test_overlapping_cards_keep_the_earliest(self) -> None:
        payload = _cards_payload(
            _card(1200, 1900, category="Personal", title="B"),
            _card(1000, 1600, title="A"),
            _card(1600, 1800, title="C"),
        )

        cards = parse_cards_json(payload, 1000, 2000)

        self.assertEqual([(card.title, card.start_ts, card.end_ts) for card in cards], [("A", 1000, 1600), ("C", 1600, 1800)])
        for left, right in zip(cards, cards[1:]):
            self.assertLessEqual(left.end_ts, right.start_ts)

    def test_fractional_bounds_are_checked_before_rounding(self) -> None:
        cards = parse_cards_json(_cards_payload(_card(999.5, 1000.9, title="A")), 1000, 2000)

        self.assertEqual((cards[0].start_ts, cards[0].end_ts), (999, 1001))

        with self.assertRaises(ModelResponseError):
            parse_cards_json(_cards_payload(_card(2000.0, 2100.5)), 1000, 2000)
        with self.assertRaises(ModelResponseError):
            parse_cards_json(_cards_payload(_card(2000.0, 2000.0)), 1000, 2000)

    def test_no_surviving_cards_is_an_error(self) -> None:
        with self.assertRaises(ModelResponseError):
            parse_cards_json(_cards_payload(_card(3000, 3100)), 1000, 2000)
        with self.assertRaises(ModelResponseError):
            parse_cards_json('{"cards": "nope"}', 1000, 2000)

    def test_strip_code_fences(self) -> None:
        self.assertEqual(strip_code_fences('```json\n{"a": 1}\n```'), '{"a": 1}')
        self.assertEqual(strip_code_fences('```\n{"a": 1}\n```'), '{"a": 1}')
        self.assertEqual(strip_code_fences('{"a": 1}'), '{"a": 1}')


if __name__ == "__main__":
    unittest.main()
