import unittest
from datetime import datetime, timedelta, timezone

from ccmonitor.date_utils import format_utc, normalize_timestamp, parse_iso


class NormalizeTimestampTests(unittest.TestCase):
    def test_fraction_of_any_length_is_read(self) -> None:
        cases = {
            "2025-06-01T10:00:00.1Z": "2025-06-01T10:00:00.100Z",
            "2025-06-01T10:00:00.12Z": "2025-06-01T10:00:00.120Z",
            "2025-06-01T10:00:00.1234Z": "2025-06-01T10:00:00.123Z",
            "2025-06-01T10:00:00.123456789Z": "2025-06-01T10:00:00.123Z",
            "2025-06-01T10:00:00Z": "2025-06-01T10:00:00.000Z",
        }
        for raw, expected in cases.items():
            with self.subTest(raw=raw):
                self.assertEqual(normalize_timestamp(raw), expected)

    def test_offsets_are_converted_to_utc(self) -> None:
        self.assertEqual(normalize_timestamp("2025-06-01T12:00:00.5+02:00"), "2025-06-01T10:00:00.500Z")

    def test_unreadable_values(self) -> None:
        for value in (None, "", "yesterday", 1717236000):
            with self.subTest(value=value):
                self.assertIsNone(normalize_timestamp(value))
        self.assertIsNone(parse_iso("2025-13-40T10:00:00Z"))

    def test_naive_datetimes_are_treated_as_utc(self) -> None:
        self.assertEqual(format_utc(datetime(2025, 6, 1, 10, 0, 0, 7000)), "2025-06-01T10:00:00.007Z")
        aware = datetime(2025, 6, 1, 5, 0, tzinfo=timezone(timedelta(hours=-5)))
        self.assertEqual(format_utc(aware), "2025-06-01T10:00:00.000Z")


if __name__ == "__main__":
    unittest.main()
