import unittest
from datetime import UTC, datetime, timedelta, timezone

from curator._util import as_utc, parse_iso, utc_iso


class TestTimestamps(unittest.TestCase):
    def test_as_utc(self) -> None:
        naive = datetime(2026, 3, 1, 8, 0)
        self.assertEqual(as_utc(naive), datetime(2026, 3, 1, 8, 0, tzinfo=UTC))

        plus2 = datetime(2026, 3, 1, 10, 0, tzinfo=timezone(timedelta(hours=2)))
        self.assertIs(as_utc(plus2), plus2)
        self.assertIsNotNone(as_utc().tzinfo)

    def test_naive_and_aware_round_trip_to_same_instant(self) -> None:
        naive = datetime(2026, 3, 1, 8, 0)
        self.assertEqual(utc_iso(naive), "2026-03-01T08:00:00.000Z")
        self.assertEqual(parse_iso(utc_iso(naive)), as_utc(naive))


if __name__ == "__main__":
    unittest.main()
