import json
import tempfile
import unittest
from datetime import UTC, datetime, timedelta
from pathlib import Path

from curator.config import CuratorConfig
from curator.doc_store import CorruptDocumentError
from curator.failure_tracker import FailureTracker

NOW = datetime(2026, 3, 1, 8, 0, tzinfo=UTC)


class TestFailureTracker(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.config = CuratorConfig(data_dir=Path(self._td.name), max_retries=3, retry_delay_seconds=30.0)
        self.tracker = FailureTracker(self.config)

    def tearDown(self) -> None:
        self._td.cleanup()

    def test_backoff_doubles_then_poison_pill(self) -> None:
        r1 = self.tracker.record_failure("alice", "123", "FetchError", "timeout", now=NOW)
        self.assertEqual(r1.attempts, 1)
        self.assertFalse(r1.poison_pill)
        self.assertEqual(r1.next_retry_at, "2026-03-01T08:00:30.000Z")

        r2 = self.tracker.record_failure("alice", "123", "FetchError", "timeout again", now=NOW + timedelta(minutes=1))
        self.assertEqual(r2.attempts, 2)
        self.assertEqual(r2.next_retry_at, "2026-03-01T08:02:00.000Z")
        self.assertEqual(r2.first_seen, r1.first_seen)
        self.assertEqual(r2.error_message, "timeout again")

        r3 = self.tracker.record_failure("alice", "123", "ParseError", "bad html", now=NOW + timedelta(minutes=5))
        self.assertEqual(r3.attempts, 3)
        self.assertTrue(r3.poison_pill)
        self.assertIsNone(r3.next_retry_at)

        path = self.config.failed_dir / "alice" / "123.json"
        stored = json.loads(path.read_text(encoding="utf-8"))
        self.assertEqual(stored["attempts"], 3)
        self.assertTrue(stored["poisonPill"])
        self.assertIsNone(stored["nextRetryAt"])
        self.assertEqual(stored["errorType"], "ParseError")

    def test_single_retry_budget_poisons_on_first_failure(self) -> None:
        tracker = FailureTracker(CuratorConfig(data_dir=self.config.data_dir, max_retries=1))
        rec = tracker.record_failure("alice", "1", "E", "m", now=NOW)
        self.assertTrue(rec.poison_pill)
        self.assertIsNone(rec.next_retry_at)
        self.assertEqual(tracker.should_skip_retry("alice", "1", now=NOW).skip_type, "poison_pill")

    def test_should_skip_retry(self) -> None:
        self.assertFalse(self.tracker.should_skip_retry("alice", "9", now=NOW).should_skip)

        self.tracker.record_failure("alice", "9", "E", "m", now=NOW)
        d = self.tracker.should_skip_retry("alice", "9", now=NOW + timedelta(seconds=10))
        self.assertTrue(d.should_skip)
        self.assertEqual(d.skip_type, "backoff")
        self.assertIn("20s", d.reason or "")

        d = self.tracker.should_skip_retry("alice", "9", now=NOW + timedelta(seconds=31))
        self.assertFalse(d.should_skip)

        for _ in range(2):
            self.tracker.record_failure("alice", "9", "E", "m", now=NOW)
        d = self.tracker.should_skip_retry("alice", "9", now=NOW + timedelta(days=30))
        self.assertTrue(d.should_skip)
        self.assertEqual(d.skip_type, "poison_pill")
        self.assertIn("poison pill", d.reason or "")

    def test_naive_now_is_taken_as_utc(self) -> None:
        naive = datetime(2026, 3, 1, 8, 0)
        rec = self.tracker.record_failure("alice", "7", "E", "m", now=naive)
        self.assertEqual(rec.next_retry_at, "2026-03-01T08:00:30.000Z")

        d = self.tracker.should_skip_retry("alice", "7", now=naive + timedelta(seconds=5))
        self.assertTrue(d.should_skip)
        self.assertEqual(d.skip_type, "backoff")
        self.assertFalse(self.tracker.should_skip_retry("alice", "7", now=naive + timedelta(seconds=31)).should_skip)

    def test_clear_and_list(self) -> None:
        self.tracker.record_failure("alice", "1", "E", "m", now=NOW)
        self.tracker.record_failure("alice", "2", "E", "m", now=NOW)
        self.tracker.record_failure("bob", "3", "E", "m", now=NOW)

        self.assertEqual([r.item_id for r in self.tracker.list_failures("alice")], ["1", "2"])
        self.assertEqual(self.tracker.list_accounts(), ["alice", "bob"])
        self.assertEqual(self.tracker.list_failures("carol"), [])

        self.assertTrue(self.tracker.clear_failure("alice", "1"))
        self.assertFalse(self.tracker.clear_failure("alice", "1"))
        self.assertIsNone(self.tracker.get_failure("alice", "1"))

        # A cleared item starts over from attempt one.
        rec = self.tracker.record_failure("alice", "1", "E", "m", now=NOW)
        self.assertEqual(rec.attempts, 1)

    def test_unsafe_ids_are_rejected(self) -> None:
        with self.assertRaises(ValueError):
            self.tracker.record_failure("../etc", "1", "E", "m")
        with self.assertRaises(ValueError):
            self.tracker.record_failure("alice", "a/b", "E", "m")

    def test_corrupt_record_raises(self) -> None:
        path = self.config.failed_dir / "alice" / "7.json"
        path.parent.mkdir(parents=True)
        path.write_text(json.dumps({"account": "alice", "itemId": "7", "attempts": 0, "poisonPill": False}), encoding="utf-8")
        with self.assertRaises(CorruptDocumentError):
            self.tracker.should_skip_retry("alice", "7")


if __name__ == "__main__":
    unittest.main()
