import json
import os
import socket
import tempfile
import time
import unittest
from pathlib import Path
from unittest.mock import patch

from curator.doc_store import (
    CorruptDocumentError,
    FileLock,
    LockTimeoutError,
    append_jsonl,
    atomic_write_json,
    load_json_document,
    lock_path_for,
    read_json,
    read_jsonl,
    with_lock,
)


def _pid_max() -> int:
    try:
        return int(Path("/proc/sys/kernel/pid_max").read_text(encoding="utf-8").strip())
    except (OSError, ValueError):
        # Sensible fallback on Linux.
        return 4194304


class TestAtomicWrite(unittest.TestCase):
    def test_replace_failure_keeps_previous_content_and_cleans_temp(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "doc.json"
            atomic_write_json(path, {"v": 1})

            with patch("curator.doc_store.os.replace", side_effect=OSError("disk full")):
                with self.assertRaises(OSError):
                    atomic_write_json(path, {"v": 2})

            self.assertEqual(json.loads(path.read_text(encoding="utf-8")), {"v": 1})
            self.assertEqual(sorted(p.name for p in Path(td).iterdir()), ["doc.json"])

    def test_fsync_failure_leaves_no_document(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "nested" / "doc.json"
            with patch("curator.doc_store.os.fsync", side_effect=OSError("io error")):
                with self.assertRaises(OSError):
                    atomic_write_json(path, {"v": 1})
            self.assertFalse(path.exists())
            self.assertEqual(list(path.parent.iterdir()), [])

    def test_write_is_stable_json(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "doc.json"
            atomic_write_json(path, {"b": 1, "a": "é"})
            text = path.read_text(encoding="utf-8")
            self.assertTrue(text.endswith("\n"))
            self.assertLess(text.index('"a"'), text.index('"b"'))
            self.assertIn("\\u00e9", text)


class TestReadJson(unittest.TestCase):
    def test_missing_empty_invalid_and_ok(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "doc.json"
            self.assertEqual(read_json(path).status, "not_found")

            path.write_text("", encoding="utf-8")
            res = read_json(path)
            self.assertEqual(res.status, "corrupt")
            self.assertEqual(res.error, "empty file")

            path.write_text("{not json", encoding="utf-8")
            self.assertEqual(read_json(path).status, "corrupt")

            path.write_text('{"a": 1}', encoding="utf-8")
            res = read_json(path)
            self.assertEqual(res.status, "ok")
            self.assertEqual(res.data, {"a": 1})

    def test_load_document_default_and_corrupt(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "doc.json"
            self.assertEqual(load_json_document(path, {"entries": []}), {"entries": []})

            path.write_text("[1, 2", encoding="utf-8")
            with self.assertRaises(CorruptDocumentError) as ctx:
                load_json_document(path, {})
            self.assertEqual(ctx.exception.path, path)

    def test_load_document_schema_violation_is_corrupt(self) -> None:
        schema = {"type": "object", "required": ["entries"], "properties": {"entries": {"type": "array"}}}
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "doc.json"
            path.write_text('{"entries": {}}', encoding="utf-8")
            with self.assertRaises(CorruptDocumentError) as ctx:
                load_json_document(path, None, schema=schema)
            self.assertIn("invalid shape", str(ctx.exception))

    def test_jsonl_roundtrip_and_corrupt_line(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "log.ndjson"
            self.assertEqual(read_jsonl(path), [])
            append_jsonl(path, {"n": 1})
            append_jsonl(path, {"n": 2})
            self.assertEqual([r["n"] for r in read_jsonl(path)], [1, 2])

            with open(path, "a", encoding="utf-8") as f:
                f.write("{truncated\n")
            with self.assertRaises(CorruptDocumentError):
                read_jsonl(path)


class TestFileLock(unittest.TestCase):
    def test_lock_path_for(self) -> None:
        self.assertEqual(lock_path_for(Path("/x/index.json")), Path("/x/index.json.lock"))

    def test_file_lock_reclaims_dead_pid_without_waiting_for_age(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            lock_path = Path(td) / "index.json.lock"

            # Fresh by mtime, but owned by a PID that cannot exist.
            dead_pid = _pid_max() + 1
            payload = {"owner": "test", "pid": dead_pid, "hostname": socket.gethostname(), "token": "x", "created_at": "now"}
            lock_path.write_text(json.dumps(payload), encoding="utf-8")

            lock = FileLock(lock_path, owner="test2", timeout_seconds=1, stale_after_seconds=3600)
            lock.acquire()
            try:
                obj = json.loads(lock_path.read_text(encoding="utf-8"))
                self.assertEqual(int(obj.get("pid")), os.getpid())
                self.assertEqual(obj.get("owner"), "test2")
            finally:
                lock.release()
            self.assertFalse(lock_path.exists())

    def test_file_lock_reclaims_old_lock(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            lock_path = Path(td) / "index.json.lock"
            payload = {"owner": "other", "pid": os.getpid(), "hostname": socket.gethostname(), "token": "x"}
            lock_path.write_text(json.dumps(payload), encoding="utf-8")
            old = time.time() - 120
            os.utime(lock_path, (old, old))

            with FileLock(lock_path, timeout_seconds=1, stale_after_seconds=60):
                obj = json.loads(lock_path.read_text(encoding="utf-8"))
                self.assertNotEqual(obj.get("token"), "x")
            self.assertFalse(lock_path.exists())

    def test_live_lock_times_out_with_retriable_error(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            lock_path = Path(td) / "index.json.lock"
            holder = FileLock(lock_path, owner="holder")
            holder.acquire()
            try:
                waiter = FileLock(lock_path, owner="waiter", timeout_seconds=0.2, retry_interval_seconds=0.01)
                started = time.monotonic()
                with self.assertRaises(LockTimeoutError) as ctx:
                    waiter.acquire()
                self.assertGreaterEqual(time.monotonic() - started, 0.2)
                self.assertTrue(ctx.exception.retriable)
                self.assertIsNotNone(ctx.exception.info)
                self.assertEqual(ctx.exception.info.owner, "holder")
            finally:
                holder.release()
            self.assertFalse(lock_path.exists())

    def test_file_lock_stale_reclaim_race_raises_timeout_not_fileexists(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            lock_path = Path(td) / "index.json.lock"
            lock = FileLock(lock_path, owner="test", timeout_seconds=0.1, retry_interval_seconds=0.01)
            lock_path.write_text("{}", encoding="utf-8")

            real_os_open = os.open
            call_count = 0

            def _fake_open(path, flags, mode):  # type: ignore[no-untyped-def]
                nonlocal call_count
                call_count += 1
                if call_count == 1:
                    raise FileExistsError()
                if call_count == 2:
                    # Another waiter recreated the lock right after our unlink.
                    lock_path.write_text("{}", encoding="utf-8")
                    raise FileExistsError()
                return real_os_open(path, flags, mode)

            with (
                patch("curator.doc_store.os.open", side_effect=_fake_open),
                patch("curator.doc_store._is_lock_stale", side_effect=[True] + [False] * 1000),
            ):
                with self.assertRaises(LockTimeoutError):
                    lock.acquire()
            self.assertFalse(lock.acquired)

    def test_file_lock_fileexists_race_lock_deleted_allows_acquire(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            lock_path = Path(td) / "index.json.lock"
            lock_path.write_text("{}", encoding="utf-8")

            lock = FileLock(lock_path, owner="test", timeout_seconds=1, retry_interval_seconds=0.01)

            real_os_open = os.open
            call_count = 0

            def _fake_open(path, flags, mode):  # type: ignore[no-untyped-def]
                nonlocal call_count
                call_count += 1
                if call_count == 1:
                    # The holder released between our O_EXCL attempt and the staleness check.
                    try:
                        lock_path.unlink()
                    except FileNotFoundError:
                        pass
                    raise FileExistsError()
                return real_os_open(path, flags, mode)

            with patch("curator.doc_store.os.open", side_effect=_fake_open):
                lock.acquire()
                try:
                    obj = json.loads(lock_path.read_text(encoding="utf-8"))
                    self.assertEqual(int(obj.get("pid")), os.getpid())
                finally:
                    lock.release()
            self.assertFalse(lock_path.exists())

    def test_release_leaves_lock_reclaimed_by_someone_else(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            lock_path = Path(td) / "index.json.lock"
            lock = FileLock(lock_path, owner="a")
            lock.acquire()
            lock_path.write_text(json.dumps({"owner": "b", "pid": os.getpid(), "token": "other"}), encoding="utf-8")
            lock.release()
            self.assertTrue(lock_path.exists())
            self.assertFalse(lock.acquired)

    def test_with_lock_releases_on_exception(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            lock_path = Path(td) / "doc.json.lock"

            def boom() -> None:
                self.assertTrue(lock_path.exists())
                raise ValueError("boom")

            with self.assertRaises(ValueError):
                with_lock(lock_path, boom, timeout_seconds=1)
            self.assertFalse(lock_path.exists())
            self.assertEqual(with_lock(lock_path, lambda: 42, timeout_seconds=1), 42)


if __name__ == "__main__":
    unittest.main()
