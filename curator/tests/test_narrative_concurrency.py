"""
Concurrency tests for NarrativeStore.

Several pollers and backfills write the same index at once; every upsert must
survive.  Uses multiprocessing spawn workers to get genuinely separate
processes, plus threads for the in-process case.
"""

import multiprocessing
import tempfile
import threading
import unittest
from pathlib import Path

from curator.config import CuratorConfig
from curator.models import CreateNew, NarrativeAssignment
from curator.narrative_store import NarrativeStore


# Worker functions must be top-level for multiprocessing spawn compatibility


def _worker_upsert(data_dir: str, worker_id: int, count: int, label: str | None) -> None:
    from curator.config import CuratorConfig
    from curator.models import CreateNew, NarrativeAssignment
    from curator.narrative_store import NarrativeStore

    store = NarrativeStore(CuratorConfig(data_dir=Path(data_dir), lock_timeout_seconds=30.0))
    for i in range(count):
        topic = label or f"Worker {worker_id} topic"
        store.upsert_from_assignment(
            f"w{worker_id}-b{i}",
            NarrativeAssignment(target=CreateNew(label=topic), confidence="high"),
        )


def _run_processes(data_dir: str, num_workers: int, count: int, label: str | None) -> list[int | None]:
    ctx = multiprocessing.get_context("spawn")
    processes = [ctx.Process(target=_worker_upsert, args=(data_dir, w, count, label)) for w in range(num_workers)]
    for p in processes:
        p.start()
    for p in processes:
        p.join(timeout=60)
    return [p.exitcode for p in processes]


class TestConcurrentUpserts(unittest.TestCase):
    def test_processes_upserting_same_label_lose_nothing(self) -> None:
        num_workers, per_worker = 4, 10
        with tempfile.TemporaryDirectory() as td:
            exit_codes = _run_processes(td, num_workers, per_worker, "Shared topic")
            self.assertEqual(exit_codes, [0] * num_workers)

            index = NarrativeStore(CuratorConfig(data_dir=Path(td))).load_index()
            self.assertEqual(len(index.narratives), 1)
            rec = next(iter(index.narratives.values()))
            self.assertEqual(rec.bookmark_count, num_workers * per_worker)
            self.assertEqual(len(rec.recent_bookmark_ids), 30)
            self.assertFalse(Path(td, "narratives", "index.json.lock").exists())

    def test_processes_creating_distinct_labels(self) -> None:
        num_workers, per_worker = 4, 5
        with tempfile.TemporaryDirectory() as td:
            exit_codes = _run_processes(td, num_workers, per_worker, None)
            self.assertEqual(exit_codes, [0] * num_workers)

            index = NarrativeStore(CuratorConfig(data_dir=Path(td))).load_index()
            self.assertEqual(len(index.narratives), num_workers)
            self.assertEqual(sorted(n.bookmark_count for n in index.narratives.values()), [per_worker] * num_workers)

    def test_threads_share_nothing_but_the_lock(self) -> None:
        num_threads, per_thread = 8, 10
        with tempfile.TemporaryDirectory() as td:
            config = CuratorConfig(data_dir=Path(td), lock_timeout_seconds=30.0)
            errors: list[BaseException] = []

            def work(tid: int) -> None:
                store = NarrativeStore(config)
                try:
                    for i in range(per_thread):
                        store.upsert_from_assignment(
                            f"t{tid}-b{i}",
                            NarrativeAssignment(target=CreateNew(label="Thread topic"), confidence="medium"),
                        )
                except BaseException as e:  # noqa: BLE001
                    errors.append(e)

            threads = [threading.Thread(target=work, args=(t,)) for t in range(num_threads)]
            for t in threads:
                t.start()
            for t in threads:
                t.join(timeout=60)

            self.assertEqual(errors, [])
            index = NarrativeStore(config).load_index()
            self.assertEqual([n.bookmark_count for n in index.narratives.values()], [num_threads * per_thread])


if __name__ == "__main__":
    unittest.main()
