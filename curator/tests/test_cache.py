import unittest

from curator.cache import SnapshotCache


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestSnapshotCache(unittest.TestCase):
    def test_ttl_hits_and_expiry(self) -> None:
        clock = _Clock()
        cache: SnapshotCache[int] = SnapshotCache(ttl_seconds=5, clock=clock)
        loads = iter(range(100))

        self.assertEqual(cache.get(lambda: next(loads)), 0)
        clock.now = 4.9
        self.assertEqual(cache.get(lambda: next(loads)), 0)
        clock.now = 5.0
        self.assertEqual(cache.get(lambda: next(loads)), 1)
        self.assertEqual((cache.hits, cache.misses), (1, 2))

    def test_invalidate_forces_reload(self) -> None:
        cache: SnapshotCache[str] = SnapshotCache(ttl_seconds=3600)
        self.assertEqual(cache.get(lambda: "old"), "old")
        cache.invalidate()
        self.assertEqual(cache.get(lambda: "new"), "new")

    def test_invalidate_during_load_is_not_overwritten(self) -> None:
        cache: SnapshotCache[str] = SnapshotCache(ttl_seconds=3600)

        def racing_loader() -> str:
            # A writer commits while this load is in flight.
            cache.invalidate()
            return "stale"

        self.assertEqual(cache.get(racing_loader), "stale")
        self.assertEqual(cache.get(lambda: "fresh"), "fresh")


if __name__ == "__main__":
    unittest.main()
