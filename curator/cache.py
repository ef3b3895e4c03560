from __future__ import annotations

import threading
import time
from typing import Callable, Generic, TypeVar

T = TypeVar("T")


class SnapshotCache(Generic[T]):
    """Short-TTL cache for a single loaded value, owned by its caller.

    The TTL only bounds how long a value written by *another* process can be
    missed.  Writers in this process call `invalidate()` right after their
    commit so the cache never outlives a mutation it knows about.
    """

    def __init__(self, ttl_seconds: float = 5.0, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = float(ttl_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._value: T | None = None
        self._loaded_at: float | None = None
        self._generation = 0
        self.hits = 0
        self.misses = 0

    def get(self, loader: Callable[[], T]) -> T:
        with self._lock:
            now = self._clock()
            if self._loaded_at is not None and (now - self._loaded_at) < self.ttl_seconds:
                self.hits += 1
                return self._value  # type: ignore[return-value]
            generation = self._generation
            self.misses += 1
        value = loader()
        with self._lock:
            # An invalidate() during the load means the value may predate a commit.
            if generation == self._generation:
                self._value = value
                self._loaded_at = self._clock()
        return value

    def invalidate(self) -> None:
        with self._lock:
            self._generation += 1
            self._value = None
            self._loaded_at = None
