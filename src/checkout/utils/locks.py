"""Keyed mutual exclusion for per-cart and per-attempt critical sections."""

import threading
from collections.abc import Iterator
from contextlib import contextmanager


class KeyedLock:
    """A family of re-entrant locks, one per key, created on demand.

    Entries are reference counted and dropped once no thread holds or waits
    on them, so the table does not grow with every cart ever checked out.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, list] = {}  # key -> [RLock, waiters]

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.RLock(), 0])
            entry[1] += 1
        lock = entry[0]
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


cart_locks = KeyedLock()
group_locks = KeyedLock()
attempt_locks = KeyedLock()
