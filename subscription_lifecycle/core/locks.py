"""
Per-key locking.

Serializes work on the same ledger entry or payment while letting
different keys proceed in parallel.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Iterator


class _KeyLock:
    __slots__ = ("lock", "holders")

    def __init__(self):
        self.lock = threading.Lock()
        self.holders = 0


class KeyedLocks:
    """Mutual exclusion per string key.

    A key's lock exists only while some thread holds or waits for it, so
    the registry stays as small as the number of keys in use.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, _KeyLock] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        """Hold the lock for ``key`` for the duration of the block."""
        with self._guard:
            slot = self._locks.get(key)
            if slot is None:
                slot = self._locks[key] = _KeyLock()
            slot.holders += 1

        slot.lock.acquire()
        try:
            yield
        finally:
            slot.lock.release()
            with self._guard:
                slot.holders -= 1
                if slot.holders == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
