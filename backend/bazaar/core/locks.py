"""
Per-entity lock registry.

WHAT: One mutex per entity key (product, negotiation, QR token, rate counter)
WHY: Mutations of one entity serialize while different entities run in parallel
HOW: Reference-counted locks created on demand and dropped when idle
"""

import threading
from contextlib import contextmanager
from typing import Dict, Hashable, Iterator


class _Entry:
    __slots__ = ("lock", "holders")

    def __init__(self):
        self.lock = threading.Lock()
        self.holders = 0


class KeyedLock:
    """
    Mutual exclusion scoped to a key.

    The registry mutex only guards the key -> lock map; it is never held
    while a caller runs its critical section.
    """

    def __init__(self, name: str = "keyed"):
        self.name = name
        self._registry_lock = threading.Lock()
        self._entries: Dict[Hashable, _Entry] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        """Acquire the lock for ``key`` for the duration of the block."""
        with self._registry_lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            entry.holders += 1

        entry.lock.acquire()
        try:
            yield
        finally:
            entry.lock.release()
            with self._registry_lock:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._entries[key]

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._entries)
