"""Process-local locks keyed by ServiceAccount."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator


def make_lock_key(namespace: str, name: str) -> str:
    """Create the lock key for a ServiceAccount."""
    return f"{namespace}-{name}"


class LocalLockRegistry:
    """Registry of per-key mutexes shared by all callers in one process.

    Locks are created on first use and never removed; the registry grows with
    the number of distinct ServiceAccounts seen by the process.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def lock_for(self, key: str) -> threading.Lock:
        """Return the lock for ``key``, creating it if needed."""
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        """Hold the lock for ``key`` for the duration of the block."""
        lock = self.lock_for(key)
        lock.acquire()
        try:
            yield
        finally:
            lock.release()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def __contains__(self, key: object) -> bool:
        with self._guard:
            return key in self._locks
