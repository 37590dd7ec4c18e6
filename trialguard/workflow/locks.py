"""
TRIALGUARD - Batch Locks
=========================
One lock per (trial_id, domain, source) so concurrent runs of the same
batch serialize while different batches proceed in parallel.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Generator, Optional, Tuple

BatchKey = Tuple[str, str, str]


class BatchLockRegistry:
    """Lazily created re-entrant locks keyed by batch key."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[BatchKey, threading.RLock] = {}

    def lock_for(self, key: BatchKey) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: BatchKey, timeout: Optional[float] = None) -> Generator[None, None, None]:
        """
        Hold the lock for a batch key.

        Raises:
            TimeoutError: the lock could not be acquired within timeout
        """
        lock = self.lock_for(key)
        acquired = lock.acquire(timeout=-1 if timeout is None else timeout)
        if not acquired:
            raise TimeoutError(f"Timed out waiting for batch lock {key}")
        try:
            yield
        finally:
            lock.release()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
