import threading
from contextlib import contextmanager
from typing import Dict


class TournamentLocks:
    """
    One lock per tournament key for request handlers in this process.

    Cross-process exclusion comes from the tournament row lock taken
    inside the transaction; this lock keeps handlers of the same process
    from racing each other on stores without row locks (SQLite).
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, key):
        lock = self._lock_for(str(key))
        with lock:
            yield

    def is_held(self, key) -> bool:
        return self._lock_for(str(key)).locked()
