import threading
from typing import Dict


class ReserveLocks:
    """One re-entrant lock per reserve, created on first use"""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}

    def for_reserve(self, reserve_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(reserve_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[reserve_id] = lock
            return lock
