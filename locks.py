from contextlib import contextmanager
from threading import Lock
from typing import Dict


class UnitLocks:
    """
    One mutual-exclusion scope per unit timeline.
    Every validate-and-write step (create, hold, amend, settle, expire) runs inside it;
    network calls to the payment gateway never do.
    """

    def __init__(self):
        self._unit_locks: Dict[str, Lock] = {}
        self._lock = Lock()

    def _get(self, unit_id: str) -> Lock:
        with self._lock:
            lock = self._unit_locks.get(unit_id)
            if lock is None:
                lock = Lock()
                self._unit_locks[unit_id] = lock
            return lock

    @contextmanager
    def for_unit(self, unit_id: str):
        lock = self._get(unit_id)
        with lock:
            yield
