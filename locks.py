import threading
from contextlib import contextmanager
from typing import Iterator


class KeyedLocks:
    """One re-entrant lock per key, created on first use.

    Writers for the same key serialize; different keys never contend beyond
    the short registry lookup.
    """

    def __init__(self) -> None:
        self._locks: dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self._lock_for(key)
        with lock:
            yield


ledger_locks = KeyedLocks()


def user_key(user_id: str) -> str:
    return f"user:{user_id}"


def fund_key(scheme_code: str) -> str:
    return f"fund:{scheme_code}"
