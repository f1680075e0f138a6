import threading
from contextlib import contextmanager
from collections import defaultdict


class KeyedLock:
    """In-process mutex per key (connection id).

    Guards the token refresh and the cursor read-fetch-reconcile-commit
    sequence of one connection. It does not span processes; a multi-process
    deployment needs a database advisory lock instead.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = {}
        self._users = defaultdict(int)

    @contextmanager
    def hold(self, key: str):
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._users[key] += 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                self._users[key] -= 1
                if self._users[key] == 0:
                    del self._users[key]
                    del self._locks[key]

    def is_held(self, key: str) -> bool:
        with self._guard:
            lock = self._locks.get(key)
        return lock is not None and lock.locked()
