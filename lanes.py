import threading
import weakref
from contextlib import contextmanager
from typing import Hashable


class LaneLocks:
    """
    One re-entrant lock per key. Work under the same key is serialized,
    work under different keys runs in parallel.

    A key's lock lives only while someone is inside (or waiting on) its lane,
    so the registry stays as small as the set of busy keys.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = weakref.WeakValueDictionary()

    def _lock_for(self, key: Hashable):
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def lane(self, key: Hashable):
        lock = self._lock_for(key)
        with lock:
            yield

    def __len__(self):
        return len(self._locks)
