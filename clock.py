import threading
from datetime import datetime, timedelta, timezone


def utcnow() -> datetime:
    # Naive UTC: SQLite DateTime columns drop tzinfo, so store what we read back
    return datetime.now(timezone.utc).replace(tzinfo=None)


class MonotonicClock:
    """Wall-clock UTC timestamps that never repeat or go backwards within a process."""

    def __init__(self, source=utcnow):
        self._source = source
        self._last = None
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            ts = self._source()
            if self._last is not None and ts <= self._last:
                ts = self._last + timedelta(microseconds=1)
            self._last = ts
            return ts
