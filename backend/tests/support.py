import threading
from datetime import datetime, timedelta, timezone

T0 = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)

CLASS_ID = 1
COURSE_ID = 10
TEACHER_ID = 7
ENROLLED = [101, 102, 103]


class FrozenClock:
    """Clock pinned to a fixed instant until moved explicitly."""

    def __init__(self, start: datetime):
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        self._now = start
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def set(self, value: datetime) -> None:
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        with self._lock:
            self._now = value

    def advance(self, *, minutes: float = 0, seconds: float = 0) -> datetime:
        with self._lock:
            self._now = self._now + timedelta(minutes=minutes, seconds=seconds)
            return self._now
