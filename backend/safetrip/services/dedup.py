"""Alert de-duplication across scan cycles.

An expiring map of (subject, condition kind) -> time the condition last
produced an alert. Both the main and the high-risk cycle share one guard, so
every read-modify-write happens under a single lock.
"""
from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta

log = logging.getLogger(__name__)

DEFAULT_COOLDOWN = timedelta(hours=1)


def trip_subject(trip_id: int) -> str:
    return f"trip:{trip_id}"


def user_subject(user_id: int) -> str:
    return f"user:{user_id}"


class DedupGuard:
    def __init__(self, cooldown: timedelta = DEFAULT_COOLDOWN):
        self.cooldown = cooldown
        self._fired: dict[tuple[str, str], datetime] = {}
        self._lock = threading.Lock()

    def _is_live(self, fired_at: datetime, now: datetime) -> bool:
        return now - fired_at < self.cooldown

    def _purge(self, now: datetime) -> None:
        expired = [key for key, fired_at in self._fired.items() if not self._is_live(fired_at, now)]
        for key in expired:
            del self._fired[key]

    def should_suppress(self, subject: str, kind: str, now: datetime) -> bool:
        with self._lock:
            self._purge(now)
            return (subject, kind) in self._fired

    def mark_fired(self, subject: str, kind: str, now: datetime) -> None:
        with self._lock:
            self._fired[(subject, kind)] = now

    def try_acquire(self, subject: str, kind: str, now: datetime) -> bool:
        """Atomically check and mark. Returns False when the alert must be suppressed."""
        with self._lock:
            self._purge(now)
            if (subject, kind) in self._fired:
                return False
            self._fired[(subject, kind)] = now
            return True

    def release(self, subject: str, kind: str) -> None:
        """Forget a mark, e.g. when the alert it guarded could not be persisted."""
        with self._lock:
            self._fired.pop((subject, kind), None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._fired)
