import time
from datetime import date
from threading import Lock

from booking_engine.core import config


class SlotCache:
    """TTL cache of computed slot listings keyed by (teacher, local date, duration).

    Bookings, cancellations and promotions call ``invalidate`` for the
    teacher's local date so a listing never outlives a change to that day.
    """

    def __init__(self, ttl_seconds: int | None = None, clock=time.monotonic):
        self.ttl_seconds = config.SLOTS_CACHE_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self._clock = clock
        self._lock = Lock()
        self._entries: dict[tuple[int, date, int], tuple[float, list]] = {}

    def get(self, teacher_id: int, slot_date: date, duration_minutes: int) -> list | None:
        key = (teacher_id, slot_date, duration_minutes)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None

            stored_at, slots = entry
            if self._clock() - stored_at > self.ttl_seconds:
                del self._entries[key]
                return None

            return list(slots)

    def set(self, teacher_id: int, slot_date: date, duration_minutes: int, slots: list) -> None:
        if self.ttl_seconds <= 0:
            return
        with self._lock:
            self._entries[(teacher_id, slot_date, duration_minutes)] = (self._clock(), list(slots))

    def invalidate(self, teacher_id: int, slot_date: date) -> int:
        with self._lock:
            stale_keys = [key for key in self._entries if key[0] == teacher_id and key[1] == slot_date]
            for key in stale_keys:
                del self._entries[key]
            return len(stale_keys)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
