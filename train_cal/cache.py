from collections import OrderedDict
from dataclasses import dataclass
import logging
import math
import threading
import time
from typing import Callable, Optional

log = logging.getLogger("train_cal.cache")


@dataclass(frozen=True)
class CacheEntry:
    content: str
    expires_at: float


class CalendarCache:
    """Bounded LRU map of line id to calendar text with a fixed TTL.

    Expired entries are never handed out, even while they still occupy a
    slot; they are dropped lazily on lookup or when room is needed. ``len()``
    counts stored entries, expired or not.
    """

    def __init__(
        self,
        max_entries: int = 100,
        ttl_sec: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_sec <= 0:
            raise ValueError("ttl_sec must be positive")
        self.max_entries = max(1, max_entries)
        self.ttl_sec = ttl_sec
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()

    def get_entry(self, line_id: str) -> Optional[CacheEntry]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(line_id)
            if entry is None:
                return None
            if entry.expires_at <= now:
                del self._entries[line_id]
                return None
            self._entries.move_to_end(line_id)
            return entry

    def get(self, line_id: str) -> Optional[str]:
        entry = self.get_entry(line_id)
        return entry.content if entry is not None else None

    def put(self, line_id: str, content: str) -> CacheEntry:
        now = self._clock()
        entry = CacheEntry(content=content, expires_at=now + self.ttl_sec)
        with self._lock:
            if line_id in self._entries:
                del self._entries[line_id]
            elif len(self._entries) >= self.max_entries:
                self._purge_expired(now)
                while len(self._entries) >= self.max_entries:
                    evicted, _ = self._entries.popitem(last=False)
                    log.debug("Evicted calendar for %s", evicted)
            self._entries[line_id] = entry
        return entry

    def seconds_left(self, entry: CacheEntry) -> int:
        return max(0, math.ceil(entry.expires_at - self._clock()))

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _purge_expired(self, now: float) -> None:
        expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
        for key in expired:
            del self._entries[key]
