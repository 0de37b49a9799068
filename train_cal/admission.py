"""Admission control: per-client token buckets and a global in-flight cap."""

from contextlib import contextmanager
from dataclasses import dataclass
import math
import threading
import time
from typing import Callable, Dict, Iterator, Optional, Tuple

Clock = Callable[[], float]


@dataclass
class TokenBucket:
    tokens: float
    updated_at: float


class TokenBucketLimiter:
    """Token bucket per client key.

    Every key refills at ``rate`` tokens per second up to ``burst`` and each
    request spends one token. Buckets untouched for ``idle_sec`` are dropped
    on the next sweep; by then they have refilled completely, so the fresh
    full bucket created on the next request behaves the same.
    """

    def __init__(
        self,
        rate: float,
        burst: int,
        idle_sec: float = 300.0,
        clock: Clock = time.monotonic,
    ) -> None:
        if rate <= 0:
            raise ValueError("rate must be positive")
        self.rate = rate
        self.burst = max(1, burst)
        self.idle_sec = max(idle_sec, self.burst / self.rate)
        self._clock = clock
        self._buckets: Dict[str, TokenBucket] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    def allow(self, key: str) -> Tuple[bool, int]:
        """Spend a token for ``key``; returns ``(allowed, retry_after_sec)``."""
        now = self._clock()
        with self._lock:
            if now - self._last_sweep >= self.idle_sec:
                self._sweep(now)
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = TokenBucket(tokens=float(self.burst), updated_at=now)
                self._buckets[key] = bucket
            else:
                elapsed = max(0.0, now - bucket.updated_at)
                bucket.tokens = min(float(self.burst), bucket.tokens + elapsed * self.rate)
                bucket.updated_at = now
            if bucket.tokens >= 1.0:
                bucket.tokens -= 1.0
                return True, 0
            retry_after = math.ceil((1.0 - bucket.tokens) / self.rate)
            return False, max(1, retry_after)

    def _sweep(self, now: float) -> None:
        idle = [key for key, bucket in self._buckets.items() if now - bucket.updated_at >= self.idle_sec]
        for key in idle:
            del self._buckets[key]
        self._last_sweep = now

    def __len__(self) -> int:
        with self._lock:
            return len(self._buckets)


class ConcurrencyLimiter:
    """Caps how many requests execute at once.

    ``acquire`` blocks until a slot frees up. With a ``timeout`` it gives up
    after that many seconds and returns False.
    """

    def __init__(self, limit: int) -> None:
        self.limit = max(1, limit)
        self._in_flight = 0
        self._peak = 0
        self._waiting = 0
        self._cond = threading.Condition()

    @property
    def in_flight(self) -> int:
        with self._cond:
            return self._in_flight

    @property
    def peak(self) -> int:
        with self._cond:
            return self._peak

    @property
    def waiting(self) -> int:
        with self._cond:
            return self._waiting

    def acquire(self, timeout: Optional[float] = None) -> bool:
        with self._cond:
            self._waiting += 1
            try:
                free = self._cond.wait_for(lambda: self._in_flight < self.limit, timeout)
            finally:
                self._waiting -= 1
            if not free:
                return False
            self._in_flight += 1
            self._peak = max(self._peak, self._in_flight)
            return True

    def release(self) -> None:
        with self._cond:
            if self._in_flight <= 0:
                raise RuntimeError("release() without a held slot")
            self._in_flight -= 1
            self._cond.notify()

    @contextmanager
    def slot(self, timeout: Optional[float] = None) -> Iterator[bool]:
        """Hold a slot for the duration of a block.

        For callers outside a Flask request; the app pairs ``acquire`` and
        ``release`` across its request hooks instead.
        """
        acquired = self.acquire(timeout)
        try:
            yield acquired
        finally:
            if acquired:
                self.release()
