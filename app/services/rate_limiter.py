"""
Keyed token bucket for per-client admission control.

Each key gets its own bucket and its own lock, so requests from different
clients never wait on each other. The key map has a separate lock held only
while looking up or inserting a bucket. The map is capped at max_keys: idle
(fully refilled) buckets are evicted first, then the least recently used.
The idle scan walks every bucket, so it runs at most once per
IDLE_SCAN_INTERVAL seconds; in between, a full map drops its LRU entry.
"""
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable

IDLE_SCAN_INTERVAL = 1.0


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    # Seconds until the request would be admitted; 0 when allowed
    retry_after: float


class _Bucket:
    __slots__ = ("tokens", "updated", "lock")

    def __init__(self, tokens: float, now: float):
        self.tokens = tokens
        self.updated = now
        self.lock = threading.Lock()


class KeyedTokenBucket:
    def __init__(
        self,
        rate: float,
        burst: int,
        *,
        max_keys: int = 10000,
        clock: Callable[[], float] = time.monotonic,
    ):
        if rate <= 0:
            raise ValueError("rate must be positive")
        if burst < 1:
            raise ValueError("burst must be at least 1")
        self.rate = float(rate)
        self.burst = float(burst)
        self.max_keys = max(1, max_keys)
        self._clock = clock
        self._buckets: "OrderedDict[str, _Bucket]" = OrderedDict()
        self._map_lock = threading.Lock()
        self._last_idle_scan = float("-inf")

    def __len__(self) -> int:
        return len(self._buckets)

    def try_acquire(self, key: str, cost: int = 1) -> RateLimitResult:
        """Refill the key's bucket for elapsed time, then take `cost` tokens if available."""
        bucket = self._bucket_for(key)
        with bucket.lock:
            now = self._clock()
            self._refill(bucket, now)
            if bucket.tokens >= cost:
                bucket.tokens -= cost
                return RateLimitResult(True, int(bucket.tokens), 0.0)
            retry_after = (cost - bucket.tokens) / self.rate
            return RateLimitResult(False, int(bucket.tokens), retry_after)

    def evict_idle(self) -> int:
        """Drop buckets that have refilled to capacity; they carry no state worth keeping."""
        with self._map_lock:
            return self._evict_idle_locked()

    def _bucket_for(self, key: str) -> _Bucket:
        with self._map_lock:
            bucket = self._buckets.get(key)
            if bucket is not None:
                self._buckets.move_to_end(key)
                return bucket
            if len(self._buckets) >= self.max_keys:
                if self._clock() - self._last_idle_scan >= IDLE_SCAN_INTERVAL:
                    self._evict_idle_locked()
                while len(self._buckets) >= self.max_keys:
                    self._buckets.popitem(last=False)
            bucket = _Bucket(self.burst, self._clock())
            self._buckets[key] = bucket
            return bucket

    def _evict_idle_locked(self) -> int:
        now = self._clock()
        self._last_idle_scan = now
        idle = []
        for key, bucket in self._buckets.items():
            # A bucket mid-update is in use; leave it
            if not bucket.lock.acquire(blocking=False):
                continue
            try:
                self._refill(bucket, now)
                if bucket.tokens >= self.burst:
                    idle.append(key)
            finally:
                bucket.lock.release()
        for key in idle:
            del self._buckets[key]
        return len(idle)

    def _refill(self, bucket: _Bucket, now: float) -> None:
        elapsed = max(0.0, now - bucket.updated)
        bucket.tokens = min(self.burst, bucket.tokens + elapsed * self.rate)
        bucket.updated = now
