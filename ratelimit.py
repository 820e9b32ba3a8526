"""Per-client fixed-window admission control."""
import time
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Tuple

logger = logging.getLogger("insight.ratelimit")

HEALTH_PATHS = frozenset({"/health", "/api/health"})


@dataclass
class Bucket:
    """Request count for one client in the current window."""
    requests: int = 0
    reset_time: float = 0.0
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)


class RateLimiter:
    """Fixed-window request counter keyed by client identifier.

    The map lock guards structural changes to ``_buckets``; each bucket has
    its own lock around the check-then-increment. The bucket lock is taken
    before the map lock is released so ``sweep`` can never drop a bucket that
    a caller is about to increment.
    """

    def __init__(self, max_requests: int = 60, window_seconds: float = 60.0,
                 clock: Callable[[], float] = time.monotonic):
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._buckets: Dict[str, Bucket] = {}
        self._map_lock = threading.Lock()

    def admit(self, client_key: str) -> Tuple[bool, int]:
        """Count one request for ``client_key``; return ``(allowed, remaining)``."""
        with self._map_lock:
            now = self._clock()
            bucket = self._buckets.get(client_key)
            if bucket is None:
                bucket = Bucket(reset_time=now + self.window_seconds)
                self._buckets[client_key] = bucket
            bucket.lock.acquire()

        try:
            if now > bucket.reset_time:
                bucket.requests = 0
                bucket.reset_time = now + self.window_seconds

            if bucket.requests >= self.max_requests:
                return False, 0

            bucket.requests += 1
            return True, self.max_requests - bucket.requests
        finally:
            bucket.lock.release()

    def retry_after(self, client_key: str) -> int:
        """Seconds until ``client_key``'s window resets, rounded up."""
        with self._map_lock:
            bucket = self._buckets.get(client_key)
            if bucket is None:
                return 0
            with bucket.lock:
                remaining = bucket.reset_time - self._clock()
        return max(0, int(remaining + 0.999))

    def sweep(self, now: Optional[float] = None) -> int:
        """Evict buckets whose window has expired. Returns the number removed."""
        removed = 0
        with self._map_lock:
            now = self._clock() if now is None else now
            for key in list(self._buckets):
                bucket = self._buckets[key]
                with bucket.lock:
                    if now > bucket.reset_time:
                        del self._buckets[key]
                        removed += 1
        if removed:
            logger.debug(f"Swept {removed} expired rate limit buckets")
        return removed

    def __len__(self) -> int:
        with self._map_lock:
            return len(self._buckets)


def client_key_from_headers(headers, remote_host: Optional[str]) -> str:
    """Resolve the client identifier: X-Forwarded-For, X-Real-IP, then peer address."""
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        return forwarded
    real_ip = headers.get("x-real-ip")
    if real_ip:
        return real_ip
    return remote_host or "unknown"
