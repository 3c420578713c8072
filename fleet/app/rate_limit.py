"""In-process rate limiting for the device protocol.

A token bucket per device identifier. State is per-process, so with several
workers the effective fleet-wide limit is higher; perimeter controls remain
the primary defense.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from .config import settings


@dataclass
class _Bucket:
    tokens: float
    updated_at: float
    last_seen_at: float


class TokenBucketLimiter:
    def __init__(
        self,
        *,
        capacity: int,
        refill_per_second: float,
        enabled: bool = True,
        idle_ttl_s: int = 3600,
    ) -> None:
        self.capacity = float(max(0, capacity))
        self.refill_per_second = float(max(0.0, refill_per_second))
        self.enabled = bool(enabled)
        self.idle_ttl_s = int(max(60, idle_ttl_s))

        self._lock = threading.Lock()
        self._buckets: Dict[str, _Bucket] = {}
        self._calls = 0

    def allow(self, *, key: str, cost: int = 1, now: Optional[float] = None) -> Tuple[bool, int]:
        """Return (allowed, retry_after_seconds)."""

        if not self.enabled:
            return True, 0

        if self.capacity <= 0 or self.refill_per_second <= 0:
            # Misconfigured; fail-open to avoid accidental outages.
            return True, 0

        if cost <= 0:
            return True, 0

        ts = float(now if now is not None else time.time())

        with self._lock:
            self._calls += 1
            if self._calls % 500 == 0:
                self._gc(ts)

            b = self._buckets.get(key)
            if b is None:
                b = _Bucket(tokens=self.capacity, updated_at=ts, last_seen_at=ts)
                self._buckets[key] = b
            else:
                # Refill tokens since last update.
                delta = ts - b.updated_at
                if delta > 0:
                    b.tokens = min(self.capacity, b.tokens + delta * self.refill_per_second)
                    b.updated_at = ts
                b.last_seen_at = ts

            if float(cost) <= b.tokens:
                b.tokens -= float(cost)
                return True, 0

            # Not enough tokens. Compute a coarse retry-after.
            need = float(cost) - b.tokens
            retry_after = int(max(1.0, need / self.refill_per_second))
            return False, retry_after

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()
            self._calls = 0

    def _gc(self, now: float) -> None:
        """Remove idle buckets to keep memory bounded."""
        cutoff = now - float(self.idle_ttl_s)
        to_delete = [k for k, b in self._buckets.items() if b.last_seen_at < cutoff]
        for k in to_delete:
            self._buckets.pop(k, None)


# Device protocol: rate limit heartbeat/poll/confirm requests per device
# identifier. A healthy device polls a few times per minute.
_device_requests_per_min = int(max(0, settings.device_rate_limit_requests_per_min))
_device_refill_per_sec = float(_device_requests_per_min) / 60.0 if _device_requests_per_min > 0 else 0.0

device_request_limiter = TokenBucketLimiter(
    capacity=_device_requests_per_min,
    refill_per_second=_device_refill_per_sec,
    enabled=settings.rate_limit_enabled,
)
