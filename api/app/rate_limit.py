"""Per-device heartbeat throttling.

An in-memory token bucket per key, scoped to this process. A misbehaving agent
stuck in a tight send loop is the case this guards against; normal agents
report every few seconds and never come close to the limit.
"""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Dict, NamedTuple, Optional


class Decision(NamedTuple):
    allowed: bool
    retry_after_s: int


ALLOW = Decision(True, 0)


@dataclass
class _Bucket:
    tokens: float
    refilled_at: float

    def refill(self, now: float, *, rate: float, capacity: float) -> None:
        elapsed = now - self.refilled_at
        if elapsed > 0:
            self.tokens = min(capacity, self.tokens + elapsed * rate)
            self.refilled_at = now

    def take(self, cost: float, *, rate: float) -> Decision:
        if cost <= self.tokens:
            self.tokens -= cost
            return ALLOW
        wait = (cost - self.tokens) / rate
        return Decision(False, max(1, math.ceil(wait)))


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
        self.idle_ttl_s = max(60, int(idle_ttl_s))

        self._lock = threading.Lock()
        self._buckets: Dict[str, _Bucket] = {}
        self._next_sweep_at = 0.0

    @classmethod
    def per_minute(cls, limit: int, *, enabled: bool = True) -> "TokenBucketLimiter":
        """Bucket holding `limit` tokens that refills fully over one minute."""
        limit = max(0, int(limit))
        return cls(capacity=limit, refill_per_second=limit / 60.0, enabled=enabled)

    @property
    def active(self) -> bool:
        return self.enabled and self.capacity > 0 and self.refill_per_second > 0

    def allow(self, *, key: str, cost: int = 1, now: Optional[float] = None) -> Decision:
        """Spend `cost` tokens from `key`'s bucket.

        An inactive limiter (disabled, or a zero limit) lets everything through.
        """

        if not self.active or cost <= 0:
            return ALLOW

        ts = time.time() if now is None else float(now)
        with self._lock:
            if ts >= self._next_sweep_at:
                self._sweep(ts)

            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = self._buckets[key] = _Bucket(tokens=self.capacity, refilled_at=ts)
            else:
                bucket.refill(ts, rate=self.refill_per_second, capacity=self.capacity)
            return bucket.take(float(cost), rate=self.refill_per_second)

    def _sweep(self, now: float) -> None:
        # Idle buckets are back at capacity; a fresh one is equivalent.
        cutoff = now - self.idle_ttl_s
        for key in [k for k, b in self._buckets.items() if b.refilled_at < cutoff]:
            del self._buckets[key]
        self._next_sweep_at = now + self.idle_ttl_s
