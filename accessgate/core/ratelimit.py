"""
Token-bucket rate limiter.

- In-memory, keyed by account+category or ip+category.
- Disabled unless RATE_LIMIT_ENABLED is set.
- The finance-PIN category gets its own, tighter budget: PIN guessing and
  reset-token probing are the endpoints worth throttling hardest.
"""

import threading
import time
from dataclasses import dataclass
from typing import Dict, Callable


@dataclass
class RateLimitConfig:
    enabled: bool = False
    per_minute_default: int = 120
    burst_default: int = 30
    per_minute_sensitive: int = 10
    burst_sensitive: int = 5


class TokenBucket:
    def __init__(self, capacity: int, refill_rate_per_sec: float, time_fn: Callable[[], float] = time.monotonic):
        self.capacity = max(1, capacity)
        self.tokens = float(self.capacity)
        self.refill_rate = max(0.0, refill_rate_per_sec)
        self.time_fn = time_fn
        self.last_refill = self.time_fn()

    def _refill(self) -> None:
        now = self.time_fn()
        elapsed = now - self.last_refill
        if elapsed <= 0:
            return
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    def allow(self, cost: float = 1.0) -> bool:
        self._refill()
        if self.tokens >= cost:
            self.tokens -= cost
            return True
        return False

    def seconds_until_available(self, cost: float = 1.0) -> int:
        self._refill()
        missing = cost - self.tokens
        if missing <= 0:
            return 0
        if self.refill_rate <= 0:
            return 60
        return max(1, int(missing / self.refill_rate + 0.999))


class InMemoryRateLimiter:
    def __init__(self, config: RateLimitConfig, time_fn: Callable[[], float] = time.monotonic):
        self.config = config
        self.time_fn = time_fn
        self.buckets: Dict[str, TokenBucket] = {}
        self._lock = threading.Lock()

    def _bucket_for(self, key: str, per_minute: int, burst: int) -> TokenBucket:
        if key not in self.buckets:
            refill_rate = per_minute / 60.0
            self.buckets[key] = TokenBucket(capacity=burst, refill_rate_per_sec=refill_rate, time_fn=self.time_fn)
        return self.buckets[key]

    def allow(self, key: str, *, per_minute: int, burst: int) -> bool:
        with self._lock:
            bucket = self._bucket_for(key, per_minute, burst)
            return bucket.allow()

    def retry_after(self, key: str) -> int:
        with self._lock:
            bucket = self.buckets.get(key)
            return bucket.seconds_until_available() if bucket else 0

    def reset(self) -> None:
        with self._lock:
            self.buckets.clear()


def build_rate_limit_config_from_env(env: dict) -> RateLimitConfig:
    def _bool(name: str, default: bool) -> bool:
        raw = env.get(name)
        if raw is None:
            return default
        return str(raw).lower() in {"1", "true", "yes", "on"}

    def _int(name: str, default: int) -> int:
        raw = env.get(name)
        if raw is None:
            return default
        try:
            value = int(raw)
        except (TypeError, ValueError):
            return default
        return value if value > 0 else default

    return RateLimitConfig(
        enabled=_bool("RATE_LIMIT_ENABLED", False),
        per_minute_default=_int("RATE_LIMIT_PER_MINUTE_DEFAULT", 120),
        burst_default=_int("RATE_LIMIT_BURST_DEFAULT", 30),
        per_minute_sensitive=_int("RATE_LIMIT_PER_MINUTE_SENSITIVE", 10),
        burst_sensitive=_int("RATE_LIMIT_BURST_SENSITIVE", 5),
    )
