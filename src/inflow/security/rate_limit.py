from __future__ import annotations

"""Per-user fixed-window rate limiting.

Windows are aligned to the wall clock (``floor(now / window) * window``), so
every user's counter resets at the same instant. The check is a single
increment-and-compare against the backing store; if the store itself fails
the caller gets ``RateLimitUnavailable`` and must refuse the request.
"""

import math
import os
import time
from dataclasses import dataclass
from threading import RLock
from typing import Callable, Dict, Optional, Protocol, Tuple

import redis

from ..config import RATE_LIMIT_MAX_REQUESTS, RATE_LIMIT_WINDOW_SECONDS, GatewaySettings

Clock = Callable[[], float]


@dataclass
class _RateLimitEntry:
    count: int
    window_end: float


@dataclass
class RateLimitDecision:
    allowed: bool
    count: int
    limit: int
    retry_after_seconds: int


class RateLimitExceeded(Exception):
    def __init__(self, retry_after_seconds: int) -> None:
        super().__init__("Rate limit exceeded")
        self.retry_after_seconds = retry_after_seconds


class RateLimitUnavailable(Exception):
    """The counter store could not be reached."""


class RateLimiter(Protocol):
    def hit(self, user_id: str) -> RateLimitDecision: ...


def _window_bounds(now: float, window_seconds: int) -> Tuple[int, float]:
    start = int(now // window_seconds) * window_seconds
    return start, float(start + window_seconds)


def _retry_after(now: float, window_end: float) -> int:
    return max(int(math.ceil(window_end - now)), 1)


class InMemoryRateLimiter:
    def __init__(
        self,
        max_requests: int = RATE_LIMIT_MAX_REQUESTS,
        window_seconds: int = RATE_LIMIT_WINDOW_SECONDS,
        clock: Clock = time.time,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._store: Dict[Tuple[str, int], _RateLimitEntry] = {}
        self._lock = RLock()

    def hit(self, user_id: str) -> RateLimitDecision:
        now = self._clock()
        start, end = _window_bounds(now, self.window_seconds)
        with self._lock:
            for key in [k for k, v in self._store.items() if v.window_end <= now]:
                del self._store[key]
            entry = self._store.setdefault((user_id, start), _RateLimitEntry(count=0, window_end=end))
            entry.count += 1
            count = entry.count
        return RateLimitDecision(
            allowed=count <= self.max_requests,
            count=count,
            limit=self.max_requests,
            retry_after_seconds=_retry_after(now, end),
        )

    def reset(self) -> None:
        with self._lock:
            self._store.clear()


class RedisRateLimiter:
    """``INCR`` on a per-user, per-window key; the key expires with its window."""

    def __init__(
        self,
        client: Optional[redis.Redis] = None,
        max_requests: int = RATE_LIMIT_MAX_REQUESTS,
        window_seconds: int = RATE_LIMIT_WINDOW_SECONDS,
        clock: Clock = time.time,
        prefix: str = "inflow:ratelimit",
    ) -> None:
        self._client = client or redis.Redis.from_url(os.getenv("REDIS_URL", "redis://localhost:6379/0"), socket_timeout=0.5)
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._prefix = prefix

    def hit(self, user_id: str) -> RateLimitDecision:
        now = self._clock()
        start, end = _window_bounds(now, self.window_seconds)
        key = f"{self._prefix}:{user_id}:{start}"
        try:
            count = int(self._client.incr(key))
            if count == 1:
                self._client.expire(key, self.window_seconds)
        except redis.RedisError as exc:
            raise RateLimitUnavailable(str(exc)) from exc
        return RateLimitDecision(
            allowed=count <= self.max_requests,
            count=count,
            limit=self.max_requests,
            retry_after_seconds=_retry_after(now, end),
        )


def enforce_rate_limit(limiter: RateLimiter, user_id: str) -> RateLimitDecision:
    """Count one request for ``user_id``.

    Raises:
        RateLimitExceeded when the window's budget is spent.
        RateLimitUnavailable when the counter store fails.
    """
    try:
        decision = limiter.hit(user_id)
    except RateLimitUnavailable:
        raise
    except Exception as exc:
        raise RateLimitUnavailable(str(exc)) from exc
    if not decision.allowed:
        raise RateLimitExceeded(decision.retry_after_seconds)
    return decision


_limiter: Optional[RateLimiter] = None


def build_rate_limiter(settings: GatewaySettings) -> RateLimiter:
    """Limiter sized from ``settings``; ``INFLOW_RATE_LIMIT_IMPL`` picks memory or redis."""
    max_requests = settings.rate_limit_max_requests
    window = settings.rate_limit_window_seconds
    if os.getenv("INFLOW_RATE_LIMIT_IMPL", "memory").lower() == "redis":
        return RedisRateLimiter(max_requests=max_requests, window_seconds=window)
    return InMemoryRateLimiter(max_requests=max_requests, window_seconds=window)


def get_rate_limiter() -> RateLimiter:
    global _limiter
    if _limiter is None:
        _limiter = build_rate_limiter(GatewaySettings.from_env())
    return _limiter


def reset_rate_limits() -> None:
    """Drop the limiter singleton and its counters (useful for tests)."""
    global _limiter
    if isinstance(_limiter, InMemoryRateLimiter):
        _limiter.reset()
    _limiter = None
