"""Per-IP fixed-window rate limiting."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from threading import Lock
import time
from typing import Dict, Protocol, Tuple

from redis.exceptions import RedisError

from socialflow.core.config import get_settings
from socialflow.core.logger import get_logger
from socialflow.storage.redis_client import get_client


logger = get_logger("socialflow.rate_limit")

RATE_LIMIT_KEY_PREFIX = "socialflow:ratelimit:ip"


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_seconds: int


class IPRateLimiter(Protocol):
    def check(self, *, ip: str) -> RateLimitDecision:
        """Count one request from ``ip`` and return the decision."""


def _validate_window(requests_per_window: int, window_seconds: int) -> None:
    if requests_per_window <= 0:
        raise ValueError("requests_per_window must be positive")
    if window_seconds <= 0:
        raise ValueError("window_seconds must be positive")


def _decide(*, count: int, limit: int, reset_seconds: int) -> RateLimitDecision:
    return RateLimitDecision(
        allowed=count <= limit,
        limit=limit,
        remaining=max(limit - count, 0),
        reset_seconds=reset_seconds,
    )


class InMemoryIPRateLimiter:
    def __init__(self, *, requests_per_window: int, window_seconds: int) -> None:
        _validate_window(requests_per_window, window_seconds)
        self._limit = requests_per_window
        self._window = window_seconds
        self._lock = Lock()
        self._store: Dict[Tuple[str, int], int] = {}

    def check(self, *, ip: str) -> RateLimitDecision:
        now = int(time.time())
        window_id = now // self._window
        reset_seconds = self._window - (now % self._window)

        with self._lock:
            # Keep current and previous windows only.
            for stale in [item for item in self._store if item[1] < window_id - 1]:
                self._store.pop(stale, None)
            count = self._store.get((ip, window_id), 0) + 1
            self._store[(ip, window_id)] = count

        return _decide(count=count, limit=self._limit, reset_seconds=reset_seconds)


class RedisIPRateLimiter:
    """Shares counters across workers; lets traffic through while Redis is down."""

    def __init__(self, *, requests_per_window: int, window_seconds: int) -> None:
        _validate_window(requests_per_window, window_seconds)
        self._limit = requests_per_window
        self._window = window_seconds
        self._redis = get_client()

    def check(self, *, ip: str) -> RateLimitDecision:
        now = int(time.time())
        window_id = now // self._window
        reset_seconds = self._window - (now % self._window)
        key = f"{RATE_LIMIT_KEY_PREFIX}:{ip}:{window_id}"

        try:
            count = int(self._redis.incr(key))
            if count == 1:
                self._redis.expire(key, self._window + 1)
        except RedisError as exc:
            logger.warning("rate_limit_backend_unavailable", error=str(exc))
            return RateLimitDecision(
                allowed=True,
                limit=self._limit,
                remaining=self._limit,
                reset_seconds=reset_seconds,
            )

        return _decide(count=count, limit=self._limit, reset_seconds=reset_seconds)


@lru_cache(maxsize=1)
def get_ip_rate_limiter() -> IPRateLimiter:
    settings = get_settings()
    if settings.env.lower() in {"prod", "production"}:
        return RedisIPRateLimiter(
            requests_per_window=settings.ip_rate_limit_requests_per_window,
            window_seconds=settings.ip_rate_limit_window_seconds,
        )
    return InMemoryIPRateLimiter(
        requests_per_window=settings.ip_rate_limit_requests_per_window,
        window_seconds=settings.ip_rate_limit_window_seconds,
    )
