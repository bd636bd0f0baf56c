"""
Fixed-window rate limiting.

The limiter is a swappable service: an in-memory map for a single process
(and tests), or Redis when several workers must share counters.
"""
import hashlib
import math
import threading
import time
from dataclasses import dataclass
from typing import Dict, Protocol

import redis
from fastapi import Depends, Request

from gympay import config
from gympay.errors import RateLimited


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_time: int  # epoch milliseconds


class RateLimiter(Protocol):
    def check(self, key: str, limit: int, window_ms: int) -> RateLimitResult: ...


def _now_ms() -> int:
    return int(time.time() * 1000)


class InMemoryRateLimiter:
    def __init__(self, clock=_now_ms):
        self._clock = clock
        self._lock = threading.Lock()
        # {key: [count, reset_time_ms]}
        self._store: Dict[str, list] = {}

    def check(self, key: str, limit: int, window_ms: int) -> RateLimitResult:
        now = self._clock()
        with self._lock:
            # Drop windows that expired a full window ago
            stale = [k for k, (_, reset) in self._store.items() if reset < now - window_ms]
            for k in stale:
                del self._store[k]

            entry = self._store.get(key)
            if entry is None or entry[1] <= now:
                self._store[key] = [1, now + window_ms]
                return RateLimitResult(True, limit - 1, now + window_ms)

            count, reset = entry
            if count >= limit:
                return RateLimitResult(False, 0, reset)

            entry[0] = count + 1
            return RateLimitResult(True, limit - entry[0], reset)

    def reset(self):
        with self._lock:
            self._store.clear()


class RedisRateLimiter:
    def __init__(self, client: "redis.Redis", prefix: str = "ratelimit:"):
        self._redis = client
        self._prefix = prefix

    def check(self, key: str, limit: int, window_ms: int) -> RateLimitResult:
        redis_key = f"{self._prefix}{key}"
        pipe = self._redis.pipeline(transaction=True)
        pipe.incr(redis_key)
        pipe.pexpire(redis_key, window_ms, nx=True)
        pipe.pttl(redis_key)
        count, _, ttl = pipe.execute()

        if ttl is None or ttl < 0:
            ttl = window_ms
        reset = _now_ms() + int(ttl)
        if count > limit:
            return RateLimitResult(False, 0, reset)
        return RateLimitResult(True, limit - count, reset)


_limiter: RateLimiter = None


def get_rate_limiter() -> RateLimiter:
    """FastAPI dependency: the process-wide limiter, built on first use."""
    global _limiter
    if _limiter is None:
        if config.REDIS_URL:
            _limiter = RedisRateLimiter(redis.Redis.from_url(config.REDIS_URL))
        else:
            _limiter = InMemoryRateLimiter()
    return _limiter


def client_identifier(request: Request) -> str:
    ip = request.client.host if request.client else None
    if config.TRUST_PROXY_HEADERS:
        forwarded = request.headers.get("x-forwarded-for")
        real_ip = request.headers.get("x-real-ip")
        ip = (forwarded.split(",")[0].strip() if forwarded else None) or real_ip or ip
    ip = ip or "unknown"
    user_agent = request.headers.get("user-agent", "unknown")
    return hashlib.sha256(f"{ip}{user_agent}".encode("utf-8")).hexdigest()[:16]


def rate_limit(scope: str):
    """
    Dependency factory for rate limiting.
    Example: Depends(rate_limit("payments:create"))
    """
    limit, window_ms = config.RATE_LIMITS[scope]

    def limiter(request: Request, service: RateLimiter = Depends(get_rate_limiter)):
        result = service.check(f"{scope}:{client_identifier(request)}", limit, window_ms)
        if not result.allowed:
            retry_after = max(1, math.ceil((result.reset_time - _now_ms()) / 1000))
            raise RateLimited(retry_after=retry_after)
        return result

    return limiter
