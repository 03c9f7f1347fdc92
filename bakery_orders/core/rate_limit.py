"""
Fixed-window rate limiting.

``RateLimiter.check(key, limit, window_seconds)`` counts hits per arbitrary
string key (``order-phone:0712345678``, ``mpesa-callback:10.0.0.1``) and
answers whether the caller may proceed and when to retry.

Counters live in a pluggable backend: the in-memory backend is per process
and is lost on restart; the Redis backend shares counters across instances.
"""
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass

from bakery_orders.core.config import settings
from bakery_orders.core.logging import get_logger
from bakery_orders.core.redis_client import get_redis

logger = get_logger(__name__)

_REDIS_KEY_PREFIX = "ratelimit:"


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    retry_after_ms: int

    @property
    def retry_after_seconds(self) -> int:
        """Whole seconds for the Retry-After header (at least 1)"""
        return max(1, -(-self.retry_after_ms // 1000))


class RateLimitBackend(ABC):
    """Storage for window counters"""

    @abstractmethod
    async def hit(self, key: str, window_ms: int) -> tuple[int, int]:
        """Count one hit. Returns (hits in current window, ms until the window resets)."""

    async def reset(self) -> None:
        """Drop all counters (tests, admin tooling)"""


class InMemoryRateLimitBackend(RateLimitBackend):
    """
    Per-process counters with opportunistic pruning of expired windows.

    Never holds more than ``max_keys`` windows: when pruning frees nothing,
    the windows that reset soonest are evicted.
    """

    def __init__(self, max_keys: int = 10_000) -> None:
        self._windows: dict[str, tuple[float, int]] = {}
        self._max_keys = max_keys

    def _prune(self, now_ms: float) -> None:
        expired = [key for key, (reset_at, _) in self._windows.items() if reset_at <= now_ms]
        for key in expired:
            del self._windows[key]

        overflow = len(self._windows) - self._max_keys + 1
        if overflow > 0:
            oldest = sorted(self._windows, key=lambda k: self._windows[k][0])[:overflow]
            for key in oldest:
                del self._windows[key]

    async def hit(self, key: str, window_ms: int) -> tuple[int, int]:
        now_ms = time.monotonic() * 1000
        if key not in self._windows and len(self._windows) >= self._max_keys:
            self._prune(now_ms)

        reset_at, count = self._windows.get(key, (0.0, 0))
        if reset_at <= now_ms:
            reset_at, count = now_ms + window_ms, 0

        count += 1
        self._windows[key] = (reset_at, count)
        return count, int(reset_at - now_ms)

    async def reset(self) -> None:
        self._windows.clear()


class RedisRateLimitBackend(RateLimitBackend):
    """INCR + PEXPIRE on the shared Redis; the first hit opens the window"""

    async def hit(self, key: str, window_ms: int) -> tuple[int, int]:
        redis = await get_redis()
        redis_key = f"{_REDIS_KEY_PREFIX}{key}"
        count = await redis.incr(redis_key)
        if count == 1:
            await redis.pexpire(redis_key, window_ms)
            return count, window_ms

        ttl_ms = await redis.pttl(redis_key)
        if ttl_ms is None or ttl_ms < 0:
            # key lost its expiry (e.g. crash between INCR and PEXPIRE)
            await redis.pexpire(redis_key, window_ms)
            ttl_ms = window_ms
        return count, int(ttl_ms)


class RateLimiter:
    """Answers allow/deny for a key against a limit per window"""

    def __init__(self, backend: RateLimitBackend) -> None:
        self.backend = backend

    async def check(self, key: str, limit: int, window_seconds: int) -> RateLimitDecision:
        window_ms = max(1, int(window_seconds * 1000))
        try:
            count, reset_in_ms = await self.backend.hit(key, window_ms)
        except Exception as e:
            # an unreachable counter store must not reject payments or orders
            logger.warning(
                "Rate limit backend unavailable, allowing request",
                extra_data={"key": key, "error": str(e)},
            )
            return RateLimitDecision(allowed=True, remaining=limit, retry_after_ms=0)

        if count > limit:
            logger.info(
                "Rate limit exceeded",
                extra_data={"key": key, "limit": limit, "window_seconds": window_seconds},
            )
            return RateLimitDecision(allowed=False, remaining=0, retry_after_ms=max(reset_in_ms, 0))

        return RateLimitDecision(allowed=True, remaining=limit - count, retry_after_ms=0)

    async def reset(self) -> None:
        await self.backend.reset()


_rate_limiter: RateLimiter | None = None


def get_rate_limiter() -> RateLimiter:
    """Process-wide limiter built from RATE_LIMIT_BACKEND"""
    global _rate_limiter
    if _rate_limiter is None:
        if settings.RATE_LIMIT_BACKEND == "redis":
            backend: RateLimitBackend = RedisRateLimitBackend()
        else:
            backend = InMemoryRateLimitBackend()
        _rate_limiter = RateLimiter(backend)
    return _rate_limiter


def set_rate_limiter(limiter: RateLimiter | None) -> None:
    """Swap the process-wide limiter (None rebuilds it from settings)"""
    global _rate_limiter
    _rate_limiter = limiter
