from __future__ import annotations

import logging
import math
import os
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from redis.exceptions import RedisError


logger = logging.getLogger(__name__)

DEFAULT_RATE_LIMIT_MAX = 10
DEFAULT_RATE_LIMIT_WINDOW_SECONDS = 60


@dataclass(frozen=True)
class RateLimitSettings:
    max_requests: int
    window_seconds: int

    @classmethod
    def from_env(cls) -> "RateLimitSettings":
        max_requests = int(os.getenv("MOBILE_QR_RATE_LIMIT_MAX", str(DEFAULT_RATE_LIMIT_MAX)))
        window_seconds = int(
            os.getenv("MOBILE_QR_RATE_LIMIT_WINDOW_SECONDS", str(DEFAULT_RATE_LIMIT_WINDOW_SECONDS))
        )
        return cls(max_requests=max(1, max_requests), window_seconds=max(1, window_seconds))


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_in: float
    limit: int

    @property
    def reset_in_seconds(self) -> int:
        return max(0, math.ceil(self.reset_in))


@dataclass
class _Window:
    count: int
    reset_at: float


class InMemoryRateLimiter:
    """Fixed-window counter per user, local to this process."""

    def __init__(
        self,
        *,
        max_requests: int = DEFAULT_RATE_LIMIT_MAX,
        window_seconds: float = DEFAULT_RATE_LIMIT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: Dict[str, _Window] = {}
        self._next_prune_at = clock() + window_seconds

    def tracked_users(self) -> int:
        return len(self._windows)

    def _prune_expired(self, now: float) -> None:
        # Sweeps at most once per window.
        if now < self._next_prune_at:
            return
        expired = [user_id for user_id, window in self._windows.items() if now > window.reset_at]
        for user_id in expired:
            del self._windows[user_id]
        self._next_prune_at = now + self.window_seconds

    async def check_rate_limit(self, user_id: str) -> RateLimitResult:
        now = self._clock()
        self._prune_expired(now)
        window = self._windows.get(user_id)
        if window is None or now > window.reset_at:
            self._windows[user_id] = _Window(count=1, reset_at=now + self.window_seconds)
            return RateLimitResult(
                allowed=True,
                remaining=self.max_requests - 1,
                reset_in=self.window_seconds,
                limit=self.max_requests,
            )

        if window.count >= self.max_requests:
            return RateLimitResult(
                allowed=False,
                remaining=0,
                reset_in=window.reset_at - now,
                limit=self.max_requests,
            )

        window.count += 1
        return RateLimitResult(
            allowed=True,
            remaining=self.max_requests - window.count,
            reset_in=window.reset_at - now,
            limit=self.max_requests,
        )

    async def reset(self, user_id: Optional[str] = None) -> None:
        if user_id is None:
            self._windows.clear()
        else:
            self._windows.pop(user_id, None)


class RedisRateLimiter:
    """Fixed window shared across processes via INCR + EXPIRE.

    Requests are allowed when Redis cannot be reached; the limiter guards
    against abuse and must not take the preview down with it.
    """

    def __init__(
        self,
        redis_client: Any,
        *,
        max_requests: int = DEFAULT_RATE_LIMIT_MAX,
        window_seconds: int = DEFAULT_RATE_LIMIT_WINDOW_SECONDS,
        prefix: str = "mobile-preview:qr-rate:",
    ):
        self._redis = redis_client
        self.max_requests = max_requests
        self.window_seconds = int(window_seconds)
        self._prefix = prefix

    async def check_rate_limit(self, user_id: str) -> RateLimitResult:
        key = f"{self._prefix}{user_id}"
        try:
            count = int(await self._redis.incr(key))
            if count == 1:
                await self._redis.expire(key, self.window_seconds)
                ttl = self.window_seconds
            else:
                ttl = int(await self._redis.ttl(key))
                if ttl < 0:
                    # Window key lost its expiry; start it again.
                    await self._redis.expire(key, self.window_seconds)
                    ttl = self.window_seconds
        except RedisError as exc:
            logger.warning("Rate limiter unavailable for user %s, allowing request: %s", user_id, exc)
            return RateLimitResult(
                allowed=True,
                remaining=self.max_requests,
                reset_in=self.window_seconds,
                limit=self.max_requests,
            )

        if count > self.max_requests:
            return RateLimitResult(allowed=False, remaining=0, reset_in=ttl, limit=self.max_requests)
        return RateLimitResult(
            allowed=True,
            remaining=self.max_requests - count,
            reset_in=ttl,
            limit=self.max_requests,
        )

    async def reset(self, user_id: Optional[str] = None) -> None:
        try:
            if user_id is not None:
                await self._redis.delete(f"{self._prefix}{user_id}")
                return
            keys = [key async for key in self._redis.scan_iter(match=f"{self._prefix}*")]
            if keys:
                await self._redis.delete(*keys)
        except RedisError as exc:
            logger.warning("Rate limiter reset failed: %s", exc)


def build_rate_limiter_from_env(redis_client: Any = None):
    settings = RateLimitSettings.from_env()
    if redis_client is not None:
        return RedisRateLimiter(
            redis_client,
            max_requests=settings.max_requests,
            window_seconds=settings.window_seconds,
        )
    return InMemoryRateLimiter(max_requests=settings.max_requests, window_seconds=settings.window_seconds)
