import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from app.services.mobile_rate_limiter import (
    InMemoryRateLimiter,
    RateLimitSettings,
    RedisRateLimiter,
    build_rate_limiter_from_env,
)


class _Clock:
    def __init__(self, now: float = 500.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.mark.asyncio
async def test_tenth_request_is_last_allowed_in_window():
    clock = _Clock()
    limiter = InMemoryRateLimiter(max_requests=10, window_seconds=60, clock=clock)

    results = [await limiter.check_rate_limit("user-1") for _ in range(10)]

    assert all(result.allowed for result in results)
    assert results[0].remaining == 9
    assert results[9].remaining == 0

    eleventh = await limiter.check_rate_limit("user-1")
    assert eleventh.allowed is False
    assert eleventh.remaining == 0
    assert 0 < eleventh.reset_in <= 60


@pytest.mark.asyncio
async def test_fresh_window_after_reset_in_elapses():
    clock = _Clock()
    limiter = InMemoryRateLimiter(max_requests=10, window_seconds=60, clock=clock)
    for _ in range(11):
        await limiter.check_rate_limit("user-1")

    denied = await limiter.check_rate_limit("user-1")
    clock.now += denied.reset_in + 0.001

    fresh = await limiter.check_rate_limit("user-1")
    assert fresh.allowed is True
    assert fresh.remaining == 9
    assert fresh.reset_in == 60


@pytest.mark.asyncio
async def test_windows_are_tracked_per_user():
    limiter = InMemoryRateLimiter(max_requests=1, window_seconds=60, clock=_Clock())

    assert (await limiter.check_rate_limit("user-1")).allowed
    assert not (await limiter.check_rate_limit("user-1")).allowed
    assert (await limiter.check_rate_limit("user-2")).allowed


@pytest.mark.asyncio
async def test_reset_in_seconds_rounds_up():
    clock = _Clock()
    limiter = InMemoryRateLimiter(max_requests=1, window_seconds=60, clock=clock)
    await limiter.check_rate_limit("user-1")
    clock.now += 30.4

    denied = await limiter.check_rate_limit("user-1")
    assert denied.reset_in_seconds == 30


class _FakeRedis:
    def __init__(self):
        self.counts = {}
        self.expiry = {}

    async def incr(self, key):
        self.counts[key] = self.counts.get(key, 0) + 1
        return self.counts[key]

    async def expire(self, key, seconds):
        self.expiry[key] = seconds

    async def ttl(self, key):
        return self.expiry.get(key, -1)


class _DownRedis:
    async def incr(self, key):
        raise RedisConnectionError("redis down")


@pytest.mark.asyncio
async def test_redis_limiter_denies_after_max():
    redis_client = _FakeRedis()
    limiter = RedisRateLimiter(redis_client, max_requests=2, window_seconds=60)

    first = await limiter.check_rate_limit("user-1")
    second = await limiter.check_rate_limit("user-1")
    third = await limiter.check_rate_limit("user-1")

    assert (first.allowed, first.remaining) == (True, 1)
    assert (second.allowed, second.remaining) == (True, 0)
    assert third.allowed is False
    assert redis_client.expiry["mobile-preview:qr-rate:user-1"] == 60


@pytest.mark.asyncio
async def test_redis_limiter_fails_open():
    limiter = RedisRateLimiter(_DownRedis(), max_requests=2, window_seconds=60)

    result = await limiter.check_rate_limit("user-1")
    assert result.allowed is True


def test_settings_from_env_clamp(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("MOBILE_QR_RATE_LIMIT_MAX", "0")
    monkeypatch.setenv("MOBILE_QR_RATE_LIMIT_WINDOW_SECONDS", "30")

    settings = RateLimitSettings.from_env()
    assert settings.max_requests == 1
    assert settings.window_seconds == 30

    limiter = build_rate_limiter_from_env()
    assert isinstance(limiter, InMemoryRateLimiter)
    assert limiter.window_seconds == 30


@pytest.mark.asyncio
async def test_expired_windows_of_other_users_are_evicted():
    clock = _Clock()
    limiter = InMemoryRateLimiter(max_requests=10, window_seconds=60, clock=clock)

    for index in range(5):
        await limiter.check_rate_limit(f"user-{index}")
    assert limiter.tracked_users() == 5

    clock.now += 61
    result = await limiter.check_rate_limit("user-late")

    assert result.allowed is True
    assert limiter.tracked_users() == 1


@pytest.mark.asyncio
async def test_live_windows_survive_eviction():
    clock = _Clock()
    limiter = InMemoryRateLimiter(max_requests=10, window_seconds=60, clock=clock)

    await limiter.check_rate_limit("user-old")
    clock.now += 30
    for _ in range(3):
        await limiter.check_rate_limit("user-recent")

    clock.now += 31
    await limiter.check_rate_limit("user-new")

    assert limiter.tracked_users() == 2
    fourth = await limiter.check_rate_limit("user-recent")
    assert fourth.remaining == 6
