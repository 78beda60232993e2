"""Tests for the fixed-window rate limiter.

Tests for:
- In-process counters: limit, block period, window reset
- Progressive block durations and their cap
- Fail-open behaviour and recovery when Redis errors
- Rate-limit response headers
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from medauth.service.rate_limit import (
    RateLimitPolicy,
    RateLimitResult,
    RateLimiter,
    build_policies,
)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(clock):
    return RateLimiter(clock=clock)


LOGIN = RateLimitPolicy(name="login", limit=5, window_seconds=60, block_seconds=120)


class TestLocalWindow:
    async def test_allows_up_to_limit_then_blocks(self, limiter):
        results = [await limiter.hit(LOGIN, "1.2.3.4:login") for _ in range(6)]

        assert [r.allowed for r in results] == [True] * 5 + [False]
        assert [r.remaining for r in results[:5]] == [4, 3, 2, 1, 0]
        assert results[5].retry_after == 120
        assert results[5].remaining == 0

    async def test_block_persists_for_block_period(self, limiter, clock):
        for _ in range(6):
            await limiter.hit(LOGIN, "k")

        clock.now += 100
        blocked = await limiter.hit(LOGIN, "k")
        assert blocked.allowed is False
        assert blocked.retry_after == 20

        clock.now += 21
        assert (await limiter.hit(LOGIN, "k")).allowed is True

    async def test_window_resets_after_expiry(self, limiter, clock):
        for _ in range(5):
            await limiter.hit(LOGIN, "k")

        clock.now += 61
        result = await limiter.hit(LOGIN, "k")

        assert result.allowed is True
        assert result.remaining == 4

    async def test_keys_and_policies_are_independent(self, limiter):
        register = RateLimitPolicy(name="register", limit=5, window_seconds=60, block_seconds=120)
        for _ in range(6):
            await limiter.hit(LOGIN, "k")

        assert (await limiter.hit(LOGIN, "other")).allowed is True
        assert (await limiter.hit(register, "k")).allowed is True

    async def test_reset_seconds_counts_down(self, limiter, clock):
        first = await limiter.hit(LOGIN, "k")
        clock.now += 15
        second = await limiter.hit(LOGIN, "k")

        assert first.reset_seconds == 60
        assert second.reset_seconds == 45

    async def test_zero_limit_disables_policy(self, limiter):
        off = RateLimitPolicy(name="off", limit=0, window_seconds=60, block_seconds=60)
        for _ in range(20):
            assert (await limiter.hit(off, "k")).allowed is True

    async def test_invalid_window_defaults_to_sixty_seconds(self, limiter):
        bad = RateLimitPolicy(name="bad", limit=3, window_seconds=0, block_seconds=0)
        result = await limiter.hit(bad, "k")

        assert result.allowed is True
        assert result.reset_seconds == 60

    def test_backend_is_local_without_cache(self, limiter):
        assert limiter.backend == "local"
        assert limiter.degraded is False


class TestProgressive:
    async def _violate(self, limiter, policy, key="k"):
        result = await limiter.hit(policy, key)
        while result.allowed:
            result = await limiter.hit(policy, key)
        return result

    async def test_block_doubles_and_caps(self, limiter, clock):
        policy = RateLimitPolicy(
            name="progressive", limit=1, window_seconds=10, block_seconds=10, max_block_multiplier=4
        )
        durations = []
        for _ in range(4):
            result = await self._violate(limiter, policy)
            durations.append(result.retry_after)
            clock.now += result.retry_after + 1

        assert durations == [10, 20, 40, 40]

    async def test_violations_are_forgotten(self, limiter, clock):
        policy = RateLimitPolicy(
            name="progressive", limit=1, window_seconds=10, block_seconds=10, max_block_multiplier=4
        )
        first = await self._violate(limiter, policy)
        clock.now += 200

        again = await self._violate(limiter, policy)

        assert first.retry_after == 10
        assert again.retry_after == 10

    def test_progressive_flag(self):
        assert RateLimitPolicy("p", 1, 10, 10, max_block_multiplier=4).progressive is True
        assert LOGIN.progressive is False


class TestRedisBackend:
    def _cache(self):
        cache = MagicMock()
        cache.hit_window = AsyncMock(return_value=(True, 2, 55))
        return cache

    async def test_passes_policy_to_script(self):
        cache = self._cache()
        limiter = RateLimiter(cache)

        result = await limiter.hit(LOGIN, "1.2.3.4:login")

        cache.hit_window.assert_awaited_once_with(
            "login",
            "1.2.3.4:login",
            limit=5,
            window_seconds=60,
            block_seconds=120,
            max_multiplier=1,
            progressive=False,
        )
        assert result.allowed is True
        assert result.remaining == 3
        assert result.reset_seconds == 55
        assert limiter.backend == "redis"

    async def test_rejection_maps_to_retry_after(self):
        cache = self._cache()
        cache.hit_window.return_value = (False, -1, 90)
        limiter = RateLimiter(cache)

        result = await limiter.hit(LOGIN, "k")

        assert result.allowed is False
        assert result.retry_after == 90
        assert result.remaining == 0

    async def test_fails_open_and_recovers(self):
        cache = self._cache()
        cache.hit_window.side_effect = RedisConnectionError("down")
        limiter = RateLimiter(cache)

        degraded = await limiter.hit(LOGIN, "k")
        assert degraded.allowed is True
        assert degraded.degraded is True
        assert limiter.degraded is True

        cache.hit_window.side_effect = None
        recovered = await limiter.hit(LOGIN, "k")
        assert recovered.degraded is False
        assert limiter.degraded is False


class TestHeaders:
    def test_allowed_headers(self):
        headers = RateLimitResult(True, 100, 42, 600).headers()
        assert headers == {
            "X-RateLimit-Limit": "100",
            "X-RateLimit-Remaining": "42",
            "X-RateLimit-Reset": "600",
        }

    def test_rejected_headers_include_retry_after(self):
        headers = RateLimitResult(False, 5, 0, 1800, retry_after=1800).headers()
        assert headers["X-RateLimit-Remaining"] == "0"
        assert headers["Retry-After"] == "1800"

    def test_apply_headers(self):
        response = SimpleNamespace(headers={})
        RateLimitResult(True, 5, 4, 60).apply_headers(response)
        assert response.headers["X-RateLimit-Remaining"] == "4"


def test_build_policies_uses_settings():
    settings = SimpleNamespace(
        global_rate_limit=100,
        global_rate_window_seconds=900,
        login_rate_limit=5,
        register_rate_limit=3,
        strict_rate_window_seconds=900,
        progressive_rate_limit=50,
        progressive_rate_window_seconds=60,
        progressive_max_multiplier=8,
        user_rate_limit=300,
        user_rate_window_seconds=900,
    )
    policies = build_policies(settings)

    assert set(policies) == {"global", "login", "register", "progressive", "user"}
    assert policies["login"].limit == 5
    assert policies["login"].block_seconds == 1800
    assert policies["register"].limit == 3
    assert policies["progressive"].progressive is True
    assert policies["global"].progressive is False
