from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple, Union

from redis.exceptions import RedisError

from medauth.logging import get_logger
from medauth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

_LOCAL_PRUNE_THRESHOLD = 10000


@dataclass(frozen=True)
class RateLimitPolicy:
    name: str
    limit: int
    window_seconds: int
    block_seconds: int
    max_block_multiplier: int = 1
    message: str = "Too many requests, please try again later."

    @property
    def progressive(self) -> bool:
        return self.max_block_multiplier > 1


@dataclass
class RateLimitResult:
    """Outcome of one counted request, ready to render as response headers."""

    allowed: bool
    limit: int
    remaining: int
    reset_seconds: int
    retry_after: int = 0
    degraded: bool = False

    def headers(self) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
            "X-RateLimit-Reset": str(max(0, self.reset_seconds)),
        }
        if not self.allowed:
            headers["Retry-After"] = str(max(1, self.retry_after))
        return headers

    def apply_headers(self, response) -> None:
        for name, value in self.headers().items():
            response.headers[name] = value


def build_policies(settings) -> Dict[str, RateLimitPolicy]:
    strict_block = settings.strict_rate_window_seconds * 2
    return {
        "global": RateLimitPolicy(
            name="global",
            limit=settings.global_rate_limit,
            window_seconds=settings.global_rate_window_seconds,
            block_seconds=settings.global_rate_window_seconds,
            message="Too many requests from this client, please try again later.",
        ),
        "login": RateLimitPolicy(
            name="login",
            limit=settings.login_rate_limit,
            window_seconds=settings.strict_rate_window_seconds,
            block_seconds=strict_block,
            message="Too many authentication attempts, please try again later.",
        ),
        "register": RateLimitPolicy(
            name="register",
            limit=settings.register_rate_limit,
            window_seconds=settings.strict_rate_window_seconds,
            block_seconds=strict_block,
            message="Too many authentication attempts, please try again later.",
        ),
        "progressive": RateLimitPolicy(
            name="progressive",
            limit=settings.progressive_rate_limit,
            window_seconds=settings.progressive_rate_window_seconds,
            block_seconds=settings.progressive_rate_window_seconds,
            max_block_multiplier=settings.progressive_max_multiplier,
            message="Rate limit exceeded. Please slow down your requests.",
        ),
        "user": RateLimitPolicy(
            name="user",
            limit=settings.user_rate_limit,
            window_seconds=settings.user_rate_window_seconds,
            block_seconds=settings.user_rate_window_seconds,
            message="Too many requests for this account, please try again later.",
        ),
    }


class RateLimiter:
    """Fixed-window counters with a block period once a key goes over its limit.

    With a Redis cache the whole step runs in one Lua script. Without one the
    same algorithm runs in-process under an ``asyncio.Lock``. Redis errors
    fail open and flip ``degraded`` until Redis answers again.
    """

    def __init__(
        self,
        cache: Optional[Union[RedisCache, SyncRedisCache]] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cache = cache
        self._clock = clock
        self._degraded = False
        self._lock = asyncio.Lock()
        # key -> (count, window_ends_at)
        self._windows: Dict[str, Tuple[int, float]] = {}
        # key -> blocked_until
        self._blocks: Dict[str, float] = {}
        # key -> (violations, forget_at)
        self._violations: Dict[str, Tuple[int, float]] = {}

    @property
    def degraded(self) -> bool:
        return self._degraded

    @property
    def backend(self) -> str:
        return "redis" if self.cache else "local"

    async def hit(self, policy: RateLimitPolicy, key: str) -> RateLimitResult:
        if policy.limit <= 0:
            return RateLimitResult(True, policy.limit, 0, 0)
        if policy.window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                policy=policy.name,
                window_seconds=policy.window_seconds,
                message="Invalid rate limit window_seconds; defaulting to 60 seconds",
            )
            policy = RateLimitPolicy(
                policy.name, policy.limit, 60, max(policy.block_seconds, 60),
                policy.max_block_multiplier, policy.message,
            )
        if self.cache:
            return await self._hit_redis(policy, key)
        allowed, count, seconds = await self._hit_local(policy, key)
        return self._result(policy, allowed, count, seconds)

    async def _hit_redis(self, policy: RateLimitPolicy, key: str) -> RateLimitResult:
        try:
            allowed, count, seconds = await self.cache.hit_window(
                policy.name,
                key,
                limit=policy.limit,
                window_seconds=policy.window_seconds,
                block_seconds=policy.block_seconds,
                max_multiplier=policy.max_block_multiplier,
                progressive=policy.progressive,
            )
        except (RedisError, OSError) as exc:
            if not self._degraded:
                logger.error("rate_limit_degraded", policy=policy.name, error=str(exc))
            self._degraded = True
            return RateLimitResult(
                True, policy.limit, policy.limit, policy.window_seconds, degraded=True
            )
        if self._degraded:
            logger.info("rate_limit_recovered", policy=policy.name)
            self._degraded = False
        return self._result(policy, allowed, count, seconds)

    @staticmethod
    def _result(
        policy: RateLimitPolicy, allowed: bool, count: int, seconds: int
    ) -> RateLimitResult:
        if allowed:
            return RateLimitResult(True, policy.limit, policy.limit - count, seconds)
        return RateLimitResult(False, policy.limit, 0, seconds, retry_after=seconds)

    async def _hit_local(self, policy: RateLimitPolicy, key: str) -> Tuple[bool, int, int]:
        scoped = f"{policy.name}:{key}"
        async with self._lock:
            now = self._clock()
            if len(self._windows) + len(self._blocks) > _LOCAL_PRUNE_THRESHOLD:
                self._prune(now)

            blocked_until = self._blocks.get(scoped)
            if blocked_until is not None:
                if blocked_until > now:
                    return False, -1, _ceil(blocked_until - now)
                del self._blocks[scoped]

            count, window_ends = self._windows.get(scoped, (0, 0.0))
            if window_ends <= now:
                count, window_ends = 0, now + policy.window_seconds
            count += 1
            self._windows[scoped] = (count, window_ends)

            if count > policy.limit:
                duration = policy.block_seconds
                if policy.progressive:
                    violations, forget_at = self._violations.get(scoped, (0, 0.0))
                    if forget_at <= now:
                        violations = 0
                    violations += 1
                    self._violations[scoped] = (
                        violations,
                        now + policy.block_seconds * policy.max_block_multiplier * 2,
                    )
                    multiplier = min(2 ** (violations - 1), policy.max_block_multiplier)
                    duration = policy.block_seconds * multiplier
                self._blocks[scoped] = now + duration
                self._windows.pop(scoped, None)
                return False, count, duration
            return True, count, _ceil(window_ends - now)

    def _prune(self, now: float) -> None:
        self._windows = {k: v for k, v in self._windows.items() if v[1] > now}
        self._blocks = {k: v for k, v in self._blocks.items() if v > now}
        self._violations = {k: v for k, v in self._violations.items() if v[1] > now}


def _ceil(seconds: float) -> int:
    return max(1, int(seconds + 0.999))
