from __future__ import annotations

import asyncio
import threading
from typing import Any, Dict, Optional
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from medauth.config import get_settings, reset_settings_cache
from medauth.logging import get_logger
from medauth.service.auth import AuthService
from medauth.service.passwords import PasswordHasher
from medauth.service.rate_limit import RateLimiter, build_policies
from medauth.service.sessions import SessionStore
from medauth.service.tokens import TokenService
from medauth.storage.memory import MemoryStore
from medauth.storage.postgres import PostgresStore
from medauth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(
                    fs_root=self.settings.shared_fs_root,
                    persist=not self.settings.test_mode,
                )
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to a per-test event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except (RedisError, OSError) as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if self.settings.require_redis:
                raise RuntimeError(
                    "Redis is required (REQUIRE_REDIS=true) but is unreachable; "
                    "start Redis or unset REQUIRE_REDIS to run durable-only."
                ) from redis_error
            logger.warning(
                "redis_unavailable_degraded",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    "Running without Redis; sessions are read from the durable store "
                    "and rate limits are process-local."
                ),
            )

        self.hasher = PasswordHasher.from_settings(self.settings)
        self.tokens = TokenService.from_settings(self.settings)
        self.sessions = SessionStore(self.store, self.cache)
        self.rate_limiter = RateLimiter(self.cache)
        self.rate_policies = build_policies(self.settings)
        self.auth = AuthService(
            self.store, self.sessions, self.tokens, self.hasher, self.settings
        )
        logger.info(
            "runtime_init_completed",
            cache="redis" if self.cache else "none",
            progressive_rate_limit=self.settings.progressive_rate_limit_enabled,
        )

    async def health(self) -> Dict[str, Any]:
        cache_status = "disabled"
        if self.cache:
            try:
                cache_status = "ok" if await self.cache.ping() else "error"
            except (RedisError, OSError) as exc:
                logger.warning("health_cache_ping_failed", error=str(exc))
                cache_status = "error"
        return {
            "store": type(self.store).__name__,
            "cache": cache_status,
            "rate_limiter": {
                "backend": self.rate_limiter.backend,
                "degraded": self.rate_limiter.degraded,
            },
        }

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the fast path skips the lock once the runtime
    exists; the slow path re-checks under the lock before creating it.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            if isinstance(runtime.cache, SyncRedisCache):
                runtime.cache.client.close()
            else:
                try:
                    loop = asyncio.get_running_loop()
                    loop.create_task(runtime.cache.close())
                except RuntimeError:
                    asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
