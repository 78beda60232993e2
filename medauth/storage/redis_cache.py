from __future__ import annotations

import hashlib
import json
from datetime import datetime, timezone
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis

from medauth.logging import get_logger
from medauth.storage.models import Session

logger = get_logger(__name__)

SESSION_KEY = "auth:session:{}"
USER_SESSIONS_KEY = "auth:user_sessions:{}"

# (allowed, count, seconds) where seconds is the window TTL when allowed and
# the block TTL when rejected. count is -1 when rejected by an existing block.
WindowResult = Tuple[bool, int, int]


class RedisCache:
    """Thin Redis wrapper for session records and rate-limit windows."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Fixed window with block: block check, INCR, EXPIRE on first hit and the
    # progressive violation counter run as one atomic unit.
    _WINDOW_SCRIPT = """
local counter_key = KEYS[1]
local block_key = KEYS[2]
local violations_key = KEYS[3]
local limit = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local block_seconds = tonumber(ARGV[3])
local max_multiplier = tonumber(ARGV[4])
local progressive = tonumber(ARGV[5])

local blocked_for = redis.call('TTL', block_key)
if blocked_for > 0 then
  return {0, -1, blocked_for}
end

local count = redis.call('INCR', counter_key)
if count == 1 then
  redis.call('EXPIRE', counter_key, window)
end
local ttl = redis.call('TTL', counter_key)
if ttl < 0 then
  redis.call('EXPIRE', counter_key, window)
  ttl = window
end

if count > limit then
  local duration = block_seconds
  if progressive == 1 then
    local violations = redis.call('INCR', violations_key)
    redis.call('EXPIRE', violations_key, block_seconds * max_multiplier * 2)
    local multiplier = math.min(math.pow(2, violations - 1), max_multiplier)
    duration = math.floor(block_seconds * multiplier)
  end
  redis.call('SET', block_key, '1', 'EX', duration)
  redis.call('DEL', counter_key)
  return {0, count, duration}
end
return {1, count, ttl}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._window = self.client.register_script(self._WINDOW_SCRIPT)

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """TTL from an absolute expiry, clamped to at least one second."""
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    @staticmethod
    def _rate_keys(policy: str, key: str) -> list[str]:
        """Hashed counter/block/violation keys for a rate-limit subject.

        The subject is hashed so client-controlled parts cannot inject
        delimiters; the hash tag keeps all three keys in one cluster slot.
        """
        digest = hashlib.sha256(key.encode()).hexdigest()
        base = f"rate:{{{policy}:{digest}}}"
        return [f"{base}:count", f"{base}:block", f"{base}:violations"]

    @staticmethod
    def _decode_session(session_id: str, raw: Optional[str]) -> Optional[Session]:
        if raw is None:
            return None
        try:
            return Session.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("session_cache_corrupt", session_id=session_id, error=str(exc))
            return None

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client avoids binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def cache_session(self, session: Session) -> None:
        ttl = self._ttl_seconds(session.expires_at)
        user_key = USER_SESSIONS_KEY.format(session.user_id)
        pipe = self.client.pipeline()
        pipe.set(SESSION_KEY.format(session.id), json.dumps(session.to_dict()), ex=ttl)
        # Per-user index for bulk revocation
        pipe.sadd(user_key, session.id)
        pipe.expire(user_key, ttl)
        await pipe.execute()

    async def get_session(self, session_id: str) -> Optional[Session]:
        raw = await self.client.get(SESSION_KEY.format(session_id))
        return self._decode_session(session_id, raw)

    async def revoke_session(self, session_id: str, user_id: Optional[str] = None) -> None:
        pipe = self.client.pipeline()
        pipe.delete(SESSION_KEY.format(session_id))
        if user_id:
            pipe.srem(USER_SESSIONS_KEY.format(user_id), session_id)
        await pipe.execute()

    async def revoke_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        """Revoke all cached sessions for a user.

        Args:
            user_id: User whose sessions to revoke
            except_session_id: Optional session ID to keep active

        Returns:
            Number of sessions revoked from cache
        """
        user_sessions_key = USER_SESSIONS_KEY.format(user_id)
        session_ids = await self.client.smembers(user_sessions_key)
        if not session_ids:
            return 0

        revoked = 0
        pipe = self.client.pipeline()
        for session_id in session_ids:
            if except_session_id and session_id == except_session_id:
                continue
            pipe.delete(SESSION_KEY.format(session_id))
            pipe.srem(user_sessions_key, session_id)
            revoked += 1
        await pipe.execute()
        return revoked

    async def hit_window(
        self,
        policy: str,
        key: str,
        *,
        limit: int,
        window_seconds: int,
        block_seconds: int,
        max_multiplier: int = 1,
        progressive: bool = False,
    ) -> WindowResult:
        allowed, count, seconds = await self._window(
            keys=self._rate_keys(policy, key),
            args=[limit, window_seconds, block_seconds, max_multiplier, 1 if progressive else 0],
        )
        return bool(int(allowed)), int(count), int(seconds)

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes async methods so callers await it exactly
    like RedisCache.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._window = self.client.register_script(RedisCache._WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        self.client.ping()

    async def ping(self) -> bool:
        return bool(self.client.ping())

    async def cache_session(self, session: Session) -> None:
        ttl = RedisCache._ttl_seconds(session.expires_at)
        user_key = USER_SESSIONS_KEY.format(session.user_id)
        pipe = self.client.pipeline()
        pipe.set(SESSION_KEY.format(session.id), json.dumps(session.to_dict()), ex=ttl)
        pipe.sadd(user_key, session.id)
        pipe.expire(user_key, ttl)
        pipe.execute()

    async def get_session(self, session_id: str) -> Optional[Session]:
        raw = self.client.get(SESSION_KEY.format(session_id))
        return RedisCache._decode_session(session_id, raw)

    async def revoke_session(self, session_id: str, user_id: Optional[str] = None) -> None:
        pipe = self.client.pipeline()
        pipe.delete(SESSION_KEY.format(session_id))
        if user_id:
            pipe.srem(USER_SESSIONS_KEY.format(user_id), session_id)
        pipe.execute()

    async def revoke_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        user_sessions_key = USER_SESSIONS_KEY.format(user_id)
        session_ids = self.client.smembers(user_sessions_key)
        if not session_ids:
            return 0

        revoked = 0
        pipe = self.client.pipeline()
        for session_id in session_ids:
            if except_session_id and session_id == except_session_id:
                continue
            pipe.delete(SESSION_KEY.format(session_id))
            pipe.srem(user_sessions_key, session_id)
            revoked += 1
        pipe.execute()
        return revoked

    async def hit_window(
        self,
        policy: str,
        key: str,
        *,
        limit: int,
        window_seconds: int,
        block_seconds: int,
        max_multiplier: int = 1,
        progressive: bool = False,
    ) -> WindowResult:
        allowed, count, seconds = self._window(
            keys=RedisCache._rate_keys(policy, key),
            args=[limit, window_seconds, block_seconds, max_multiplier, 1 if progressive else 0],
        )
        return bool(int(allowed)), int(count), int(seconds)

    async def close(self) -> None:
        self.client.close()
