from __future__ import annotations

from typing import List, Optional, Union

from redis.exceptions import RedisError

from medauth.logging import get_logger
from medauth.service.errors import ServerError
from medauth.storage.memory import MemoryStore
from medauth.storage.models import Session, utcnow
from medauth.storage.postgres import PostgresStore
from medauth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

CacheBackend = Union[RedisCache, SyncRedisCache]
DurableStore = Union[PostgresStore, MemoryStore]


class SessionStore:
    """Server-side session records on a cache plus a durable table.

    The cache answers the hot path; the durable store is the source of truth.
    Cache failures on reads and writes degrade to the durable store and are
    logged. Durable store failures propagate so a request is never
    authenticated without a verified session. Revocation is the exception: a
    cached record must not outlive its durable row, so a failed cache revoke
    raises and the caller retries.
    """

    def __init__(self, store: DurableStore, cache: Optional[CacheBackend] = None) -> None:
        self.store = store
        self.cache = cache

    @property
    def cache_enabled(self) -> bool:
        return self.cache is not None

    async def put(self, session: Session) -> None:
        self.store.save_session(session)
        if not self.cache:
            return
        try:
            await self.cache.cache_session(session)
        except (RedisError, OSError) as exc:
            logger.warning("session_cache_write_failed", session_id=session.id, error=str(exc))

    async def get(self, session_id: str) -> Optional[Session]:
        if not session_id:
            return None
        if self.cache:
            try:
                cached = await self.cache.get_session(session_id)
            except (RedisError, OSError) as exc:
                logger.warning("session_cache_degraded", session_id=session_id, error=str(exc))
            else:
                if cached and not cached.is_expired():
                    return cached

        session = self.store.get_session(session_id)
        if session is None:
            return None
        if session.is_expired():
            self.store.delete_session(session_id)
            return None
        if self.cache:
            logger.warning("session_cache_miss", session_id=session_id, user_id=session.user_id)
            try:
                await self.cache.cache_session(session)
            except (RedisError, OSError) as exc:
                logger.warning("session_cache_write_failed", session_id=session_id, error=str(exc))
        return session

    async def exists(self, session_id: str) -> bool:
        return await self.get(session_id) is not None

    async def delete(self, session_id: str, user_id: Optional[str] = None) -> bool:
        removed = self.store.delete_session(session_id)
        if self.cache:
            try:
                await self.cache.revoke_session(session_id, user_id)
            except (RedisError, OSError) as exc:
                logger.error("session_cache_revoke_failed", session_id=session_id, error=str(exc))
                raise _revocation_failed() from exc
        return removed

    async def delete_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        removed = self.store.delete_user_sessions(user_id, except_session_id)
        if self.cache:
            try:
                await self.cache.revoke_user_sessions(user_id, except_session_id)
                # Rows the index missed (e.g. written while the cache was down)
                for session_id in removed:
                    await self.cache.revoke_session(session_id, user_id)
            except (RedisError, OSError) as exc:
                logger.error("session_cache_revoke_failed", user_id=user_id, error=str(exc))
                raise _revocation_failed() from exc
        return len(removed)

    def list_user_sessions(self, user_id: str) -> List[Session]:
        now = utcnow()
        return [s for s in self.store.list_user_sessions(user_id) if not s.is_expired(now)]

    def purge_expired(self) -> int:
        return self.store.purge_expired_sessions()


def _revocation_failed() -> ServerError:
    return ServerError(
        "Session revocation could not be completed, please retry",
        status_code=503,
    )
