"""Unit tests for RedisCache with a mocked client.

No Redis server is needed; the client and its pipelines are mocks and the
tests assert the commands issued.
"""

import hashlib
import json
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

from medauth.storage.models import Account, Role, Session, utcnow
from medauth.storage.redis_cache import SESSION_KEY, USER_SESSIONS_KEY, RedisCache


def create_test_cache() -> RedisCache:
    """Create a RedisCache instance without opening a connection."""
    cache: RedisCache = RedisCache.__new__(RedisCache)
    cache.redis_url = "redis://unit-test"
    cache.client = MagicMock()
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[])
    cache.client.pipeline.return_value = pipe
    cache._window = AsyncMock(return_value=[1, 3, 42])
    return cache


def create_session(ttl: int = 3600) -> Session:
    account = Account.new("doctor@example.com", "hash", Role.DOCTOR)
    return Session.new(account, ttl, ip_addr="10.1.1.1", user_agent="pytest")


class TestSessionRecords:
    async def test_cache_session_sets_record_and_index(self):
        cache = create_test_cache()
        session = create_session()

        await cache.cache_session(session)

        pipe = cache.client.pipeline.return_value
        key, raw = pipe.set.call_args.args
        assert key == SESSION_KEY.format(session.id)
        assert json.loads(raw)["user_id"] == session.user_id
        assert 3590 <= pipe.set.call_args.kwargs["ex"] <= 3600
        pipe.sadd.assert_called_once_with(USER_SESSIONS_KEY.format(session.user_id), session.id)
        pipe.execute.assert_awaited_once()

    async def test_get_session_decodes_record(self):
        cache = create_test_cache()
        session = create_session()
        cache.client.get = AsyncMock(return_value=json.dumps(session.to_dict()))

        found = await cache.get_session(session.id)

        assert found.id == session.id
        assert found.role == Role.DOCTOR
        assert found.ip_addr == "10.1.1.1"

    async def test_get_session_missing_or_corrupt(self):
        cache = create_test_cache()
        cache.client.get = AsyncMock(return_value=None)
        assert await cache.get_session("missing") is None

        cache.client.get = AsyncMock(return_value="{not json")
        assert await cache.get_session("corrupt") is None

    async def test_revoke_session_removes_index_entry(self):
        cache = create_test_cache()

        await cache.revoke_session("sid", "uid")

        pipe = cache.client.pipeline.return_value
        pipe.delete.assert_called_once_with(SESSION_KEY.format("sid"))
        pipe.srem.assert_called_once_with(USER_SESSIONS_KEY.format("uid"), "sid")

    async def test_revoke_user_sessions_skips_excepted(self):
        cache = create_test_cache()
        cache.client.smembers = AsyncMock(return_value={"keep", "drop-1", "drop-2"})

        revoked = await cache.revoke_user_sessions("uid", except_session_id="keep")

        pipe = cache.client.pipeline.return_value
        deleted = {c.args[0] for c in pipe.delete.call_args_list}
        assert revoked == 2
        assert deleted == {SESSION_KEY.format("drop-1"), SESSION_KEY.format("drop-2")}

    async def test_revoke_user_sessions_without_index(self):
        cache = create_test_cache()
        cache.client.smembers = AsyncMock(return_value=set())

        assert await cache.revoke_user_sessions("uid") == 0
        cache.client.pipeline.assert_not_called()


class TestWindow:
    async def test_hit_window_passes_hashed_keys_and_args(self):
        cache = create_test_cache()

        result = await cache.hit_window(
            "login", "1.2.3.4:login", limit=5, window_seconds=900, block_seconds=1800
        )

        assert result == (True, 3, 42)
        kwargs = cache._window.call_args.kwargs
        digest = hashlib.sha256(b"1.2.3.4:login").hexdigest()
        assert kwargs["keys"] == [
            f"rate:{{login:{digest}}}:count",
            f"rate:{{login:{digest}}}:block",
            f"rate:{{login:{digest}}}:violations",
        ]
        assert kwargs["args"] == [5, 900, 1800, 1, 0]

    async def test_hit_window_progressive_flag(self):
        cache = create_test_cache()
        cache._window.return_value = [0, -1, 120]

        result = await cache.hit_window(
            "progressive", "ip:1.2.3.4", limit=50, window_seconds=60,
            block_seconds=60, max_multiplier=8, progressive=True,
        )

        assert result == (False, -1, 120)
        assert cache._window.call_args.kwargs["args"] == [50, 60, 60, 8, 1]

    def test_subject_cannot_inject_key_delimiters(self):
        keys = RedisCache._rate_keys("login", "evil}:block")
        assert all("evil" not in key for key in keys)


def test_ttl_is_clamped_to_one_second():
    assert RedisCache._ttl_seconds(utcnow() - timedelta(minutes=1)) == 1
    assert RedisCache._ttl_seconds(utcnow().replace(tzinfo=None) + timedelta(hours=1)) >= 3590
