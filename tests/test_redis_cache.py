"""RedisCache against a recording client, plus a live run when Redis is reachable."""

import os
import uuid

import pytest
from redis.exceptions import RedisError

from warden.storage.redis_cache import RedisCache

LIVE_REDIS_URL = os.environ.get("WARDEN_TEST_REDIS_URL", "redis://localhost:6379/1")


class FakePipeline:
    def __init__(self, client):
        self.client = client
        self.queued = []

    def sadd(self, key, *members):
        self.queued.append(("sadd", key, members))

    def expire(self, key, seconds):
        self.queued.append(("expire", key, seconds))

    async def execute(self):
        self.client.calls.append(("pipeline", list(self.queued)))
        return [len(self.queued)]


class FakePool:
    def __init__(self):
        self.disconnected = False

    async def disconnect(self):
        self.disconnected = True


class FakeRedis:
    """Records every command; reads answer from ``values``."""

    def __init__(self, values=None):
        self.values = values or {}
        self.calls = []
        self.connection_pool = FakePool()
        self.closed = False

    async def set(self, key, value, ex=None):
        self.calls.append(("set", key, value, ex))
        self.values[key] = value

    async def get(self, key):
        return self.values.get(key)

    async def exists(self, key):
        return 1 if key in self.values else 0

    async def ttl(self, key):
        return 42 if key in self.values else -2

    async def smembers(self, key):
        return self.values.get(key, set())

    async def delete(self, *keys):
        self.calls.append(("delete", keys))
        return sum(1 for key in keys if self.values.pop(key, None) is not None)

    def pipeline(self):
        return FakePipeline(self)

    async def close(self):
        self.closed = True


class FakeScript:
    def __init__(self, result):
        self.result = result
        self.calls = []

    async def __call__(self, keys=None, args=None):
        self.calls.append((keys, args))
        return self.result


def _cache(client=None, script_result=1):
    cache: RedisCache = RedisCache.__new__(RedisCache)
    cache.redis_url = "redis://fake"
    cache.client = client or FakeRedis()
    cache._consume_captcha = FakeScript(script_result)
    return cache


class TestRecordedCommands:
    async def test_set_captcha_uses_ip_and_user_agent_key(self):
        cache = _cache()
        await cache.set_captcha("10.0.0.1", "Mozilla/5.0", "AbCd", 120)
        assert cache.client.calls == [("set", "captcha:10.0.0.1:Mozilla/5.0", "AbCd", 120)]

    async def test_consume_captcha_passes_key_and_submission_to_script(self):
        cache = _cache(script_result=1)
        assert await cache.consume_captcha("10.0.0.1", "ua", "abcd") is True
        assert cache._consume_captcha.calls == [(["captcha:10.0.0.1:ua"], ["abcd"])]

    async def test_consume_captcha_mismatch_is_false(self):
        cache = _cache(script_result=0)
        assert await cache.consume_captcha("ip", "ua", "nope") is False

    async def test_session_mirror_overwrites_with_ttl(self):
        cache = _cache()
        await cache.set_session_mirror("u1", "tok-1", 86400)
        await cache.set_session_mirror("u1", "tok-2", 86400)

        assert cache.client.calls == [
            ("set", "sso:u1", "tok-1", 86400),
            ("set", "sso:u1", "tok-2", 86400),
        ]
        assert await cache.get_session_mirror("u1") == "tok-2"

    async def test_blacklist_writes_empty_value_with_ttl(self):
        cache = _cache()
        await cache.blacklist_token("tok", 3600)

        assert cache.client.calls == [("set", "blacklist:tok", "", 3600)]
        assert await cache.is_token_blacklisted("tok") is True
        assert await cache.is_token_blacklisted("other") is False

    async def test_cache_permissions_pipelines_sadd_and_expire(self):
        cache = _cache()
        await cache.cache_permissions("u1", ["role:list", "role:query"], 600)

        assert cache.client.calls == [
            (
                "pipeline",
                [
                    ("sadd", "permissions:u1", ("role:list", "role:query")),
                    ("expire", "permissions:u1", 600),
                ],
            )
        ]

    async def test_cache_permissions_skips_empty_sets(self):
        cache = _cache()
        await cache.cache_permissions("u1", [], 600)
        assert cache.client.calls == []

    async def test_get_permissions_returns_a_set(self):
        cache = _cache(FakeRedis({"permissions:u1": {"a", "b"}}))
        assert await cache.get_permissions("u1") == {"a", "b"}
        assert await cache.get_permissions("u2") == set()

    async def test_invalidate_permissions_deletes_all_keys_at_once(self):
        cache = _cache(FakeRedis({"permissions:u1": {"a"}}))

        assert await cache.invalidate_permissions(["u1", "u2"]) == 1
        assert cache.client.calls == [("delete", ("permissions:u1", "permissions:u2"))]

    async def test_invalidate_nothing_skips_the_round_trip(self):
        cache = _cache()
        assert await cache.invalidate_permissions([]) == 0
        assert cache.client.calls == []

    async def test_close_releases_the_pool(self):
        cache = _cache()
        await cache.close()
        assert cache.client.closed is True
        assert cache.client.connection_pool.disconnected is True


def _live_cache() -> RedisCache:
    cache = RedisCache(LIVE_REDIS_URL, socket_timeout=1.0)
    try:
        cache.verify_connection()
    except (RedisError, OSError):
        pytest.skip(f"Redis not reachable at {LIVE_REDIS_URL}")
    return cache


class TestLiveRedis:
    async def test_captcha_compare_and_delete(self):
        cache = _live_cache()
        ip, ua = "198.51.100.7", f"pytest-{uuid.uuid4().hex}"
        try:
            await cache.set_captcha(ip, ua, "AbCd", 60)

            assert await cache.consume_captcha(ip, ua, "wxyz") is False
            assert await cache.get_captcha(ip, ua) == "AbCd"

            assert await cache.consume_captcha(ip, ua, "ABCD") is True
            assert await cache.get_captcha(ip, ua) is None
            assert await cache.consume_captcha(ip, ua, "abcd") is False
        finally:
            await cache.close()

    async def test_mirror_blacklist_and_permission_ttls(self):
        cache = _live_cache()
        user_id = f"u-{uuid.uuid4().hex}"
        token = f"tok-{uuid.uuid4().hex}"
        try:
            await cache.set_session_mirror(user_id, token, 60)
            await cache.blacklist_token(token, 30)
            await cache.cache_permissions(user_id, ["role:list", "role:list", "role:query"], 45)

            assert await cache.get_session_mirror(user_id) == token
            assert 0 < await cache.get_ttl(f"sso:{user_id}") <= 60
            assert await cache.is_token_blacklisted(token) is True
            assert 0 < await cache.get_ttl(f"blacklist:{token}") <= 30
            assert await cache.get_permissions(user_id) == {"role:list", "role:query"}
            assert 0 < await cache.get_ttl(f"permissions:{user_id}") <= 45

            assert await cache.invalidate_permissions([user_id]) == 1
            assert await cache.get_ttl(f"permissions:{user_id}") == -2
        finally:
            await cache.client.delete(f"sso:{user_id}", f"blacklist:{token}")
            await cache.close()
