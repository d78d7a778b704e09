import pytest

from warden.storage.keys import blacklist_key, captcha_key, permissions_key, sso_key
from warden.storage.memory_cache import MemoryCache


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


def test_key_formats():
    assert captcha_key("1.2.3.4", "ua") == "captcha:1.2.3.4:ua"
    assert sso_key("u1") == "sso:u1"
    assert blacklist_key("tok") == "blacklist:tok"
    assert permissions_key("u1") == "permissions:u1"


async def test_ttl_semantics(cache, clock):
    assert await cache.get_ttl(sso_key("u1")) == -2

    await cache.set_session_mirror("u1", "tok", 30)
    assert await cache.get_ttl(sso_key("u1")) == 30

    clock.advance(10)
    assert await cache.get_ttl(sso_key("u1")) == 20

    clock.advance(20)
    assert await cache.get_session_mirror("u1") is None
    assert await cache.get_ttl(sso_key("u1")) == -2


async def test_mirror_last_write_wins(cache):
    await cache.set_session_mirror("u1", "first", 60)
    await cache.set_session_mirror("u1", "second", 60)
    assert await cache.get_session_mirror("u1") == "second"


async def test_consume_captcha(cache):
    await cache.set_captcha("ip", "ua", "AbCd", 60)
    assert await cache.consume_captcha("ip", "ua", "wxyz") is False
    assert await cache.consume_captcha("ip", "ua", "abcd") is True
    assert await cache.consume_captcha("ip", "ua", "abcd") is False


async def test_blacklist(cache, clock):
    await cache.blacklist_token("tok", 5)
    assert await cache.is_token_blacklisted("tok") is True
    clock.advance(6)
    assert await cache.is_token_blacklisted("tok") is False


async def test_permission_set(cache):
    await cache.cache_permissions("u1", [], 60)
    assert await cache.get_ttl(permissions_key("u1")) == -2

    await cache.cache_permissions("u1", ["a", "b", "a"], 60)
    assert await cache.get_permissions("u1") == {"a", "b"}

    assert await cache.invalidate_permissions(["u1", "u2"]) == 1
    assert await cache.get_permissions("u1") == set()
