from __future__ import annotations

from typing import Iterable, Optional, Set

import redis.asyncio as aioredis
from redis import Redis

from warden.storage.keys import (
    blacklist_key,
    captcha_key,
    permissions_key,
    sso_key,
)


class RedisCache:
    """Thin Redis wrapper for captchas, session mirrors, revocations and permission sets."""

    DEFAULT_OPERATION_TIMEOUT = 5.0  # 5 seconds

    # Compare-and-delete so two correct submissions cannot both consume a challenge.
    # A mismatch leaves the key in place.
    _CONSUME_CAPTCHA_SCRIPT = """
local stored = redis.call('GET', KEYS[1])
if not stored then
  return 0
end
if string.lower(stored) == string.lower(ARGV[1]) then
  redis.call('DEL', KEYS[1])
  return 1
end
return 0
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._consume_captcha = self.client.register_script(self._CONSUME_CAPTCHA_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    # ------------------------------------------------------------------
    # Captcha
    # ------------------------------------------------------------------

    async def set_captcha(self, ip: str, user_agent: str, text: str, ttl_seconds: int) -> None:
        await self.client.set(captcha_key(ip, user_agent), text, ex=ttl_seconds)

    async def get_captcha(self, ip: str, user_agent: str) -> Optional[str]:
        return await self.client.get(captcha_key(ip, user_agent))

    async def consume_captcha(self, ip: str, user_agent: str, submitted: str) -> bool:
        result = await self._consume_captcha(keys=[captcha_key(ip, user_agent)], args=[submitted])
        return bool(result)

    # ------------------------------------------------------------------
    # Session mirror (single active session per user)
    # ------------------------------------------------------------------

    async def set_session_mirror(self, user_id: str, token: str, ttl_seconds: int) -> None:
        # Plain SET: last write wins, the previous token stops matching.
        await self.client.set(sso_key(user_id), token, ex=ttl_seconds)

    async def get_session_mirror(self, user_id: str) -> Optional[str]:
        return await self.client.get(sso_key(user_id))

    async def get_ttl(self, key: str) -> int:
        return await self.client.ttl(key)

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    async def blacklist_token(self, token: str, ttl_seconds: int) -> None:
        await self.client.set(blacklist_key(token), "", ex=ttl_seconds)

    async def is_token_blacklisted(self, token: str) -> bool:
        return bool(await self.client.exists(blacklist_key(token)))

    # ------------------------------------------------------------------
    # Permission cache
    # ------------------------------------------------------------------

    async def get_permissions(self, user_id: str) -> Set[str]:
        return set(await self.client.smembers(permissions_key(user_id)))

    async def cache_permissions(
        self, user_id: str, permissions: Iterable[str], ttl_seconds: int
    ) -> None:
        members = list(permissions)
        if not members:
            return
        key = permissions_key(user_id)
        pipe = self.client.pipeline()
        pipe.sadd(key, *members)
        pipe.expire(key, ttl_seconds)
        await pipe.execute()

    async def invalidate_permissions(self, user_ids: Iterable[str]) -> int:
        keys = [permissions_key(user_id) for user_id in user_ids]
        if not keys:
            return 0
        return int(await self.client.delete(*keys))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
