from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, Iterable, Optional, Set, Tuple

from warden.storage.keys import (
    blacklist_key,
    captcha_key,
    permissions_key,
    sso_key,
)


class MemoryCache:
    """In-process stand-in for :class:`RedisCache`.

    Used when Redis is unavailable under TEST_MODE or ALLOW_REDIS_FALLBACK_DEV.
    Entries expire lazily on access; ``clock`` is injectable so tests can
    move time forward.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, Tuple[Any, Optional[float]]] = {}

    def verify_connection(self) -> None:
        return None

    def _live(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            self._entries.pop(key, None)
            return None
        return value

    def _put(self, key: str, value: Any, ttl_seconds: Optional[int]) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        self._entries[key] = (value, expires_at)

    async def get_ttl(self, key: str) -> int:
        """Mirror Redis TTL semantics: -2 missing, -1 no expiry."""
        with self._lock:
            if self._live(key) is None:
                return -2
            expires_at = self._entries[key][1]
            if expires_at is None:
                return -1
            return max(0, int(round(expires_at - self._clock())))

    async def set_captcha(self, ip: str, user_agent: str, text: str, ttl_seconds: int) -> None:
        with self._lock:
            self._put(captcha_key(ip, user_agent), text, ttl_seconds)

    async def get_captcha(self, ip: str, user_agent: str) -> Optional[str]:
        with self._lock:
            return self._live(captcha_key(ip, user_agent))

    async def consume_captcha(self, ip: str, user_agent: str, submitted: str) -> bool:
        key = captcha_key(ip, user_agent)
        with self._lock:
            stored = self._live(key)
            if stored is None or stored.lower() != submitted.lower():
                return False
            self._entries.pop(key, None)
            return True

    async def set_session_mirror(self, user_id: str, token: str, ttl_seconds: int) -> None:
        with self._lock:
            self._put(sso_key(user_id), token, ttl_seconds)

    async def get_session_mirror(self, user_id: str) -> Optional[str]:
        with self._lock:
            return self._live(sso_key(user_id))

    async def blacklist_token(self, token: str, ttl_seconds: int) -> None:
        with self._lock:
            self._put(blacklist_key(token), "", ttl_seconds)

    async def is_token_blacklisted(self, token: str) -> bool:
        with self._lock:
            return self._live(blacklist_key(token)) is not None

    async def get_permissions(self, user_id: str) -> Set[str]:
        with self._lock:
            members = self._live(permissions_key(user_id))
            return set(members) if members else set()

    async def cache_permissions(
        self, user_id: str, permissions: Iterable[str], ttl_seconds: int
    ) -> None:
        members = set(permissions)
        if not members:
            return
        key = permissions_key(user_id)
        with self._lock:
            existing = self._live(key) or set()
            self._put(key, set(existing) | members, ttl_seconds)

    async def invalidate_permissions(self, user_ids: Iterable[str]) -> int:
        removed = 0
        with self._lock:
            for user_id in user_ids:
                key = permissions_key(user_id)
                if self._live(key) is not None:
                    removed += 1
                self._entries.pop(key, None)
        return removed

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
