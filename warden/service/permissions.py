from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Protocol, Set

from warden.config import Settings
from warden.logging import get_logger
from warden.service.errors import NotFoundError
from warden.service.menus import generate_menus
from warden.storage.models import Permission, Role, User

logger = get_logger(__name__)


class PermissionStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def list_active_roles_by_ids(self, role_ids: Iterable[int]) -> List[Role]: ...

    def list_permissions_by_ids(self, permission_ids: Iterable[int]) -> List[Permission]: ...


class PermissionCache(Protocol):
    async def get_permissions(self, user_id: str) -> Set[str]: ...

    async def cache_permissions(
        self, user_id: str, permissions: Iterable[str], ttl_seconds: int
    ) -> None: ...

    async def invalidate_permissions(self, user_ids: Iterable[str]) -> int: ...


@dataclass
class UserInfo:
    name: str
    avatar: str
    roles: List[str] = field(default_factory=list)
    permissions: List[str] = field(default_factory=list)
    menus: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class _Grants:
    roles: List[Role] = field(default_factory=list)
    permissions: List[Permission] = field(default_factory=list)

    @property
    def codes(self) -> List[str]:
        return list(dict.fromkeys(p.permission for p in self.permissions))


def permission_matches(granted: str, required: str) -> bool:
    """Segment-wise match where a ``*`` segment in ``granted`` matches anything."""
    if granted == required:
        return True
    granted_parts = granted.split(":")
    required_parts = required.split(":")
    if len(granted_parts) != len(required_parts):
        return False
    return all(g == "*" or g == r for g, r in zip(granted_parts, required_parts))


class PermissionResolver:
    """Resolve what a user may see and do from their enabled roles.

    The configured default administrator always holds the super permission,
    which is derived on every call and never written to the cache.
    """

    def __init__(self, store: PermissionStore, cache: PermissionCache, settings: Settings) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings

    @property
    def super_permission(self) -> str:
        return self.settings.default_super_permission

    def _resolve_grants(self, user: User) -> _Grants:
        if not user.role_ids:
            return _Grants()
        roles = self.store.list_active_roles_by_ids(user.role_ids)
        if not roles:
            return _Grants()
        permission_ids = list(dict.fromkeys(pid for role in roles for pid in role.permission_ids))
        if not permission_ids:
            return _Grants(roles=roles)
        return _Grants(roles=roles, permissions=self.store.list_permissions_by_ids(permission_ids))

    async def get_user_info(self, user_id: str) -> UserInfo:
        user = self.store.get_user(user_id)
        if user is None:
            logger.warning("user_info_missing_user", user_id=user_id)
            raise NotFoundError(f"No user found for userId: {user_id}")

        info = UserInfo(name=user.nick_name or user.user_name, avatar=user.avatar or "")
        is_admin = self.settings.is_default_administrator(user.user_name)
        if is_admin:
            info.permissions = [self.super_permission]

        grants = self._resolve_grants(user)
        info.roles = [role.name for role in grants.roles]
        if not grants.permissions:
            return info
        if not is_admin:
            info.permissions = grants.codes
        info.menus = generate_menus(grants.permissions)
        return info

    async def find_user_permissions(self, user_id: str) -> Set[str]:
        cached = await self.cache.get_permissions(user_id)
        if cached:
            return cached

        user = self.store.get_user(user_id)
        if user is None or not user.role_ids:
            return set()
        if self.settings.is_default_administrator(user.user_name):
            return {self.super_permission}

        codes = set(self._resolve_grants(user).codes)
        if not codes:
            return set()
        await self.cache.cache_permissions(user_id, codes, self.settings.jwt_expires_in)
        logger.info("permission_cache_populated", user_id=user_id, count=len(codes))
        return codes

    async def has_permission(self, user_id: str, required: str) -> bool:
        granted = await self.find_user_permissions(user_id)
        if self.super_permission in granted:
            return True
        return any(permission_matches(code, required) for code in granted)

    async def invalidate(self, user_ids: Iterable[str]) -> int:
        ids = list(dict.fromkeys(user_ids))
        if not ids:
            return 0
        removed = await self.cache.invalidate_permissions(ids)
        logger.info("permission_cache_invalidated", user_ids=ids, removed=removed)
        return removed
