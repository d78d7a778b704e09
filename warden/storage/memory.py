from __future__ import annotations

import itertools
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

from warden.logging import get_logger
from warden.storage.errors import ConstraintViolation, RoleDeleteOutcome
from warden.storage.models import (
    Permission,
    PermissionType,
    Role,
    RolePage,
    RolePatch,
    RoleQuery,
    User,
)


class MemoryStore:
    """In-memory credential store for tests and local development.

    Every read returns a copy so callers cannot mutate stored state behind
    the store's back; every operation runs under one re-entrant lock, which
    also makes the guarded soft delete atomic.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.roles: Dict[int, Role] = {}
        self.permissions: Dict[int, Permission] = {}
        self._role_seq = itertools.count(1)
        self._permission_seq = itertools.count(1)
        # RLock for all data operations to ensure thread safety
        self._data_lock = threading.RLock()

    @staticmethod
    def _copy_user(user: User) -> User:
        return replace(user, role_ids=list(user.role_ids))

    @staticmethod
    def _copy_role(role: Role) -> Role:
        return replace(role, permission_ids=list(role.permission_ids))

    def _next_role_id(self) -> int:
        role_id = next(self._role_seq)
        while role_id in self.roles:
            role_id = next(self._role_seq)
        return role_id

    def _next_permission_id(self) -> int:
        permission_id = next(self._permission_seq)
        while permission_id in self.permissions:
            permission_id = next(self._permission_seq)
        return permission_id

    # users
    def create_user(
        self,
        user_name: str,
        password_hash: str,
        *,
        nick_name: Optional[str] = None,
        avatar: Optional[str] = None,
        role_ids: Optional[Sequence[int]] = None,
        user_id: Optional[str] = None,
    ) -> User:
        with self._data_lock:
            if any(u.user_name == user_name and not u.deleted for u in self.users.values()):
                raise ConstraintViolation("user name already exists", {"field": "user_name"})
            user = User(
                id=user_id or str(uuid.uuid4()),
                user_name=user_name,
                password=password_hash,
                nick_name=nick_name,
                avatar=avatar,
                role_ids=list(dict.fromkeys(role_ids or [])),
            )
            self.users[user.id] = user
            return self._copy_user(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.deleted:
                return None
            return self._copy_user(user)

    def get_user_by_name(self, user_name: str) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if user.user_name == user_name and not user.deleted:
                    return self._copy_user(user)
        return None

    def assign_roles(self, user_id: str, role_ids: Sequence[int]) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.deleted:
                return None
            user.role_ids = list(dict.fromkeys(role_ids))
            return self._copy_user(user)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.deleted:
                return False
            user.deleted = True
            return True

    # permissions
    def create_permission(
        self,
        permission: str,
        type: PermissionType = PermissionType.API,
        *,
        name: Optional[str] = None,
        parent_id: Optional[int] = None,
        path: Optional[str] = None,
        icon: Optional[str] = None,
        sort: int = 0,
        permission_id: Optional[int] = None,
    ) -> Permission:
        with self._data_lock:
            if permission_id is not None and permission_id in self.permissions:
                raise ConstraintViolation("permission id already exists", {"field": "id"})
            record = Permission(
                id=permission_id if permission_id is not None else self._next_permission_id(),
                permission=permission,
                type=PermissionType(type),
                name=name,
                parent_id=parent_id,
                path=path,
                icon=icon,
                sort=sort,
            )
            self.permissions[record.id] = record
            return replace(record)

    def list_permissions_by_ids(self, permission_ids: Iterable[int]) -> List[Permission]:
        with self._data_lock:
            return [
                replace(self.permissions[pid])
                for pid in dict.fromkeys(permission_ids)
                if pid in self.permissions
            ]

    # roles
    def create_role(
        self,
        name: str,
        *,
        description: Optional[str] = None,
        disabled: bool = False,
        permission_ids: Optional[Sequence[int]] = None,
        role_id: Optional[int] = None,
    ) -> Role:
        with self._data_lock:
            if self._find_live_role_by_name(name) is not None:
                raise ConstraintViolation("role name already exists", {"field": "name"})
            if role_id is not None and role_id in self.roles:
                raise ConstraintViolation("role id already exists", {"field": "id"})
            now = datetime.utcnow()
            role = Role(
                id=role_id if role_id is not None else self._next_role_id(),
                name=name,
                description=description,
                disabled=bool(disabled),
                permission_ids=list(dict.fromkeys(permission_ids or [])),
                created_at=now,
                updated_at=now,
            )
            self.roles[role.id] = role
            return self._copy_role(role)

    def _find_live_role_by_name(
        self, name: str, exclude_id: Optional[int] = None
    ) -> Optional[Role]:
        for role in self.roles.values():
            if role.deleted or role.id == exclude_id:
                continue
            if role.name == name:
                return role
        return None

    def find_role_by_name(self, name: str, *, exclude_id: Optional[int] = None) -> Optional[Role]:
        with self._data_lock:
            role = self._find_live_role_by_name(name, exclude_id)
            return self._copy_role(role) if role else None

    def get_role(self, role_id: int) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            if not role or role.deleted:
                return None
            return self._copy_role(role)

    def list_roles(self, query: RoleQuery) -> RolePage:
        keyword = (query.keyword or "").lower()
        with self._data_lock:
            matched = [
                role
                for role in self.roles.values()
                if not role.deleted
                and (query.disabled is None or role.disabled == query.disabled)
                and (not keyword or keyword in role.name.lower())
                and (query.begin_time is None or role.created_at >= query.begin_time)
                and (query.end_time is None or role.created_at <= query.end_time)
            ]
            matched.sort(key=lambda r: (r.created_at, r.id), reverse=query.sort == "desc")
            window = matched[query.offset : query.offset + query.page_size]
            return RolePage(list=[self._copy_role(r) for r in window], total=len(matched))

    def list_active_roles_by_ids(self, role_ids: Iterable[int]) -> List[Role]:
        with self._data_lock:
            roles = []
            for role_id in dict.fromkeys(role_ids):
                role = self.roles.get(role_id)
                if role and not role.deleted and not role.disabled:
                    roles.append(self._copy_role(role))
            return roles

    def update_role(self, role_id: int, patch: RolePatch) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            if not role or role.deleted:
                return None
            if patch.is_set("name") and patch.name is not None:
                if self._find_live_role_by_name(patch.name, exclude_id=role_id) is not None:
                    raise ConstraintViolation("role name already exists", {"field": "name"})
                role.name = patch.name
            if patch.is_set("description"):
                role.description = patch.description
            if patch.is_set("disabled") and patch.disabled is not None:
                role.disabled = bool(patch.disabled)
            replacement = patch.replacement_permissions()
            if replacement is not None:
                role.permission_ids = replacement
            role.updated_at = datetime.utcnow()
            return self._copy_role(role)

    def _role_user_ids(self, role_id: int) -> List[str]:
        return [
            user.id
            for user in self.users.values()
            if not user.deleted and role_id in user.role_ids
        ]

    def list_role_user_ids(self, role_id: int) -> List[str]:
        with self._data_lock:
            return self._role_user_ids(role_id)

    def soft_delete_roles(self, role_ids: Sequence[int]) -> RoleDeleteOutcome:
        wanted = list(dict.fromkeys(role_ids))
        with self._data_lock:
            found = [
                self.roles[rid]
                for rid in wanted
                if rid in self.roles and not self.roles[rid].deleted
            ]
            if any(self._role_user_ids(role.id) for role in found):
                return RoleDeleteOutcome.IN_USE
            if not wanted or len(found) != len(wanted):
                return RoleDeleteOutcome.NOT_FOUND
            now = datetime.utcnow()
            for role in found:
                role.deleted = True
                role.updated_at = now
        self.logger.info("roles_soft_deleted", role_ids=wanted)
        return RoleDeleteOutcome.DELETED
