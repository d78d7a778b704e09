from __future__ import annotations

from typing import List, Optional, Protocol, Sequence

from warden.config import Settings
from warden.logging import get_logger
from warden.service.permissions import PermissionResolver
from warden.service.result import Err, ErrorKind, Ok, Result
from warden.storage.errors import ConstraintViolation, RoleDeleteOutcome
from warden.storage.models import Role, RolePage, RolePatch, RoleQuery

logger = get_logger(__name__)

DEFAULT_ADMIN_ROLE_ID = 1

NAME_EXISTS_MESSAGE = "The name already exists"
ROLE_NOT_FOUND_MESSAGE = "Role not found"
ADMIN_ROLE_IMMUTABLE_MESSAGE = "The default administrator role cannot be modified"
ADMIN_ROLE_UNDELETABLE_MESSAGE = "The default administrator role cannot be deleted"
ROLE_IN_USE_MESSAGE = "The role is assigned to users and cannot be deleted"


class RoleStore(Protocol):
    def create_role(
        self,
        name: str,
        *,
        description: Optional[str] = None,
        disabled: bool = False,
        permission_ids: Optional[Sequence[int]] = None,
        role_id: Optional[int] = None,
    ) -> Role: ...

    def find_role_by_name(self, name: str, *, exclude_id: Optional[int] = None) -> Optional[Role]: ...

    def get_role(self, role_id: int) -> Optional[Role]: ...

    def list_roles(self, query: RoleQuery) -> RolePage: ...

    def update_role(self, role_id: int, patch: RolePatch) -> Optional[Role]: ...

    def list_role_user_ids(self, role_id: int) -> List[str]: ...

    def soft_delete_roles(self, role_ids: Sequence[int]) -> RoleDeleteOutcome: ...


class RoleService:
    """Role administration guarded around the default administrator role."""

    def __init__(
        self,
        store: RoleStore,
        permissions: PermissionResolver,
        settings: Settings,
    ) -> None:
        self.store = store
        self.permissions = permissions
        self.settings = settings

    def is_default_admin_role(self, role_id: int, name: Optional[str] = None) -> bool:
        return role_id == DEFAULT_ADMIN_ROLE_ID or (
            name is not None and name == self.settings.default_role_name
        )

    async def create(
        self,
        name: str,
        description: Optional[str] = None,
        disabled: bool = False,
        permission_ids: Optional[Sequence[int]] = None,
    ) -> Result[Role]:
        if self.store.find_role_by_name(name) is not None:
            return Err(ErrorKind.CONFLICT, NAME_EXISTS_MESSAGE)
        try:
            role = self.store.create_role(
                name,
                description=description,
                disabled=disabled,
                permission_ids=permission_ids,
            )
        except ConstraintViolation:
            # lost a race with a concurrent create of the same name
            return Err(ErrorKind.CONFLICT, NAME_EXISTS_MESSAGE)
        logger.info("role_created", role_id=role.id)
        return Ok(role)

    async def find_all(self, query: RoleQuery) -> RolePage:
        return self.store.list_roles(query)

    async def find_one(self, role_id: int) -> Result[Role]:
        role = self.store.get_role(role_id)
        if role is None:
            return Err(ErrorKind.NOT_FOUND, ROLE_NOT_FOUND_MESSAGE)
        return Ok(role)

    async def update(self, role_id: int, patch: RolePatch) -> Result[None]:
        if self.is_default_admin_role(role_id):
            logger.info("role_update_rejected", role_id=role_id, reason="default_admin")
            return Err(ErrorKind.NOT_ACCEPTABLE, ADMIN_ROLE_IMMUTABLE_MESSAGE)
        role = self.store.get_role(role_id)
        if role is None:
            return Err(ErrorKind.NOT_FOUND, ROLE_NOT_FOUND_MESSAGE)
        if self.is_default_admin_role(role.id, role.name):
            logger.info("role_update_rejected", role_id=role_id, reason="default_admin")
            return Err(ErrorKind.NOT_ACCEPTABLE, ADMIN_ROLE_IMMUTABLE_MESSAGE)
        if patch.is_set("name") and patch.name is not None and patch.name != role.name:
            if self.store.find_role_by_name(patch.name, exclude_id=role_id) is not None:
                return Err(ErrorKind.CONFLICT, NAME_EXISTS_MESSAGE)

        try:
            updated = self.store.update_role(role_id, patch)
        except ConstraintViolation:
            return Err(ErrorKind.CONFLICT, NAME_EXISTS_MESSAGE)
        if updated is None:
            # deleted between the read and the write
            return Err(ErrorKind.NOT_FOUND, ROLE_NOT_FOUND_MESSAGE)

        if patch.touches_grants():
            user_ids = self.store.list_role_user_ids(role_id)
            if user_ids:
                await self.permissions.invalidate(user_ids)
        logger.info("role_updated", role_id=role_id)
        return Ok(None)

    async def remove(self, role_id: int) -> Result[None]:
        return await self.batch_remove([role_id])

    async def batch_remove(self, role_ids: Sequence[int]) -> Result[None]:
        wanted = list(dict.fromkeys(role_ids))
        for role_id in wanted:
            role = self.store.get_role(role_id)
            if self.is_default_admin_role(role_id, role.name if role else None):
                logger.info("role_delete_rejected", role_id=role_id, reason="default_admin")
                return Err(ErrorKind.NOT_ACCEPTABLE, ADMIN_ROLE_UNDELETABLE_MESSAGE)

        outcome = self.store.soft_delete_roles(wanted)
        if outcome is RoleDeleteOutcome.IN_USE:
            logger.info("role_delete_rejected", role_ids=wanted, reason="in_use")
            return Err(ErrorKind.NOT_ACCEPTABLE, ROLE_IN_USE_MESSAGE)
        if outcome is RoleDeleteOutcome.NOT_FOUND:
            return Err(ErrorKind.NOT_FOUND, ROLE_NOT_FOUND_MESSAGE)
        return Ok(None)
