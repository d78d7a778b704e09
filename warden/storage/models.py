from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, List, Literal, Optional


class _Unset:
    """Marker for patch fields that were not supplied at all."""

    _instance: Optional["_Unset"] = None

    def __new__(cls) -> "_Unset":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


class PermissionType(str, Enum):
    MENU = "MENU"
    BUTTON = "BUTTON"
    API = "API"


@dataclass
class User:
    id: str
    user_name: str
    password: str
    nick_name: Optional[str] = None
    avatar: Optional[str] = None
    role_ids: List[int] = field(default_factory=list)
    disabled: bool = False
    deleted: bool = False
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class Role:
    id: int
    name: str
    description: Optional[str] = None
    disabled: bool = False
    deleted: bool = False
    permission_ids: List[int] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class Permission:
    id: int
    permission: str
    type: PermissionType = PermissionType.API
    name: Optional[str] = None
    parent_id: Optional[int] = None
    path: Optional[str] = None
    icon: Optional[str] = None
    sort: int = 0


@dataclass
class RoleQuery:
    """Filter for listing roles; ``None`` means "do not filter on this"."""

    disabled: Optional[bool] = None
    keyword: Optional[str] = None
    begin_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    page: int = 1
    page_size: int = 10
    sort: Literal["asc", "desc"] = "desc"

    @property
    def offset(self) -> int:
        return (max(self.page, 1) - 1) * self.page_size


@dataclass
class RolePatch:
    """Partial role update.

    Fields left as ``UNSET`` are not touched. ``permissions`` set to ``None``
    or ``[]`` clears every association; a list replaces them wholesale.
    """

    name: Any = UNSET
    description: Any = UNSET
    disabled: Any = UNSET
    permissions: Any = UNSET

    def is_set(self, name: str) -> bool:
        return getattr(self, name) is not UNSET

    def touches_grants(self) -> bool:
        return self.is_set("disabled") or self.is_set("permissions")

    def replacement_permissions(self) -> Optional[List[int]]:
        """Permission ids to install, or ``None`` when the set is untouched."""
        if not self.is_set("permissions"):
            return None
        return list(dict.fromkeys(self.permissions or []))


@dataclass
class RolePage:
    list: List[Role]
    total: int
