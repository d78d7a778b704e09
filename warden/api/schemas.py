from __future__ import annotations

import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from warden.service.permissions import UserInfo
from warden.storage.models import Role, RolePatch

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "not_acceptable",
    "validation_error",
    "conflict",
    "server_error",
})

# Upper bound for id lists in a single request
MAX_BATCH_IDS = 1000


def _normalize_name(value: str) -> str:
    """NFKC-normalise and strip a display name; reject control characters."""
    cleaned = unicodedata.normalize("NFKC", value).strip()
    if any(unicodedata.category(ch) == "Cc" for ch in cleaned):
        raise ValueError("name must not contain control characters")
    if not cleaned:
        raise ValueError("name must not be blank")
    return cleaned


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(f"invalid error code '{value}'")
        return value


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class CaptchaResponse(_CamelModel):
    captcha: str


class LoginRequest(_CamelModel):
    user_name: str = Field(..., min_length=1, max_length=64)
    password: str = Field(..., min_length=1, max_length=256)
    captcha: str = Field(..., min_length=1, max_length=16)


class LoginResponse(_CamelModel):
    token: str


class UserInfoResponse(_CamelModel):
    name: str
    avatar: str
    roles: List[str]
    permissions: List[str]
    menus: List[Dict[str, Any]]

    @classmethod
    def from_info(cls, info: UserInfo) -> "UserInfoResponse":
        return cls(
            name=info.name,
            avatar=info.avatar,
            roles=info.roles,
            permissions=info.permissions,
            menus=info.menus,
        )


class RoleCreateRequest(_CamelModel):
    name: str = Field(..., min_length=1, max_length=64)
    description: Optional[str] = Field(default=None, max_length=512)
    disabled: bool = False
    permissions: Optional[List[int]] = Field(default=None, max_length=MAX_BATCH_IDS)

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        return _normalize_name(value)


class RoleUpdateRequest(_CamelModel):
    """Partial update; only fields present in the request body are applied."""

    name: Optional[str] = Field(default=None, min_length=1, max_length=64)
    description: Optional[str] = Field(default=None, max_length=512)
    disabled: Optional[bool] = None
    permissions: Optional[List[int]] = Field(default=None, max_length=MAX_BATCH_IDS)

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return _normalize_name(value)

    def to_patch(self) -> RolePatch:
        supplied = {name: getattr(self, name) for name in self.model_fields_set}
        return RolePatch(**supplied)


class BatchDeleteRequest(_CamelModel):
    ids: List[int] = Field(..., min_length=1, max_length=MAX_BATCH_IDS)


class RoleSummary(_CamelModel):
    id: int
    name: str
    description: Optional[str] = None
    disabled: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_role(cls, role: Role) -> "RoleSummary":
        return cls(
            id=role.id,
            name=role.name,
            description=role.description,
            disabled=role.disabled,
            created_at=role.created_at,
            updated_at=role.updated_at,
        )


class RoleResponse(RoleSummary):
    permissions: List[int] = Field(default_factory=list)

    @classmethod
    def from_role(cls, role: Role) -> "RoleResponse":
        return cls(
            id=role.id,
            name=role.name,
            description=role.description,
            disabled=role.disabled,
            created_at=role.created_at,
            updated_at=role.updated_at,
            permissions=list(role.permission_ids),
        )


class RoleListResponse(_CamelModel):
    list: List[RoleSummary]
    total: int


RoleSort = Literal["asc", "desc"]
