from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request

from warden.api.schemas import (
    BatchDeleteRequest,
    CaptchaResponse,
    Envelope,
    LoginRequest,
    LoginResponse,
    RoleCreateRequest,
    RoleListResponse,
    RoleResponse,
    RoleSort,
    RoleSummary,
    RoleUpdateRequest,
    UserInfoResponse,
)
from warden.logging import get_logger
from warden.service.result import Err, ErrorKind
from warden.service.runtime import get_runtime
from warden.service.session import AuthContext, extract_bearer
from warden.storage.models import RoleQuery

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

# Soft error kinds become transport codes only here.
_ERROR_KIND_TO_HTTP = {
    ErrorKind.CAPTCHA_INVALID: (400, "validation_error"),
    ErrorKind.USER_NAME_INVALID: (400, "validation_error"),
    ErrorKind.PASSWORD_INVALID: (400, "validation_error"),
    ErrorKind.CONFLICT: (409, "conflict"),
    ErrorKind.NOT_ACCEPTABLE: (406, "not_acceptable"),
    ErrorKind.NOT_FOUND: (404, "not_found"),
}


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _soft_error(err: Err) -> HTTPException:
    status_code, code = _ERROR_KIND_TO_HTTP[err.kind]
    return _http_error(code, err.message, status_code, details={"kind": err.kind.value})


def _ok(data=None) -> Envelope:
    if data is not None and hasattr(data, "model_dump"):
        data = data.model_dump(by_alias=True, mode="json")
    return Envelope(status="ok", data=data)


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    ctx = await runtime.sessions.authenticate(extract_bearer(authorization))
    if not ctx:
        raise _http_error("unauthorized", "invalid session", status_code=401)
    return ctx


def require_permission(code: str):
    """Dependency factory: the caller must hold ``code`` (wildcards honoured)."""

    async def _guard(principal: AuthContext = Depends(get_user)) -> AuthContext:
        runtime = get_runtime()
        if not await runtime.permissions.has_permission(principal.user_id, code):
            logger.info("permission_denied", user_id=principal.user_id, required=code)
            raise _http_error("forbidden", "permission denied", status_code=403)
        return principal

    return _guard


@router.get("/auth/captcha", response_model=Envelope, tags=["auth"])
async def get_captcha(request: Request, user_agent: str = Header("", alias="User-Agent")):
    runtime = get_runtime()
    image = await runtime.captcha.issue(_client_ip(request), user_agent)
    return _ok(CaptchaResponse(captcha=image.image))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    user_agent: str = Header("", alias="User-Agent"),
):
    """Exchange user name, password and captcha answer for a session token.

    Raises:
        400: captcha, user name or password rejected
    """
    runtime = get_runtime()
    result = await runtime.sessions.login(
        body.user_name,
        body.password,
        body.captcha,
        ip=_client_ip(request),
        user_agent=user_agent,
    )
    if isinstance(result, Err):
        raise _soft_error(result)
    return _ok(LoginResponse(token=result.value.token))


@router.get("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await runtime.sessions.logout(principal.token)
    return _ok()


@router.get("/auth/userinfo", response_model=Envelope, tags=["auth"])
async def get_user_info(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    info = await runtime.permissions.get_user_info(principal.user_id)
    return _ok(UserInfoResponse.from_info(info))


@router.post("/roles", response_model=Envelope, status_code=201, tags=["roles"])
async def create_role(
    body: RoleCreateRequest,
    principal: AuthContext = Depends(require_permission("role:create")),
):
    runtime = get_runtime()
    result = await runtime.roles.create(
        body.name,
        description=body.description,
        disabled=body.disabled,
        permission_ids=body.permissions,
    )
    if isinstance(result, Err):
        raise _soft_error(result)
    return _ok(RoleResponse.from_role(result.value))


@router.get("/roles", response_model=Envelope, tags=["roles"])
async def list_roles(
    disabled: Optional[bool] = Query(None),
    keyword: Optional[str] = Query(None, max_length=64),
    begin_time: Optional[datetime] = Query(None, alias="beginTime"),
    end_time: Optional[datetime] = Query(None, alias="endTime"),
    page: int = Query(1, ge=1),
    page_size: int = Query(10, ge=1, le=100, alias="pageSize"),
    sort: RoleSort = Query("desc"),
    principal: AuthContext = Depends(require_permission("role:list")),
):
    runtime = get_runtime()
    result = await runtime.roles.find_all(
        RoleQuery(
            disabled=disabled,
            keyword=keyword,
            begin_time=begin_time,
            end_time=end_time,
            page=page,
            page_size=page_size,
            sort=sort,
        )
    )
    return _ok(
        RoleListResponse(
            list=[RoleSummary.from_role(role) for role in result.list],
            total=result.total,
        )
    )


@router.get("/roles/{role_id}", response_model=Envelope, tags=["roles"])
async def get_role(
    role_id: int = Path(..., ge=1),
    principal: AuthContext = Depends(require_permission("role:query")),
):
    runtime = get_runtime()
    result = await runtime.roles.find_one(role_id)
    if isinstance(result, Err):
        raise _soft_error(result)
    return _ok(RoleResponse.from_role(result.value))


@router.patch("/roles/{role_id}", response_model=Envelope, tags=["roles"])
async def update_role(
    body: RoleUpdateRequest,
    role_id: int = Path(..., ge=1),
    principal: AuthContext = Depends(require_permission("role:update")),
):
    runtime = get_runtime()
    result = await runtime.roles.update(role_id, body.to_patch())
    if isinstance(result, Err):
        raise _soft_error(result)
    return _ok()


@router.delete("/roles/{role_id}", response_model=Envelope, tags=["roles"])
async def delete_role(
    role_id: int = Path(..., ge=1),
    principal: AuthContext = Depends(require_permission("role:delete")),
):
    runtime = get_runtime()
    result = await runtime.roles.remove(role_id)
    if isinstance(result, Err):
        raise _soft_error(result)
    return _ok()


@router.post("/roles/batch-delete", response_model=Envelope, tags=["roles"])
async def batch_delete_roles(
    body: BatchDeleteRequest,
    principal: AuthContext = Depends(require_permission("role:delete")),
):
    runtime = get_runtime()
    result = await runtime.roles.batch_remove(body.ids)
    if isinstance(result, Err):
        raise _soft_error(result)
    return _ok()
