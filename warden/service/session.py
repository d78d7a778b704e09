from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Protocol

import jwt
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError
from cryptography.hazmat.primitives import serialization

from warden.config import Settings
from warden.logging import get_logger
from warden.service.captcha import CaptchaService
from warden.service.result import Err, ErrorKind, Ok, Result
from warden.storage.models import User

logger = get_logger(__name__)

TOKEN_ALGORITHM = "RS256"

CAPTCHA_INVALID_MESSAGE = "Captcha is invalid"
USER_NAME_INVALID_MESSAGE = "UserName is invalid"
PASSWORD_INVALID_MESSAGE = "Password is invalid"

_pwd_hasher = PasswordHasher(type=Type.ID)

# Verified against when the user name is unknown so both rejection paths cost
# one argon2 verification.
_DUMMY_HASH: str = _pwd_hasher.hash("warden_timing_dummy")


def hash_password(password: str) -> str:
    return _pwd_hasher.hash(password)


def verify_password(stored_hash: str, password: str) -> bool:
    try:
        return _pwd_hasher.verify(stored_hash, password)
    except (VerifyMismatchError, VerificationError, InvalidHash):
        return False


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    if not header.lower().startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None


class SessionUserStore(Protocol):
    def get_user_by_name(self, user_name: str) -> Optional[User]: ...


class SessionCache(Protocol):
    async def set_session_mirror(self, user_id: str, token: str, ttl_seconds: int) -> None: ...

    async def get_session_mirror(self, user_id: str) -> Optional[str]: ...

    async def blacklist_token(self, token: str, ttl_seconds: int) -> None: ...

    async def is_token_blacklisted(self, token: str) -> bool: ...


@dataclass
class LoginToken:
    token: str


@dataclass
class AuthContext:
    user_id: str
    user_name: str
    token: str


class TokenCodec:
    """Sign and verify session tokens carrying ``{userId, userName}``."""

    def __init__(self, private_pem: str, public_pem: str, *, expires_in: int) -> None:
        if not private_pem or not public_pem:
            raise RuntimeError("JWT signing keys are not configured")
        try:
            serialization.load_pem_private_key(private_pem.encode(), password=None)
            serialization.load_pem_public_key(public_pem.encode())
        except (ValueError, TypeError) as exc:
            raise RuntimeError("JWT signing keys are not valid PEM key material") from exc
        self._private_pem = private_pem
        self._public_pem = public_pem
        self.expires_in = expires_in

    def encode(self, user_id: str, user_name: str) -> str:
        now = datetime.now(timezone.utc)
        payload: dict[str, Any] = {
            "userId": user_id,
            "userName": user_name,
            "iat": now,
            "jti": uuid.uuid4().hex,
            "exp": now + timedelta(seconds=self.expires_in),
        }
        return jwt.encode(payload, self._private_pem, algorithm=TOKEN_ALGORITHM)

    def decode(self, token: str) -> Optional[dict[str, Any]]:
        """Return the verified claims, or ``None`` for a bad signature or an expired token."""
        try:
            payload = jwt.decode(
                token,
                self._public_pem,
                algorithms=[TOKEN_ALGORITHM],
                options={"require": ["exp", "iat"]},
            )
        except jwt.PyJWTError:
            return None
        if not isinstance(payload.get("userId"), str) or not isinstance(payload.get("userName"), str):
            return None
        return payload


class SessionManager:
    """Login, logout and token checks with a single live session per user.

    A login overwrites ``sso:{userId}``; earlier tokens keep a valid signature
    but stop matching the mirror. Logout blacklists the presented token.
    """

    def __init__(
        self,
        store: SessionUserStore,
        cache: SessionCache,
        settings: Settings,
        *,
        captcha: CaptchaService,
        codec: TokenCodec,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.captcha = captcha
        self.codec = codec
        self.logger = logger

    async def login(
        self,
        user_name: str,
        password: str,
        captcha: str,
        *,
        ip: str,
        user_agent: str,
    ) -> Result[LoginToken]:
        if not await self.captcha.verify(ip, user_agent, captcha):
            self.logger.info("login_rejected", reason=ErrorKind.CAPTCHA_INVALID.value, ip=ip)
            return Err(ErrorKind.CAPTCHA_INVALID, CAPTCHA_INVALID_MESSAGE)

        user = self.store.get_user_by_name(user_name)
        if user is None:
            verify_password(_DUMMY_HASH, password)
            self.logger.info("login_rejected", reason=ErrorKind.USER_NAME_INVALID.value, ip=ip)
            return Err(ErrorKind.USER_NAME_INVALID, USER_NAME_INVALID_MESSAGE)

        if not verify_password(user.password, password):
            self.logger.info(
                "login_rejected",
                reason=ErrorKind.PASSWORD_INVALID.value,
                user_id=user.id,
                ip=ip,
            )
            return Err(ErrorKind.PASSWORD_INVALID, PASSWORD_INVALID_MESSAGE)

        token = self.codec.encode(user.id, user.user_name)
        await self.cache.set_session_mirror(user.id, token, self.settings.jwt_expires_in)
        self.logger.info("login_succeeded", user_id=user.id, ip=ip)
        return Ok(LoginToken(token=token))

    async def logout(self, token: str) -> None:
        # Repeating a logout only refreshes the TTL.
        await self.cache.blacklist_token(token, self.settings.jwt_expires_in)
        self.logger.info("logout_completed")

    async def authenticate(self, token: Optional[str]) -> Optional[AuthContext]:
        if not token:
            return None
        claims = self.codec.decode(token)
        if claims is None:
            self.logger.info("token_rejected", reason="invalid_signature_or_expired")
            return None
        if await self.cache.is_token_blacklisted(token):
            self.logger.info("token_rejected", reason="blacklisted", user_id=claims["userId"])
            return None
        if self.settings.sso_enforced:
            current = await self.cache.get_session_mirror(claims["userId"])
            if current != token:
                self.logger.info("token_rejected", reason="superseded", user_id=claims["userId"])
                return None
        return AuthContext(user_id=claims["userId"], user_name=claims["userName"], token=token)
