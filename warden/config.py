from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Any

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from warden.logging import get_logger

logger = get_logger(__name__)

_PRIVATE_KEY_FILE = ".jwt_private.pem"
_PUBLIC_KEY_FILE = ".jwt_public.pem"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session and RBAC core."""

    database_url: str = env_field("postgresql://localhost:5432/warden", "DATABASE_URL")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/warden", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle test wiring; allows running without Redis.",
    )
    jwt_private_key: str | None = env_field(
        None, "JWT_PRIVATE_KEY", description="PEM encoded RSA private key"
    )
    jwt_public_key: str | None = env_field(
        None, "JWT_PUBLIC_KEY", description="PEM encoded RSA public key"
    )
    jwt_expires_in: int = env_field(
        86400,
        "JWT_EXPIRES_IN",
        description="Session lifetime in seconds; also the TTL of the SSO mirror, blacklist and permission cache",
    )
    captcha_expires_in: int = env_field(120, "CAPTCHA_EXPIRES_IN")
    default_super_permission: str = env_field("*:*:*", "DEFAULT_SUPER_PERMISSION")
    default_role_name: str = env_field("admin", "DEFAULT_ROLE_NAME")
    default_user_name: str = env_field("admin", "DEFAULT_USER_NAME")
    sso_enforced: bool = env_field(
        True,
        "SSO_ENFORCED",
        description="Reject tokens that no longer match the per-user session mirror",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("jwt_expires_in", "captcha_expires_in")
    @classmethod
    def _positive_seconds(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("expiry must be a positive number of seconds")
        return value

    @field_validator("default_super_permission", "default_role_name", "default_user_name")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("must be set and non-empty")
        return value.strip()

    def is_default_administrator(self, user_name: str) -> bool:
        return user_name == self.default_user_name


def _generate_key_pair() -> tuple[str, str]:
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    return private_pem, public_pem


def _atomic_write(directory: Path, name: str, content: str) -> None:
    fd, tmp_path = tempfile.mkstemp(dir=str(directory), prefix=f"{name}_", suffix=".tmp")
    try:
        try:
            os.write(fd, content.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(directory / name))
    except Exception:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def resolve_signing_keys(settings: Settings) -> tuple[str, str]:
    """Return ``(private_pem, public_pem)`` for RS256 token signing.

    Explicit ``JWT_PRIVATE_KEY``/``JWT_PUBLIC_KEY`` win. Otherwise a key pair
    is persisted under ``SHARED_FS_ROOT`` so tokens stay valid across
    restarts; it is generated on first use.
    """
    if settings.jwt_private_key and settings.jwt_public_key:
        return settings.jwt_private_key, settings.jwt_public_key
    if settings.jwt_private_key or settings.jwt_public_key:
        raise RuntimeError("JWT_PRIVATE_KEY and JWT_PUBLIC_KEY must be set together")

    fs_root = Path(settings.shared_fs_root)
    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may already exist with different permissions (e.g., in container)
        pass

    private_path = fs_root / _PRIVATE_KEY_FILE
    public_path = fs_root / _PUBLIC_KEY_FILE
    if (
        private_path.exists()
        and public_path.exists()
        and not private_path.is_symlink()
        and not public_path.is_symlink()
    ):
        try:
            return private_path.read_text(), public_path.read_text()
        except OSError as exc:
            logger.error("jwt_key_read_failed", error=str(exc), path=str(fs_root))

    private_pem, public_pem = _generate_key_pair()
    try:
        _atomic_write(fs_root, _PRIVATE_KEY_FILE, private_pem)
        _atomic_write(fs_root, _PUBLIC_KEY_FILE, public_pem)
    except OSError as exc:
        logger.error("jwt_key_persist_failed", error=str(exc), path=str(fs_root))
        raise RuntimeError(
            "Unable to persist JWT key pair; set JWT_PRIVATE_KEY/JWT_PUBLIC_KEY or make SHARED_FS_ROOT writable"
        ) from exc
    logger.warning("jwt_key_pair_generated", path=str(fs_root))
    return private_pem, public_pem


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
