"""Cache key namespaces owned by the session and RBAC core.

The exact strings are a format contract: guards and other consumers read
these keys directly.
"""

from __future__ import annotations


def captcha_key(ip: str, user_agent: str) -> str:
    return f"captcha:{ip}:{user_agent}"


def sso_key(user_id: str) -> str:
    return f"sso:{user_id}"


def blacklist_key(token: str) -> str:
    return f"blacklist:{token}"


def permissions_key(user_id: str) -> str:
    return f"permissions:{user_id}"
