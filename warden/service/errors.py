from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for hard service failures mapped to HTTP responses.

    Expected business outcomes (bad captcha, name conflicts, guarded deletes)
    are returned as ``Err`` values and never raised. Subclasses pin a status
    and a stable ``error_code``.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


__all__ = ["ServiceError", "NotFoundError"]
