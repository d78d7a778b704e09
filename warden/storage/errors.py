from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class RoleDeleteOutcome(str, Enum):
    """Result of a guarded soft delete, decided inside one store transaction."""

    DELETED = "deleted"
    IN_USE = "in_use"
    NOT_FOUND = "not_found"


__all__ = ["ConstraintViolation", "RoleDeleteOutcome"]
