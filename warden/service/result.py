"""Tagged results for expected business failures.

Login rejections, name conflicts and guarded deletes are routine outcomes, so
they travel as ``Err`` values instead of exceptions. Transport status codes
are assigned only at the API boundary.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar, Union

T = TypeVar("T")


class ErrorKind(str, Enum):
    CAPTCHA_INVALID = "captcha_invalid"
    USER_NAME_INVALID = "user_name_invalid"
    PASSWORD_INVALID = "password_invalid"
    CONFLICT = "conflict"
    NOT_ACCEPTABLE = "not_acceptable"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    kind: ErrorKind
    message: str

    @property
    def ok(self) -> bool:
        return False


Result = Union[Ok[T], Err]


__all__ = ["ErrorKind", "Ok", "Err", "Result"]
