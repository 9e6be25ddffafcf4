"""Structured results returned by user-facing operations."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class Rejection(str, Enum):
    """Reasons an operation was refused without touching the store."""

    UNKNOWN_USER = "unknown_user"
    SELF_REFERENCE = "self_reference"
    ALREADY_FRIENDS = "already_friends"
    DUPLICATE_REQUEST = "duplicate_request"
    ALREADY_EXISTS = "already_exists"
    NOT_FOUND = "not_found"
    INVALID_INPUT = "invalid_input"
    BAD_CREDENTIALS = "bad_credentials"

    @property
    def already_in_state(self) -> bool:
        return self in (Rejection.ALREADY_FRIENDS, Rejection.DUPLICATE_REQUEST)


@dataclass(slots=True)
class Outcome:
    """Success flag plus a human readable message.

    Callers branch on ``ok`` (or the truthiness of the outcome); ``code`` names
    the rejection when ``ok`` is false.
    """

    ok: bool
    msg: str = ""
    code: Rejection | None = None
    data: Any = None

    def __bool__(self) -> bool:
        return self.ok

    @classmethod
    def success(cls, msg: str = "", data: Any = None) -> "Outcome":
        return cls(ok=True, msg=msg, data=data)

    @classmethod
    def reject(cls, code: Rejection, msg: str) -> "Outcome":
        return cls(ok=False, msg=msg, code=code)
