# appblock/errors.py
"""
Typed errors raised by the rule engine.

The engine never speaks HTTP: every error carries a stable ``ErrorCode`` and
the front door (appblock.api.problems) maps codes to status codes.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

__all__ = [
    "ErrorCode",
    "RemoteErrorKind",
    "RemoteError",
    "AppBlockError",
    "RuleValidationError",
    "InvalidApps",
    "MissingField",
    "NotAuthenticated",
    "RemoteRejected",
    "DuplicateRuleId",
    "RuleNotFound",
    "PersistenceError",
]


class ErrorCode(str, Enum):
    VALIDATION_ERROR = "validation_error"
    NOT_AUTHENTICATED = "not_authenticated"
    REMOTE_REJECTED = "remote_rejected"
    DUPLICATE_ID = "duplicate_id"
    NOT_FOUND = "not_found"
    PERSISTENCE_ERROR = "persistence_error"


class RemoteErrorKind(str, Enum):
    CLIENT_ERROR = "client_error"
    SERVER_ERROR = "server_error"
    TRANSPORT = "transport"
    TIMEOUT = "timeout"


@dataclass(eq=False)
class RemoteError(Exception):
    """Failure reported by the remote controller or the transport to it."""

    kind: RemoteErrorKind
    message: str
    status: Optional[int] = None

    def __str__(self) -> str:
        if self.status is not None:
            return f"{self.kind.value} ({self.status}): {self.message}"
        return f"{self.kind.value}: {self.message}"

    @classmethod
    def from_status(cls, status: int, message: str) -> "RemoteError":
        kind = RemoteErrorKind.CLIENT_ERROR if 400 <= status < 500 else RemoteErrorKind.SERVER_ERROR
        return cls(kind=kind, message=message, status=status)


class AppBlockError(Exception):
    """Base class for controlled engine errors."""

    code: ErrorCode = ErrorCode.VALIDATION_ERROR

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class RuleValidationError(AppBlockError):
    code = ErrorCode.VALIDATION_ERROR


class InvalidApps(RuleValidationError):
    def __init__(self, apps: List[str]) -> None:
        super().__init__(f"no known application in {apps!r}")
        self.apps = list(apps)


class MissingField(RuleValidationError):
    def __init__(self, field: str, rule_type: str) -> None:
        super().__init__(f"rule_type '{rule_type}' requires '{field}'")
        self.field = field
        self.rule_type = rule_type


class NotAuthenticated(AppBlockError):
    code = ErrorCode.NOT_AUTHENTICATED

    def __init__(self, detail: str = "not logged in to the controller") -> None:
        super().__init__(detail)


class RemoteRejected(AppBlockError):
    code = ErrorCode.REMOTE_REJECTED

    def __init__(self, error: RemoteError, operation: str) -> None:
        super().__init__(f"controller rejected {operation}: {error}")
        self.error = error
        self.operation = operation


class DuplicateRuleId(AppBlockError):
    code = ErrorCode.DUPLICATE_ID

    def __init__(self, rule_id: str) -> None:
        super().__init__(f"rule '{rule_id}' already exists")
        self.rule_id = rule_id


class RuleNotFound(AppBlockError):
    code = ErrorCode.NOT_FOUND

    def __init__(self, rule_id: str) -> None:
        super().__init__(f"rule '{rule_id}' not found")
        self.rule_id = rule_id


class PersistenceError(AppBlockError):
    code = ErrorCode.PERSISTENCE_ERROR

    def __init__(self, path: str, cause: BaseException) -> None:
        super().__init__(f"failed to write rule store {path}: {cause}")
        self.path = path
        self.cause = cause
