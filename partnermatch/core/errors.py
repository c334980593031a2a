"""Error taxonomy and operation results for PartnerMatch.

Business-rule violations are returned as values rather than raised:
every coordinator, ranker and service operation returns an
``OperationResult`` carrying either a value or a ``MatchError``.
"""

import sqlite3
from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar

import structlog

log = structlog.get_logger()

T = TypeVar("T")


class ErrorCode(Enum):
    """Categories of failure for handling decisions."""

    INVALID_ARGUMENT = "invalid_argument"  # Malformed input - never retried
    NOT_FOUND = "not_found"  # Referenced team/user absent
    CONFLICT = "conflict"  # Invariant would be violated
    UNAUTHORIZED = "unauthorized"  # Privileged mutation by wrong user
    LOCK_TIMEOUT = "lock_timeout"  # Caller may retry
    SYSTEM_ERROR = "system_error"  # Persistence failure mid-mutation


class ConflictReason(Enum):
    """Which invariant a CONFLICT would have violated."""

    ALREADY_MEMBER = "already_member"
    TEAM_FULL = "team_full"
    TOO_MANY_MEMBERSHIPS = "too_many_memberships"
    TOO_MANY_OWNED_TEAMS = "too_many_owned_teams"
    TEAM_EXPIRED = "team_expired"
    PRIVATE_TEAM = "private_team"
    WRONG_SECRET = "wrong_secret"
    NOT_MEMBER = "not_member"


@dataclass
class MatchError:
    """A classified failure with handling metadata."""

    code: ErrorCode
    message: str
    reason: Optional[ConflictReason] = None
    original_exception: Optional[Exception] = None

    @property
    def retryable(self) -> bool:
        """Only lock timeouts are worth retrying, and only by the caller."""
        return self.code == ErrorCode.LOCK_TIMEOUT

    def __str__(self) -> str:
        """Human-readable error representation."""
        parts = [f"{self.code.value}: {self.message}"]
        if self.reason:
            parts.append(f"reason={self.reason.value}")
        return " | ".join(parts)


class OperationFailed(Exception):
    """Raised by ``OperationResult.unwrap`` for callers preferring exceptions."""

    def __init__(self, error: MatchError):
        super().__init__(str(error))
        self.error = error


@dataclass
class OperationResult(Generic[T]):
    """Result of a coordinator operation.

    Attributes:
        success: Whether the operation completed
        value: Operation output (None on failure)
        error: Classified error if failed
    """

    success: bool
    value: Optional[T] = None
    error: Optional[MatchError] = None

    @classmethod
    def ok(cls, value: Optional[T] = None) -> "OperationResult[T]":
        return cls(success=True, value=value)

    @classmethod
    def fail(cls, error: MatchError) -> "OperationResult[T]":
        return cls(success=False, error=error)

    @property
    def code(self) -> Optional[ErrorCode]:
        return self.error.code if self.error else None

    @property
    def reason(self) -> Optional[ConflictReason]:
        return self.error.reason if self.error else None

    def unwrap(self) -> T:
        """Return the value or raise ``OperationFailed``."""
        if not self.success:
            raise OperationFailed(self.error)
        return self.value


def invalid_argument(message: str) -> MatchError:
    return MatchError(code=ErrorCode.INVALID_ARGUMENT, message=message)


def not_found(message: str) -> MatchError:
    return MatchError(code=ErrorCode.NOT_FOUND, message=message)


def conflict(reason: ConflictReason, message: str) -> MatchError:
    return MatchError(code=ErrorCode.CONFLICT, message=message, reason=reason)


def unauthorized(message: str) -> MatchError:
    return MatchError(code=ErrorCode.UNAUTHORIZED, message=message)


def lock_timeout(lock_name: str) -> MatchError:
    return MatchError(
        code=ErrorCode.LOCK_TIMEOUT,
        message=f"Timed out waiting for lock {lock_name}",
    )


def system_error(
    error: Exception,
    operation: str,
    **context,
) -> MatchError:
    """Classify a persistence failure raised inside a mutation.

    The failure is logged with enough context to reconstruct the
    attempted state transition.

    Args:
        error: The exception raised by the store
        operation: Name of the attempted operation
        **context: Identifiers of the entities involved

    Returns:
        MatchError with code SYSTEM_ERROR
    """
    log.error(
        "operation_system_error",
        operation=operation,
        error=str(error),
        error_type=type(error).__name__,
        transient=is_transient_store_error(error),
        **context,
    )
    return MatchError(
        code=ErrorCode.SYSTEM_ERROR,
        message=f"{operation} failed: {error}",
        original_exception=error,
    )


class ConsistencyError(Exception):
    """A multi-step mutation observed a state it cannot continue from."""


# SQLite messages that indicate contention rather than a broken store
TRANSIENT_STORE_MESSAGES = [
    "database is locked",
    "database table is locked",
    "database is busy",
]


def is_transient_store_error(error: Exception) -> bool:
    """Check whether a store failure is likely contention.

    Args:
        error: Exception raised by the store

    Returns:
        True if the failure looks like lock contention on the database
    """
    if isinstance(error, sqlite3.OperationalError):
        msg = str(error).lower()
        return any(p in msg for p in TRANSIENT_STORE_MESSAGES)
    return isinstance(error, (TimeoutError, ConnectionError))
