"""Tests for the error taxonomy and operation results."""

import sqlite3

import pytest

from partnermatch.core.errors import (
    ConflictReason,
    ErrorCode,
    MatchError,
    OperationFailed,
    OperationResult,
    conflict,
    invalid_argument,
    is_transient_store_error,
    lock_timeout,
    not_found,
    system_error,
    unauthorized,
)


class TestMatchError:
    """Tests for MatchError."""

    def test_only_lock_timeout_retryable(self):
        for code in ErrorCode:
            error = MatchError(code=code, message="x")
            assert error.retryable == (code == ErrorCode.LOCK_TIMEOUT)

    def test_str_with_reason(self):
        error = conflict(ConflictReason.TEAM_FULL, "Team 3 is full")
        assert str(error) == "conflict: Team 3 is full | reason=team_full"

    def test_str_without_reason(self):
        assert str(not_found("missing")) == "not_found: missing"


class TestHelpers:
    def test_codes(self):
        assert invalid_argument("x").code == ErrorCode.INVALID_ARGUMENT
        assert not_found("x").code == ErrorCode.NOT_FOUND
        assert unauthorized("x").code == ErrorCode.UNAUTHORIZED
        assert conflict(ConflictReason.WRONG_SECRET, "x").reason == ConflictReason.WRONG_SECRET

    def test_lock_timeout_names_lock(self):
        error = lock_timeout("partnermatch:team:3")
        assert error.code == ErrorCode.LOCK_TIMEOUT
        assert "partnermatch:team:3" in error.message

    def test_system_error_keeps_cause(self):
        cause = RuntimeError("disk full")
        error = system_error(cause, "join_team", team_id=1, user_id=2)

        assert error.code == ErrorCode.SYSTEM_ERROR
        assert error.original_exception is cause
        assert "join_team" in error.message


class TestOperationResult:
    """Tests for OperationResult."""

    def test_ok(self):
        result = OperationResult.ok(5)

        assert result.success
        assert result.value == 5
        assert result.code is None
        assert result.unwrap() == 5

    def test_fail(self):
        result = OperationResult.fail(conflict(ConflictReason.ALREADY_MEMBER, "dup"))

        assert not result.success
        assert result.code == ErrorCode.CONFLICT
        assert result.reason == ConflictReason.ALREADY_MEMBER

    def test_unwrap_raises(self):
        error = not_found("gone")
        result = OperationResult.fail(error)

        with pytest.raises(OperationFailed) as exc_info:
            result.unwrap()

        assert exc_info.value.error is error


class TestTransientStoreErrors:
    @pytest.mark.parametrize(
        "error,expected",
        [
            (sqlite3.OperationalError("database is locked"), True),
            (sqlite3.OperationalError("no such table: teams"), False),
            (TimeoutError(), True),
            (ValueError("bad"), False),
        ],
    )
    def test_classification(self, error, expected):
        assert is_transient_store_error(error) == expected
