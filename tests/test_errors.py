"""Tests for error classification, exit codes and cancellation."""

from pathlib import Path

import pytest

from skillkeeper.cancellation import CancellationToken, raise_if_cancelled
from skillkeeper.errors import (
    CancelledError,
    ExitCode,
    FileSystemError,
    LockContentionError,
    NotFoundError,
    PackageMismatchError,
    RollbackError,
    SecurityReason,
    SecurityViolation,
    ValidationError,
    exit_code_for,
)


class TestExitCodes:
    """Tests for exit_code_for function."""

    def test_error_mapping(self):
        """Each error kind maps to its exit code."""
        assert exit_code_for(NotFoundError("x")) == ExitCode.NOT_FOUND
        assert exit_code_for(FileSystemError("write", Path("x"), "boom")) == ExitCode.FILESYSTEM_ERROR
        assert exit_code_for(ValidationError("x")) == ExitCode.INVALID_PACKAGE
        assert exit_code_for(PackageMismatchError("foo", "bar")) == ExitCode.INVALID_PACKAGE
        assert exit_code_for(CancelledError()) == ExitCode.CANCELLED
        assert exit_code_for(RollbackError("x")) == ExitCode.ROLLBACK_FAILED
        assert (
            exit_code_for(SecurityViolation(SecurityReason.ZIP_BOMB, "x"))
            == ExitCode.SECURITY_ERROR
        )

    def test_lock_contention_is_filesystem_error(self):
        """Lock contention exits like other filesystem problems."""
        error = LockContentionError(Path("/s/.lock-foo"), 42, "update")
        assert exit_code_for(error) == ExitCode.FILESYSTEM_ERROR
        assert "42" in str(error)

    def test_to_dict_has_kind(self):
        """Serialized errors carry their kind."""
        data = SecurityViolation(SecurityReason.PATH_TRAVERSAL, "x").to_dict()
        assert data["kind"] == "security-violation"


class TestCancellationToken:
    """Tests for CancellationToken class."""

    def test_initial_state(self):
        """A new token is not cancelled."""
        token = CancellationToken()
        assert not token.cancelled
        token.raise_if_cancelled()

    def test_first_reason_kept(self):
        """Later cancellations do not overwrite the first reason."""
        token = CancellationToken()
        token.cancel("timeout")
        token.cancel("interrupted", 130)

        assert token.cancelled
        assert token.reason == "timeout"
        assert token.exit_code is None

    def test_raise_if_cancelled(self):
        """A cancelled token raises CancelledError."""
        token = CancellationToken()
        token.cancel("stop")
        with pytest.raises(CancelledError):
            raise_if_cancelled(token)

    def test_optional_token(self):
        """A missing token never raises."""
        raise_if_cancelled(None)
