"""Error taxonomy and exit codes for skillkeeper.

Every expected failure is classified by ``kind`` so that callers can
branch on it instead of on message text. Orchestrators convert these
exceptions into outcome objects; the CLI maps outcomes to exit codes.
"""

from __future__ import annotations

from enum import Enum, IntEnum
from pathlib import Path
from typing import Any, Optional


class SecurityReason(Enum):
    """Classified reason for a security violation."""

    PATH_TRAVERSAL = "path-traversal"
    SYMLINK_ESCAPE = "symlink-escape"
    HARD_LINK_DETECTED = "hard-link-detected"
    CONTAINMENT_VIOLATION = "containment-violation"
    CASE_MISMATCH = "case-mismatch"
    ZIP_BOMB = "zip-bomb"
    ZIP_ENTRY_ESCAPE = "zip-entry-escape"


class ExitCode(IntEnum):
    """Process exit codes for lifecycle commands."""

    SUCCESS = 0
    NOT_FOUND = 1
    FILESYSTEM_ERROR = 2
    CANCELLED = 3
    INVALID_PACKAGE = 4
    SECURITY_ERROR = 5
    ROLLED_BACK = 6
    ROLLBACK_FAILED = 7


# Exit codes used when a signal interrupts an operation
SIGINT_EXIT_CODE = 130
SIGTERM_EXIT_CODE = 143


class SkillKeeperError(Exception):
    """Base class for all skillkeeper errors."""

    kind = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {"kind": self.kind, "message": self.message}


class ValidationError(SkillKeeperError):
    """Raised when an input is malformed."""

    kind = "validation-error"

    def __init__(self, message: str, field: str = "input"):
        super().__init__(message)
        self.field = field

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["field"] = self.field
        return data


class NotFoundError(SkillKeeperError):
    """Raised when a skill or package does not exist."""

    kind = "not-found"

    def __init__(self, message: str, path: Optional[Path] = None):
        super().__init__(message)
        self.path = path


class FileSystemError(SkillKeeperError):
    """Raised when a filesystem operation fails."""

    kind = "filesystem-error"

    def __init__(self, operation: str, path: Path, message: str):
        super().__init__(f"{operation} failed for {path}: {message}")
        self.operation = operation
        self.path = Path(path)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["operation"] = self.operation
        data["path"] = str(self.path)
        return data


class PackageMismatchError(SkillKeeperError):
    """Raised when a package does not belong to the skill being updated."""

    kind = "package-mismatch"

    def __init__(self, expected: str, actual: Optional[str]):
        super().__init__(
            f"Package contains skill '{actual}' but '{expected}' is being updated"
        )
        self.expected = expected
        self.actual = actual


class SecurityViolation(SkillKeeperError):
    """Raised when a path or archive fails a security check."""

    kind = "security-violation"

    def __init__(
        self,
        reason: SecurityReason,
        message: str,
        path: Optional[str] = None,
    ):
        super().__init__(message)
        self.reason = reason
        self.path = path

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["reason"] = self.reason.value
        data["path"] = self.path
        return data


class LockContentionError(SkillKeeperError):
    """Raised when another operation holds the skill lock."""

    kind = "lock-contention"

    def __init__(
        self,
        lock_path: Path,
        holder_pid: Optional[int] = None,
        operation: Optional[str] = None,
        stale: bool = False,
    ):
        if stale:
            message = (
                f"Stale lock left by process {holder_pid} at {lock_path}. "
                "Use --force to clear it."
            )
        else:
            message = (
                f"Skill is locked by process {holder_pid} "
                f"({operation or 'unknown operation'}) at {lock_path}"
            )
        super().__init__(message)
        self.lock_path = lock_path
        self.holder_pid = holder_pid
        self.operation = operation
        self.stale = stale


class BackupError(SkillKeeperError):
    """Raised when a backup cannot be created or restored."""

    kind = "backup-failure"


class RollbackError(SkillKeeperError):
    """Raised when restoring a skill after a failed update fails."""

    kind = "rollback-failure"


class OperationTimeoutError(SkillKeeperError):
    """Raised when an operation exceeds its time budget."""

    kind = "timeout"

    def __init__(self, operation: str, timeout: float):
        super().__init__(f"{operation} timed out after {timeout:g}s")
        self.operation = operation
        self.timeout = timeout


class CancelledError(SkillKeeperError):
    """Raised when an operation is cancelled cooperatively."""

    kind = "cancelled"

    def __init__(self, reason: str = "interrupted"):
        super().__init__(f"Operation cancelled ({reason})")
        self.reason = reason


def exit_code_for_error(error: SkillKeeperError) -> ExitCode:
    """Map an error to the exit code a command should return."""
    if isinstance(error, NotFoundError):
        return ExitCode.NOT_FOUND
    if isinstance(error, SecurityViolation):
        return ExitCode.SECURITY_ERROR
    if isinstance(error, (ValidationError, PackageMismatchError)):
        return ExitCode.INVALID_PACKAGE
    if isinstance(error, CancelledError):
        return ExitCode.CANCELLED
    if isinstance(error, RollbackError):
        return ExitCode.ROLLBACK_FAILED
    return ExitCode.FILESYSTEM_ERROR


def exit_code_for(outcome: Any) -> ExitCode:
    """Map an error or an operation outcome to an exit code.

    Outcome objects carry their own ``exit_code``.
    """
    if isinstance(outcome, SkillKeeperError):
        return exit_code_for_error(outcome)
    return ExitCode(outcome.exit_code)
