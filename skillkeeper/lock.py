"""Advisory per-skill lock files.

A lock is a small JSON file at ``<scope-root>/.lock-<skill>`` created with
O_CREAT | O_EXCL, so two processes can never both believe they hold it.
A lock whose owner is no longer running is reported as stale, but only an
explicit ``clear_stale_lock`` call removes it.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Literal, Optional

import psutil

from skillkeeper.errors import SkillKeeperError

logger = logging.getLogger(__name__)

LOCK_PREFIX = ".lock-"

Operation = Literal["install", "update", "uninstall"]


class LockFileError(SkillKeeperError):
    """Raised when a lock file cannot be written or parsed."""

    kind = "filesystem-error"


@dataclass
class LockInfo:
    """Contents of a lock file."""

    pid: int
    timestamp: str
    operation: str
    skill_path: Optional[str] = None
    package_path: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "pid": self.pid,
            "timestamp": self.timestamp,
            "operationType": self.operation,
            "skillPath": self.skill_path,
            "packagePath": self.package_path,
        }

    @classmethod
    def from_dict(cls, data: dict) -> LockInfo:
        """Create from dictionary."""
        return cls(
            pid=int(data["pid"]),
            timestamp=str(data.get("timestamp", "")),
            operation=str(data.get("operationType", "unknown")),
            skill_path=data.get("skillPath"),
            package_path=data.get("packagePath"),
        )


@dataclass
class LockAcquisitionResult:
    """Outcome of trying to take a lock.

    Attributes:
        acquired: Whether this process now holds the lock
        lock_path: Path of the lock file
        holder: Existing lock contents when not acquired (None if unreadable)
        holder_alive: Whether the holder's process is running
    """

    acquired: bool
    lock_path: Path
    holder: Optional[LockInfo] = None
    holder_alive: bool = False

    @property
    def stale(self) -> bool:
        """True when another lock exists and its owner is gone."""
        return not self.acquired and self.holder is not None and not self.holder_alive


def get_lock_path(scope_root: Path, skill_name: str) -> Path:
    """Path of the lock guarding skill_name within scope_root."""
    return Path(scope_root) / f"{LOCK_PREFIX}{skill_name}"


def is_process_alive(pid: int) -> bool:
    """Check whether a process with this PID is running.

    A PID that cannot be probed is assumed to be alive, so an
    undeterminable lock is never treated as stale.
    """
    if pid <= 0:
        return False
    try:
        return psutil.pid_exists(pid)
    except (psutil.Error, OSError) as e:
        logger.debug("Could not probe pid %d: %s", pid, e)
        return True


def read_lock(lock_path: Path) -> Optional[LockInfo]:
    """Read a lock file.

    Returns:
        LockInfo, or None if the lock does not exist

    Raises:
        LockFileError: If the lock exists but cannot be parsed
    """
    try:
        content = Path(lock_path).read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as e:
        raise LockFileError(f"Cannot read lock file {lock_path}: {e}")

    try:
        return LockInfo.from_dict(json.loads(content))
    except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
        raise LockFileError(f"Invalid lock file {lock_path}: {e}")


def acquire_lock(
    scope_root: Path,
    skill_name: str,
    operation: Operation,
    package_path: Optional[Path] = None,
) -> LockAcquisitionResult:
    """Try to take the lock for a skill.

    Never waits and never removes an existing lock.

    Args:
        scope_root: Directory containing the skill
        skill_name: Skill directory name
        operation: Operation recorded in the lock
        package_path: Package being applied, if any

    Returns:
        LockAcquisitionResult describing the holder when not acquired

    Raises:
        LockFileError: If the lock cannot be created for a reason other
            than already existing
    """
    scope_root = Path(scope_root)
    lock_path = get_lock_path(scope_root, skill_name)
    info = LockInfo(
        pid=os.getpid(),
        timestamp=datetime.now().isoformat(),
        operation=operation,
        skill_path=str(scope_root / skill_name),
        package_path=str(package_path) if package_path else None,
    )

    try:
        scope_root.mkdir(parents=True, exist_ok=True)
        fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
    except FileExistsError:
        return _describe_existing(lock_path)
    except OSError as e:
        raise LockFileError(f"Cannot create lock file {lock_path}: {e}")

    try:
        try:
            os.write(fd, json.dumps(info.to_dict()).encode("utf-8"))
        finally:
            os.close(fd)
    except OSError as e:
        # Never leave an empty lock behind
        try:
            os.unlink(lock_path)
        except OSError as unlink_error:
            logger.error("Cannot remove incomplete lock file %s: %s", lock_path, unlink_error)
        raise LockFileError(f"Cannot write lock file {lock_path}: {e}")

    logger.debug("Acquired %s lock %s", operation, lock_path)
    return LockAcquisitionResult(acquired=True, lock_path=lock_path, holder=info, holder_alive=True)


def _describe_existing(lock_path: Path) -> LockAcquisitionResult:
    try:
        holder = read_lock(lock_path)
    except LockFileError as e:
        # Unparseable lock: owner unknown, treat as held
        logger.warning("%s", e)
        return LockAcquisitionResult(acquired=False, lock_path=lock_path, holder_alive=True)

    if holder is None:
        # Released between our create attempt and the read
        return LockAcquisitionResult(acquired=False, lock_path=lock_path, holder_alive=True)

    alive = is_process_alive(holder.pid)
    if not alive:
        logger.warning("Lock %s is stale (pid %d is not running)", lock_path, holder.pid)
    return LockAcquisitionResult(
        acquired=False, lock_path=lock_path, holder=holder, holder_alive=alive
    )


def release_lock(lock_path: Path) -> None:
    """Remove a lock file. Releasing a missing lock is a no-op."""
    try:
        Path(lock_path).unlink()
        logger.debug("Released lock %s", lock_path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Could not remove lock %s: %s", lock_path, e)


def clear_stale_lock(lock_path: Path) -> bool:
    """Remove a lock only if its owner is no longer running.

    Returns:
        True if a stale lock was removed
    """
    try:
        holder = read_lock(lock_path)
    except LockFileError:
        return False

    if holder is None or is_process_alive(holder.pid):
        return False

    release_lock(lock_path)
    logger.info("Cleared stale lock %s left by pid %d", lock_path, holder.pid)
    return True
