"""Backups of installed skills, taken before an update touches them.

A backup is an ordinary skill package (entries prefixed with the skill
name) stored under the backup directory as
``<skill>-YYYYMMDD-HHMMSS-<8 hex>.skill``.
"""

from __future__ import annotations

import logging
import os
import re
import secrets
import stat
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from skillkeeper.archive import PACKAGE_EXTENSION, create_package_archive, open_archive
from skillkeeper.config import get_config
from skillkeeper.errors import BackupError, SkillKeeperError
from skillkeeper.security import is_within

logger = logging.getLogger(__name__)

BACKUP_DIR_MODE = 0o700
BACKUP_FILE_MODE = 0o600

# Attempts at a fresh random suffix before falling back to counters
MAX_RANDOM_ATTEMPTS = 3
MAX_NUMERIC_SUFFIX = 100

BACKUP_NAME_RE = re.compile(
    r"^(?P<skill>.+)-(?P<date>\d{8})-(?P<time>\d{6})-(?P<token>[0-9a-f]{8})"
    r"(?:-(?P<counter>\d+))?\.skill$"
)


@dataclass
class BackupResult:
    """A backup that was written."""

    path: Path
    size: int
    file_count: int
    created_at: datetime


@dataclass
class BackupInfo:
    """A backup found on disk."""

    path: Path
    skill_name: str
    created_at: datetime
    size: int


def get_backup_dir(backup_dir: Optional[Path] = None) -> Path:
    """Backup directory to use, from the argument or configuration."""
    if backup_dir is not None:
        return Path(backup_dir)
    return get_config().get_backup_dir()


def ensure_backup_dir(backup_dir: Path) -> Path:
    """Create the backup directory with private permissions.

    Raises:
        BackupError: If the directory is a symlink or is not writable
    """
    backup_dir = Path(backup_dir)

    if backup_dir.is_symlink():
        raise BackupError(f"Backup directory is a symlink: {backup_dir}")

    try:
        backup_dir.mkdir(parents=True, exist_ok=True, mode=BACKUP_DIR_MODE)
        os.chmod(backup_dir, BACKUP_DIR_MODE)
    except OSError as e:
        raise BackupError(f"Cannot create backup directory {backup_dir}: {e}")

    probe = backup_dir / f".write-test-{secrets.token_hex(4)}"
    try:
        probe.write_bytes(b"")
        probe.unlink()
    except OSError as e:
        raise BackupError(f"Backup directory is not writable: {backup_dir} ({e})")

    return backup_dir


def generate_backup_filename(skill_name: str, now: Optional[datetime] = None) -> str:
    """Build a timestamped backup file name."""
    now = now or datetime.now()
    return f"{skill_name}-{now:%Y%m%d-%H%M%S}-{secrets.token_hex(4)}{PACKAGE_EXTENSION}"


def get_backup_path(skill_name: str, backup_dir: Path, now: Optional[datetime] = None) -> Path:
    """Choose a backup path that does not exist yet.

    Raises:
        BackupError: If no free name could be found
    """
    backup_dir = Path(backup_dir)
    name = generate_backup_filename(skill_name, now)

    for _ in range(MAX_RANDOM_ATTEMPTS):
        candidate = backup_dir / name
        if not os.path.lexists(candidate):
            return candidate
        name = generate_backup_filename(skill_name, now)

    stem = name[: -len(PACKAGE_EXTENSION)]
    for counter in range(1, MAX_NUMERIC_SUFFIX + 1):
        candidate = backup_dir / f"{stem}-{counter}{PACKAGE_EXTENSION}"
        if not os.path.lexists(candidate):
            return candidate

    raise BackupError(f"Could not find a free backup file name for {skill_name}")


def create_backup(
    skill_path: Path,
    skill_name: Optional[str] = None,
    backup_dir: Optional[Path] = None,
) -> BackupResult:
    """Archive a skill directory into the backup directory.

    The archive is closed and flushed to disk before this returns.

    Args:
        skill_path: Installed skill directory
        skill_name: Name used as the archive prefix (defaults to the directory name)
        backup_dir: Override the configured backup directory

    Returns:
        BackupResult

    Raises:
        BackupError: If the backup cannot be written
    """
    skill_path = Path(skill_path)
    skill_name = skill_name or skill_path.name
    backup_dir = ensure_backup_dir(get_backup_dir(backup_dir))
    path = get_backup_path(skill_name, backup_dir)

    if not is_within(backup_dir, path):
        raise BackupError(f"Backup path escapes the backup directory: {path}")

    try:
        file_count = create_package_archive(skill_path, path, skill_name, exclusions=[])
        os.chmod(path, BACKUP_FILE_MODE)
        size = path.stat().st_size
    except (SkillKeeperError, OSError) as e:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        raise BackupError(f"Failed to back up {skill_path}: {e}")

    logger.info("Backed up %s to %s (%d files)", skill_path, path, file_count)
    return BackupResult(path=path, size=size, file_count=file_count, created_at=datetime.now())


def get_backup_info(path: Path) -> Optional[BackupInfo]:
    """Parse a backup file name; None if it is not a backup."""
    path = Path(path)
    match = BACKUP_NAME_RE.match(path.name)
    if not match:
        return None

    try:
        created_at = datetime.strptime(match["date"] + match["time"], "%Y%m%d%H%M%S")
        size = path.stat().st_size
    except (ValueError, OSError):
        return None

    return BackupInfo(path=path, skill_name=match["skill"], created_at=created_at, size=size)


def list_backups(
    backup_dir: Optional[Path] = None,
    skill_name: Optional[str] = None,
) -> list[BackupInfo]:
    """List backups, newest first, optionally for one skill."""
    backup_dir = get_backup_dir(backup_dir)
    if not backup_dir.is_dir():
        return []

    backups = []
    for item in backup_dir.iterdir():
        if item.is_symlink() or not item.is_file():
            continue
        info = get_backup_info(item)
        if info is None:
            continue
        if skill_name and info.skill_name != skill_name:
            continue
        backups.append(info)

    return sorted(backups, key=lambda b: (b.created_at, b.path.name), reverse=True)


def cleanup_backup(path: Path, backup_dir: Optional[Path] = None) -> bool:
    """Delete a backup file.

    Only regular files inside the backup directory are removed.

    Returns:
        True if the file was deleted
    """
    path = Path(path)
    backup_dir = get_backup_dir(backup_dir)

    if not is_within(backup_dir, path):
        logger.warning("Refusing to delete %s: not in %s", path, backup_dir)
        return False

    try:
        st = os.lstat(path)
    except FileNotFoundError:
        return False

    if not stat.S_ISREG(st.st_mode):
        logger.warning("Refusing to delete %s: not a regular file", path)
        return False

    try:
        path.unlink()
    except OSError as e:
        logger.warning("Could not delete backup %s: %s", path, e)
        return False

    logger.debug("Removed backup %s", path)
    return True


def restore_from_backup(backup_path: Path, target_path: Path) -> int:
    """Extract a backup into target_path, which must not exist.

    Returns:
        Number of files restored

    Raises:
        BackupError: If the backup is unusable or extraction fails
    """
    target_path = Path(target_path)
    if os.path.lexists(target_path):
        raise BackupError(f"Cannot restore over existing path {target_path}")

    try:
        with open_archive(backup_path) as archive:
            root = archive.root_directory()
            written = archive.extract_all(target_path, strip_prefix=root)
    except SkillKeeperError as e:
        raise BackupError(f"Failed to restore {backup_path}: {e}")

    logger.info("Restored %s from %s", target_path, backup_path)
    return len(written)
