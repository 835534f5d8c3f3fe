"""Building blocks shared by install, update and uninstall.

These helpers raise ``SkillKeeperError`` subclasses; the orchestrators
turn them into outcome objects.
"""

from __future__ import annotations

import logging
import os
import secrets
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from skillkeeper.archive import SkillArchive, open_archive
from skillkeeper.config import ResourceLimits
from skillkeeper.errors import (
    FileSystemError,
    LockContentionError,
    NotFoundError,
    OperationTimeoutError,
    PackageMismatchError,
    RollbackError,
    SkillKeeperError,
    ValidationError,
)
from skillkeeper.frontmatter import SKILL_FILE, FrontmatterError, SkillMetadata, parse_metadata
from skillkeeper.lock import Operation, acquire_lock, clear_stale_lock
from skillkeeper.safe_delete import delete_skill
from skillkeeper.security import check_entries, check_zip_bomb
from skillkeeper.validator import check_skill_name, validate_skill_directory

logger = logging.getLogger(__name__)

# Asked before a stale lock is cleared or a change is applied
ConfirmCallback = Callable[[str], bool]

ASIDE_MARKER = ".skillkeeper-old-"


# =============================================================================
# Time budgets
# =============================================================================


class Deadline:
    """A time budget checked at phase boundaries."""

    def __init__(self, operation: str, timeout: Optional[float]):
        self.operation = operation
        self.timeout = timeout
        self._start = time.monotonic()

    @property
    def expired(self) -> bool:
        return self.timeout is not None and time.monotonic() - self._start > self.timeout

    def check(self) -> None:
        """Raise OperationTimeoutError once the budget is spent."""
        if self.expired:
            raise OperationTimeoutError(self.operation, self.timeout)


# =============================================================================
# Locking
# =============================================================================


def take_lock(
    scope_root: Path,
    skill_name: str,
    operation: Operation,
    package_path: Optional[Path] = None,
    force: bool = False,
    confirm: Optional[ConfirmCallback] = None,
) -> Path:
    """Acquire the skill lock, clearing a stale one if allowed.

    A stale lock is cleared only when force is set or confirm returns True.

    Returns:
        Path of the acquired lock

    Raises:
        LockContentionError: If the lock is held or a stale lock may not be cleared
    """
    result = acquire_lock(scope_root, skill_name, operation, package_path)
    if result.acquired:
        return result.lock_path

    holder = result.holder
    if result.stale:
        prompt = (
            f"A stale lock from process {holder.pid} ({holder.operation}) exists "
            f"for '{skill_name}'. Remove it and continue?"
        )
        if force or (confirm is not None and confirm(prompt)):
            clear_stale_lock(result.lock_path)
            result = acquire_lock(scope_root, skill_name, operation, package_path)
            if result.acquired:
                return result.lock_path
            holder = result.holder
        else:
            raise LockContentionError(
                result.lock_path, holder.pid, holder.operation, stale=True
            )

    raise LockContentionError(
        result.lock_path,
        holder.pid if holder else None,
        holder.operation if holder else None,
        stale=result.stale,
    )


# =============================================================================
# Package inspection
# =============================================================================


@dataclass
class PackageInspection:
    """A package that passed validation and security checks.

    Attributes:
        archive: Open archive (closed by close())
        root: Single top-level directory, or None if entries sit at the root
        skill_name: Name declared in the package's SKILL.md
        metadata: Parsed frontmatter metadata
        file_count: Number of file entries
        total_size: Sum of uncompressed file sizes
        warnings: Non-fatal validation findings
    """

    archive: SkillArchive
    root: Optional[str]
    skill_name: str
    metadata: SkillMetadata
    file_count: int
    total_size: int
    warnings: list[str]

    def __enter__(self) -> PackageInspection:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self.archive.close()


def check_package_file(package_path: Path) -> Path:
    """Check that the package exists and is a file.

    Raises:
        NotFoundError: If it does not exist
        ValidationError: If it is not a regular file
    """
    package_path = Path(package_path).expanduser()
    if not package_path.exists():
        raise NotFoundError(f"Package not found: {package_path}", package_path)
    if not package_path.is_file():
        raise ValidationError(f"Package is not a file: {package_path}", field="package")
    return package_path


def inspect_package(
    package_path: Path,
    security_base: Path,
    limits: ResourceLimits,
    force: bool = False,
    expected_name: Optional[str] = None,
) -> PackageInspection:
    """Open a package and run every pre-mutation check on it.

    Order: entry security (each name against security_base), zip-bomb
    thresholds, resource limits (skipped with force), structure, then the
    SKILL.md content, validated from a temporary extraction.

    Args:
        package_path: Package file
        security_base: Directory the entries are checked against
        limits: Resource limits and zip-bomb thresholds
        force: Accept packages over the size and count limits
        expected_name: Installed skill the package root must equal (update)

    Returns:
        PackageInspection (caller closes it)

    Raises:
        SecurityViolation, ValidationError, PackageMismatchError
    """
    package_path = check_package_file(package_path)
    archive = open_archive(package_path)

    try:
        check_entries(security_base, [e.name for e in archive.entries()])
        total_size = archive.total_uncompressed_size()
        check_zip_bomb(archive.archive_size, total_size, limits)

        file_count = len(archive.file_entries())
        if not force:
            if total_size > limits.max_total_size:
                raise ValidationError(
                    f"Package expands to {total_size} bytes, above the "
                    f"{limits.max_total_size} byte limit. Use --force to proceed.",
                    field="package",
                )
            if file_count > limits.max_file_count:
                raise ValidationError(
                    f"Package has {file_count} files, above the limit of "
                    f"{limits.max_file_count}. Use --force to proceed.",
                    field="package",
                )

        root = archive.root_directory()
        skill_md = f"{root}/{SKILL_FILE}" if root else SKILL_FILE
        if not archive.has_entry(skill_md):
            raise ValidationError(f"Package has no {skill_md}", field="package")

        try:
            metadata = parse_metadata(archive.read_text(skill_md))
        except (FrontmatterError, UnicodeDecodeError) as e:
            raise ValidationError(f"Invalid {SKILL_FILE} in package: {e}", field="package")

        name = metadata.name
        if not name:
            raise ValidationError(f"{SKILL_FILE} in package has no name", field="package")
        name_error = check_skill_name(name)
        if name_error:
            raise ValidationError(name_error, field="package")
        if root and root != name:
            raise ValidationError(
                f"Package directory '{root}' does not match skill name '{name}'",
                field="package",
            )
        if expected_name is not None:
            if root is None:
                raise ValidationError(
                    f"Package must contain a single top-level directory named '{expected_name}'",
                    field="package",
                )
            if root != expected_name:
                raise PackageMismatchError(expected_name, root)

        warnings = _validate_package_content(archive, root, name)
    except BaseException:
        archive.close()
        raise

    return PackageInspection(
        archive=archive,
        root=root,
        skill_name=name,
        metadata=metadata,
        file_count=file_count,
        total_size=total_size,
        warnings=warnings,
    )


def _validate_package_content(archive: SkillArchive, root: Optional[str], name: str) -> list[str]:
    with tempfile.TemporaryDirectory(prefix="skillkeeper-") as tmp:
        staging = Path(tmp) / name
        archive.extract_all(staging, strip_prefix=root)
        result = validate_skill_directory(staging)

    if not result.valid:
        raise ValidationError(
            "Package content is invalid: " + "; ".join(result.errors),
            field="package",
        )
    return result.warnings


# =============================================================================
# Rename-aside swap
# =============================================================================


def aside_path_for(skill_path: Path) -> Path:
    """A unique hidden sibling name for a skill moved out of the way."""
    skill_path = Path(skill_path)
    return skill_path.parent / f".{skill_path.name}{ASIDE_MARKER}{secrets.token_hex(4)}"


def move_aside(skill_path: Path) -> Path:
    """Rename a skill directory to a hidden sibling.

    Raises:
        FileSystemError: If the rename fails (nothing has changed)
    """
    aside = aside_path_for(skill_path)
    try:
        os.rename(skill_path, aside)
    except OSError as e:
        raise FileSystemError("rename", skill_path, str(e))
    logger.debug("Moved %s aside to %s", skill_path, aside)
    return aside


def remove_tree(path: Path) -> None:
    """Delete a directory tree with the safe deletion engine.

    Raises:
        FileSystemError: If anything was left behind
    """
    if not os.path.lexists(path):
        return
    summary = delete_skill(path)
    if not summary.skill_directory_deleted:
        detail = "; ".join(summary.error_messages) or "directory could not be removed"
        raise FileSystemError("delete", path, detail)


def verify_extraction(skill_path: Path, written: list[Path]) -> list[str]:
    """Check a freshly extracted skill before it is committed.

    Returns:
        Validation warnings

    Raises:
        FileSystemError: If SKILL.md or any extracted file is missing
        ValidationError: If the extracted skill does not validate
    """
    skill_path = Path(skill_path)
    if not (skill_path / SKILL_FILE).is_file():
        raise FileSystemError("extract", skill_path, f"{SKILL_FILE} missing after extraction")

    missing = [p for p in written if not p.is_file()]
    if missing:
        raise FileSystemError(
            "extract", skill_path, f"{len(missing)} extracted file(s) missing, e.g. {missing[0]}"
        )

    result = validate_skill_directory(skill_path)
    if not result.valid:
        raise ValidationError(
            "Installed skill is invalid: " + "; ".join(result.errors), field="package"
        )
    return result.warnings


def restore_aside(aside: Path, skill_path: Path) -> None:
    """Put a moved-aside skill back, discarding whatever is at skill_path.

    Raises:
        RollbackError: If the original directory cannot be put back
    """
    try:
        remove_tree(skill_path)
        os.rename(aside, skill_path)
    except (SkillKeeperError, OSError) as e:
        raise RollbackError(f"Could not restore {skill_path} from {aside}: {e}")
    logger.info("Restored %s", skill_path)
