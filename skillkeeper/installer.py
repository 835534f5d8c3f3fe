"""Install a skill package into a scope.

The package is checked completely (entry paths, zip-bomb thresholds,
structure, SKILL.md) before anything is written. Replacing an existing
skill uses the same rename-aside swap as an update, so a failed install
leaves the scope as it was.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

from skillkeeper.audit import AuditEventType, log_event
from skillkeeper.cancellation import CancellationToken, raise_if_cancelled
from skillkeeper.comparator import VersionComparison, compare_versions
from skillkeeper.config import ResourceLimits, get_config
from skillkeeper.discovery import discover_skill
from skillkeeper.errors import (
    CancelledError,
    ExitCode,
    FileSystemError,
    RollbackError,
    SecurityReason,
    SecurityViolation,
    SkillKeeperError,
    exit_code_for_error,
)
from skillkeeper.lifecycle import (
    ConfirmCallback,
    PackageInspection,
    inspect_package,
    move_aside,
    remove_tree,
    restore_aside,
    take_lock,
    verify_extraction,
)
from skillkeeper.lock import release_lock
from skillkeeper.scope import ScopeInfo, resolve_scope
from skillkeeper.security import check_symlink_safety

logger = logging.getLogger(__name__)


# =============================================================================
# Outcomes
# =============================================================================


@dataclass
class InstallSuccess:
    """The skill was installed."""

    skill_name: str
    skill_path: Path
    file_count: int
    size: int
    was_overwritten: bool = False
    warnings: list[str] = field(default_factory=list)

    status = "success"
    exit_code = ExitCode.SUCCESS


@dataclass
class InstallDryRunPreview:
    """What an install would do; nothing was written."""

    skill_name: str
    skill_path: Path
    file_count: int
    size: int
    would_overwrite: bool = False
    comparison: Optional[VersionComparison] = None

    status = "dry-run-preview"
    exit_code = ExitCode.SUCCESS


@dataclass
class InstallOverwriteRequired:
    """The skill already exists and force was not given."""

    skill_name: str
    skill_path: Path
    comparison: Optional[VersionComparison] = None

    status = "overwrite-required"
    exit_code = ExitCode.FILESYSTEM_ERROR


@dataclass
class InstallFailed:
    """The install did not happen; the scope is unchanged."""

    error: SkillKeeperError
    skill_name: Optional[str] = None

    status = "failed"

    @property
    def exit_code(self) -> ExitCode:
        return exit_code_for_error(self.error)


@dataclass
class InstallCancelled:
    """The install was cancelled; anything written was removed."""

    reason: str
    skill_name: Optional[str] = None
    cleanup_performed: bool = False

    status = "cancelled"
    exit_code = ExitCode.CANCELLED


InstallOutcome = Union[
    InstallSuccess,
    InstallDryRunPreview,
    InstallOverwriteRequired,
    InstallFailed,
    InstallCancelled,
]


# =============================================================================
# Install
# =============================================================================


def install_skill(
    package_path: Path,
    scope: str = "project",
    force: bool = False,
    dry_run: bool = False,
    cwd: Optional[Path] = None,
    home: Optional[Path] = None,
    confirm: Optional[ConfirmCallback] = None,
    token: Optional[CancellationToken] = None,
    limits: Optional[ResourceLimits] = None,
) -> InstallOutcome:
    """Install a .skill package.

    Args:
        package_path: Package to install
        scope: "project", "personal" or a directory path
        force: Overwrite an existing skill, accept oversized packages and
            clear a stale lock
        dry_run: Report what would happen without writing anything
        cwd: Project directory for the project scope
        home: Home directory for the personal scope
        confirm: Asked before a stale lock is cleared
        token: Cancellation token
        limits: Resource limits (defaults to configuration)

    Returns:
        One of the install outcome objects
    """
    limits = limits or get_config().limits

    try:
        raise_if_cancelled(token)
        scope_info = resolve_scope(scope, cwd=cwd, home=home)
        inspection = inspect_package(package_path, scope_info.path, limits, force=force)
    except CancelledError as e:
        return InstallCancelled(reason=e.reason)
    except SkillKeeperError as e:
        logger.debug("Install of %s rejected: %s", package_path, e)
        log_event(AuditEventType.INSTALL_FAILED, "", {"package": str(package_path), "error": e.to_dict()})
        return InstallFailed(error=e)

    with inspection:
        outcome = _install_inspected(
            inspection, Path(package_path), scope_info, force, dry_run, confirm, token
        )

    _audit(outcome, package_path)
    return outcome


def _find_existing(
    inspection: PackageInspection, scope_info: ScopeInfo
) -> tuple[bool, Optional[VersionComparison]]:
    """Whether the skill is already installed, and how it differs from the package.

    Raises:
        SecurityViolation: On a case-only name clash or an escaping symlink
        FileSystemError: If something other than a skill is in the way
    """
    name = inspection.skill_name
    target = scope_info.path / name

    lookup = discover_skill(scope_info.path, name)
    if lookup.status == "case-mismatch":
        raise SecurityViolation(
            SecurityReason.CASE_MISMATCH,
            f"'{lookup.actual_name}' already exists in {scope_info.label} and differs "
            f"from '{name}' only by case",
            path=str(lookup.path),
        )
    if os.path.lexists(target) and not lookup.found:
        raise FileSystemError("extract", target, "path exists and is not a skill directory")

    if not lookup.found:
        return False, None
    check_symlink_safety(target, scope_info.path)
    return True, compare_versions(target, inspection.archive)


def _install_inspected(
    inspection: PackageInspection,
    package_path: Path,
    scope_info: ScopeInfo,
    force: bool,
    dry_run: bool,
    confirm: Optional[ConfirmCallback],
    token: Optional[CancellationToken],
) -> InstallOutcome:
    name = inspection.skill_name
    target = scope_info.path / name

    try:
        exists, comparison = _find_existing(inspection, scope_info)
    except SkillKeeperError as e:
        return InstallFailed(error=e, skill_name=name)

    if exists and not force:
        return InstallOverwriteRequired(skill_name=name, skill_path=target, comparison=comparison)

    if dry_run:
        return InstallDryRunPreview(
            skill_name=name,
            skill_path=target,
            file_count=inspection.file_count,
            size=inspection.total_size,
            would_overwrite=exists,
            comparison=comparison,
        )

    try:
        raise_if_cancelled(token)
        scope_info.path.mkdir(parents=True, exist_ok=True)
        lock_path = take_lock(scope_info.path, name, "install", package_path, force, confirm)
    except CancelledError as e:
        return InstallCancelled(reason=e.reason, skill_name=name)
    except OSError as e:
        return InstallFailed(error=FileSystemError("mkdir", scope_info.path, str(e)), skill_name=name)
    except SkillKeeperError as e:
        return InstallFailed(error=e, skill_name=name)

    try:
        # Another process may have installed or removed the skill before the lock was ours
        try:
            exists, comparison = _find_existing(inspection, scope_info)
        except SkillKeeperError as e:
            return InstallFailed(error=e, skill_name=name)
        if exists and not force:
            logger.info("%s was installed by another process", name)
            return InstallOverwriteRequired(skill_name=name, skill_path=target, comparison=comparison)
        return _extract(inspection, target, exists, token)
    finally:
        release_lock(lock_path)


def _extract(
    inspection: PackageInspection,
    target: Path,
    exists: bool,
    token: Optional[CancellationToken],
) -> InstallOutcome:
    name = inspection.skill_name
    aside = None
    created = False

    try:
        if exists:
            aside = move_aside(target)
        created = not os.path.lexists(target)
        written = inspection.archive.extract_all(target, strip_prefix=inspection.root, token=token)
        warnings = verify_extraction(target, written)
    except SkillKeeperError as e:
        logger.warning("Install of %s failed, cleaning up: %s", name, e)
        try:
            if aside is not None:
                restore_aside(aside, target)
            elif created:
                remove_tree(target)
        except SkillKeeperError as cleanup_error:
            logger.error("Could not clean up %s: %s", target, cleanup_error)
            return InstallFailed(
                error=RollbackError(f"{e.message}; cleanup failed: {cleanup_error.message}"),
                skill_name=name,
            )
        if isinstance(e, CancelledError):
            return InstallCancelled(reason=e.reason, skill_name=name, cleanup_performed=True)
        return InstallFailed(error=e, skill_name=name)

    if aside is not None:
        try:
            remove_tree(aside)
        except SkillKeeperError as e:
            logger.warning("Previous version left at %s: %s", aside, e)

    logger.info("Installed %s to %s", name, target)
    return InstallSuccess(
        skill_name=name,
        skill_path=target,
        file_count=len(written),
        size=inspection.total_size,
        was_overwritten=exists,
        warnings=inspection.warnings + [w for w in warnings if w not in inspection.warnings],
    )


def _audit(outcome: InstallOutcome, package_path: Path) -> None:
    if isinstance(outcome, InstallSuccess):
        log_event(
            AuditEventType.INSTALLED,
            outcome.skill_name,
            {
                "package": str(package_path),
                "path": str(outcome.skill_path),
                "file_count": outcome.file_count,
                "overwritten": outcome.was_overwritten,
            },
        )
    elif isinstance(outcome, InstallFailed):
        log_event(
            AuditEventType.INSTALL_FAILED,
            outcome.skill_name or "",
            {"package": str(package_path), "error": outcome.error.to_dict()},
        )
    elif isinstance(outcome, InstallCancelled):
        log_event(
            AuditEventType.CANCELLED,
            outcome.skill_name or "",
            {"operation": "install", "reason": outcome.reason},
        )
