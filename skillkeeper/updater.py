"""Transactional update of an installed skill.

An update moves through a fixed sequence of phases::

    validation -> discovery -> package-validation -> security-check ->
    comparison -> backup -> confirmation -> execution ->
    post-validation -> cleanup

Everything up to and including confirmation is read-only apart from the
backup. Execution renames the installed skill aside and extracts the
package in its place; a failure from that point on restores the
renamed-aside directory (or, failing that, the backup). A rollback that
itself fails is reported as its own outcome with recovery instructions.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional, Union

from skillkeeper.audit import AuditEventType, log_event
from skillkeeper.backup import (
    cleanup_backup,
    create_backup,
    get_backup_dir,
    get_backup_path,
    restore_from_backup,
)
from skillkeeper.cancellation import CancellationToken, raise_if_cancelled
from skillkeeper.comparator import (
    VersionComparison,
    VersionInfo,
    compare_versions,
    detect_downgrade,
    get_installed_version_info,
    get_package_version_info,
    summarize_changes,
)
from skillkeeper.config import ResourceLimits, get_config
from skillkeeper.discovery import discover_skill
from skillkeeper.enumerator import check_resource_limits, get_skill_summary
from skillkeeper.errors import (
    CancelledError,
    ExitCode,
    NotFoundError,
    RollbackError,
    SecurityReason,
    SecurityViolation,
    SkillKeeperError,
    ValidationError,
    exit_code_for_error,
)
from skillkeeper.lifecycle import (
    ConfirmCallback,
    Deadline,
    PackageInspection,
    check_package_file,
    inspect_package,
    move_aside,
    remove_tree,
    restore_aside,
    take_lock,
    verify_extraction,
)
from skillkeeper.lock import release_lock
from skillkeeper.scope import resolve_scope
from skillkeeper.security import check_symlink_safety, find_escaping_symlinks, require_no_hard_links
from skillkeeper.validator import validate_skill_name

logger = logging.getLogger(__name__)


class UpdatePhase(Enum):
    """Phases of an update, in order."""

    VALIDATION = "validation"
    DISCOVERY = "discovery"
    PACKAGE_VALIDATION = "package-validation"
    SECURITY_CHECK = "security-check"
    COMPARISON = "comparison"
    BACKUP = "backup"
    CONFIRMATION = "confirmation"
    EXECUTION = "execution"
    POST_VALIDATION = "post-validation"
    CLEANUP = "cleanup"


# Phases after which the installed skill may have been modified
MUTATING_PHASES = frozenset({UpdatePhase.EXECUTION, UpdatePhase.POST_VALIDATION})


@dataclass
class UpdateState:
    """How far an update has progressed.

    Attributes:
        phase: Current phase
        history: Phases entered so far, with the time each began
        skill_path: Installed skill being updated
        aside_path: Where the installed skill was moved during execution
        backup_path: Backup written in the backup phase
        lock_path: Lock held by this update
    """

    phase: UpdatePhase = UpdatePhase.VALIDATION
    history: list[tuple[UpdatePhase, datetime]] = field(default_factory=list)
    skill_path: Optional[Path] = None
    aside_path: Optional[Path] = None
    backup_path: Optional[Path] = None
    lock_path: Optional[Path] = None

    def enter(self, phase: UpdatePhase) -> None:
        self.phase = phase
        self.history.append((phase, datetime.now()))
        logger.debug("Update phase: %s", phase.value)

    @property
    def mutated(self) -> bool:
        """Whether the installed skill may have been changed."""
        return self.phase in MUTATING_PHASES and self.aside_path is not None

    def phases(self) -> list[str]:
        return [phase.value for phase, _ in self.history]


# =============================================================================
# Outcomes
# =============================================================================


@dataclass
class UpdateSuccess:
    """The update was committed."""

    skill_name: str
    skill_path: Path
    previous_file_count: int
    previous_size: int
    current_file_count: int
    current_size: int
    backup_path: Optional[Path] = None
    backup_removed: bool = False
    warnings: list[str] = field(default_factory=list)

    status = "success"
    exit_code = ExitCode.SUCCESS


@dataclass
class UpdateDryRunPreview:
    """What an update would change; nothing was written."""

    skill_name: str
    skill_path: Path
    current_version: VersionInfo
    new_version: VersionInfo
    comparison: VersionComparison
    backup_path: Optional[Path] = None
    warnings: list[str] = field(default_factory=list)

    status = "dry-run-preview"
    exit_code = ExitCode.SUCCESS


@dataclass
class UpdateRolledBack:
    """The update failed and the previous version was restored."""

    skill_name: str
    skill_path: Path
    failure_reason: str
    backup_path: Optional[Path] = None

    status = "rolled-back"
    exit_code = ExitCode.ROLLED_BACK


@dataclass
class UpdateRollbackFailed:
    """The update failed and the previous version could not be restored."""

    skill_name: str
    skill_path: Path
    update_failure_reason: str
    rollback_failure_reason: str
    backup_path: Optional[Path] = None
    recovery_instructions: list[str] = field(default_factory=list)

    status = "rollback-failed"
    exit_code = ExitCode.ROLLBACK_FAILED


@dataclass
class UpdateCancelled:
    """The update was cancelled before it was committed."""

    skill_name: str
    reason: str
    cleanup_performed: bool = False

    status = "cancelled"
    exit_code = ExitCode.CANCELLED


@dataclass
class UpdateFailed:
    """The update was rejected before anything was changed."""

    skill_name: str
    error: SkillKeeperError
    phase: UpdatePhase = UpdatePhase.VALIDATION

    status = "failed"

    @property
    def exit_code(self) -> ExitCode:
        return exit_code_for_error(self.error)


UpdateOutcome = Union[
    UpdateSuccess,
    UpdateDryRunPreview,
    UpdateRolledBack,
    UpdateRollbackFailed,
    UpdateCancelled,
    UpdateFailed,
]


# =============================================================================
# Update
# =============================================================================


@dataclass
class _Prepared:
    skill_path: Path
    scope_path: Path
    inspection: PackageInspection
    previous: VersionInfo
    comparison: VersionComparison
    warnings: list[str]


def update_skill(
    skill_name: str,
    package_path: Path,
    scope: str = "project",
    force: bool = False,
    dry_run: bool = False,
    no_backup: bool = False,
    keep_backup: bool = False,
    thorough: bool = False,
    cwd: Optional[Path] = None,
    home: Optional[Path] = None,
    confirm: Optional[ConfirmCallback] = None,
    token: Optional[CancellationToken] = None,
    backup_dir: Optional[Path] = None,
    limits: Optional[ResourceLimits] = None,
    state: Optional[UpdateState] = None,
) -> UpdateOutcome:
    """Replace an installed skill with the contents of a package.

    Args:
        skill_name: Installed skill to update
        package_path: Package holding the new version
        scope: "project", "personal" or a directory path
        force: Skip confirmation, accept hard links and oversized skills,
            clear a stale lock
        dry_run: Compare and report without changing anything
        no_backup: Do not write a backup archive (rollback then relies on
            the renamed-aside directory alone)
        keep_backup: Keep the backup after a successful update
        thorough: Compare file contents, not only sizes
        cwd: Project directory for the project scope
        home: Home directory for the personal scope
        confirm: Asked before the change is applied and before a stale
            lock is cleared
        token: Cancellation token
        backup_dir: Backup directory (defaults to configuration)
        limits: Resource limits (defaults to configuration)
        state: Phase tracker to update (a new one is created if omitted)

    Returns:
        One of the update outcome objects
    """
    limits = limits or get_config().limits
    state = state if state is not None else UpdateState()
    deadline = Deadline("update", limits.update_timeout)

    try:
        prepared = _prepare(
            skill_name, package_path, scope, force, thorough, cwd, home, token, limits, state, deadline
        )
    except CancelledError as e:
        outcome: UpdateOutcome = UpdateCancelled(skill_name=skill_name, reason=e.reason)
        _audit(outcome)
        return outcome
    except SkillKeeperError as e:
        logger.debug("Update of %s rejected in %s: %s", skill_name, state.phase.value, e)
        outcome = UpdateFailed(skill_name=skill_name, error=e, phase=state.phase)
        _audit(outcome)
        return outcome

    with prepared.inspection:
        if dry_run:
            planned_backup = None
            if not no_backup:
                planned_backup = get_backup_path(skill_name, get_backup_dir(backup_dir))
            return UpdateDryRunPreview(
                skill_name=skill_name,
                skill_path=prepared.skill_path,
                current_version=prepared.previous,
                new_version=get_package_version_info(prepared.inspection.archive),
                comparison=prepared.comparison,
                backup_path=planned_backup,
                warnings=prepared.warnings,
            )

        try:
            state.lock_path = take_lock(
                prepared.scope_path, skill_name, "update", Path(package_path), force, confirm
            )
        except SkillKeeperError as e:
            outcome = UpdateFailed(skill_name=skill_name, error=e, phase=state.phase)
            _audit(outcome)
            return outcome

        try:
            try:
                _refresh_installed(skill_name, prepared, force, thorough, limits)
            except SkillKeeperError as e:
                outcome = UpdateFailed(skill_name=skill_name, error=e, phase=state.phase)
            else:
                outcome = _apply(
                    skill_name, prepared, force, no_backup, keep_backup, confirm, token, backup_dir, state, deadline
                )
        finally:
            release_lock(state.lock_path)

    _audit(outcome)
    return outcome


def _prepare(
    skill_name: str,
    package_path: Path,
    scope: str,
    force: bool,
    thorough: bool,
    cwd: Optional[Path],
    home: Optional[Path],
    token: Optional[CancellationToken],
    limits: ResourceLimits,
    state: UpdateState,
    deadline: Deadline,
) -> _Prepared:
    """Run every read-only phase. Raises on the first problem."""
    state.enter(UpdatePhase.VALIDATION)
    raise_if_cancelled(token)
    validate_skill_name(skill_name)
    check_package_file(package_path)

    state.enter(UpdatePhase.DISCOVERY)
    raise_if_cancelled(token)
    scope_info = resolve_scope(scope, cwd=cwd, home=home)
    lookup = discover_skill(scope_info.path, skill_name)
    if lookup.status == "case-mismatch":
        raise SecurityViolation(
            SecurityReason.CASE_MISMATCH,
            f"Found '{lookup.actual_name}' in {scope_info.label}, which differs from "
            f"'{skill_name}' only by case",
            path=str(lookup.path),
        )
    if not lookup.found:
        raise NotFoundError(f"Skill '{skill_name}' is not installed in {scope_info.label}", lookup.path)
    skill_path = lookup.path
    state.skill_path = skill_path
    if not lookup.has_skill_md and not force:
        raise ValidationError(
            f"{skill_path} has no SKILL.md. Use --force to replace it anyway.", field="skill"
        )

    state.enter(UpdatePhase.PACKAGE_VALIDATION)
    deadline.check()
    raise_if_cancelled(token)
    inspection = inspect_package(
        package_path, scope_info.path, limits, force=force, expected_name=skill_name
    )

    try:
        state.enter(UpdatePhase.SECURITY_CHECK)
        deadline.check()
        raise_if_cancelled(token)
        _check_installed_skill(skill_path, scope_info.path, force, limits)

        state.enter(UpdatePhase.COMPARISON)
        deadline.check()
        raise_if_cancelled(token)
        previous = get_installed_version_info(skill_path)
        comparison = compare_versions(skill_path, inspection.archive, thorough=thorough)
        warnings = list(inspection.warnings)
        downgrade = detect_downgrade(previous, get_package_version_info(inspection.archive))
        if downgrade:
            logger.warning(downgrade)
            warnings.append(downgrade)
    except BaseException:
        inspection.close()
        raise

    return _Prepared(
        skill_path=skill_path,
        scope_path=scope_info.path,
        inspection=inspection,
        previous=previous,
        comparison=comparison,
        warnings=warnings,
    )


def _check_installed_skill(skill_path: Path, scope_path: Path, force: bool, limits: ResourceLimits) -> None:
    check_symlink_safety(skill_path, scope_path)
    escaping = find_escaping_symlinks(skill_path)
    if escaping:
        raise SecurityViolation(
            SecurityReason.SYMLINK_ESCAPE,
            f"{len(escaping)} symlink(s) in {skill_path} point outside the skill, "
            f"e.g. {escaping[0]}",
            path=str(escaping[0]),
        )
    require_no_hard_links(skill_path, force=force)
    exceeded = check_resource_limits(get_skill_summary(skill_path), limits)
    if exceeded and not force:
        raise ValidationError(
            "; ".join(exceeded) + ". Use --force to proceed.", field="skill"
        )


def _refresh_installed(
    skill_name: str,
    prepared: _Prepared,
    force: bool,
    thorough: bool,
    limits: ResourceLimits,
) -> None:
    """Look at the installed skill again once the lock is held.

    Another process may have removed or replaced it since the read-only
    phases ran. The comparison and previous version are recomputed.
    """
    lookup = discover_skill(prepared.scope_path, skill_name)
    if not lookup.found or lookup.path != prepared.skill_path:
        raise NotFoundError(
            f"Skill '{skill_name}' was removed before the update could start", lookup.path
        )
    if not lookup.has_skill_md and not force:
        raise ValidationError(
            f"{prepared.skill_path} has no SKILL.md. Use --force to replace it anyway.", field="skill"
        )
    _check_installed_skill(prepared.skill_path, prepared.scope_path, force, limits)
    prepared.previous = get_installed_version_info(prepared.skill_path)
    prepared.comparison = compare_versions(
        prepared.skill_path, prepared.inspection.archive, thorough=thorough
    )


def _apply(
    skill_name: str,
    prepared: _Prepared,
    force: bool,
    no_backup: bool,
    keep_backup: bool,
    confirm: Optional[ConfirmCallback],
    token: Optional[CancellationToken],
    backup_dir: Optional[Path],
    state: UpdateState,
    deadline: Deadline,
) -> UpdateOutcome:
    """Back up, confirm, swap, verify, and commit or roll back. Lock is held."""
    skill_path = prepared.skill_path

    try:
        state.enter(UpdatePhase.BACKUP)
        deadline.check()
        raise_if_cancelled(token)
        if not no_backup:
            state.backup_path = create_backup(skill_path, skill_name, backup_dir).path

        state.enter(UpdatePhase.CONFIRMATION)
        raise_if_cancelled(token)
        if confirm is not None and not force:
            prompt = (
                f"Update '{skill_name}' ({summarize_changes(prepared.comparison)})?"
            )
            if not confirm(prompt):
                _discard_backup(state.backup_path, backup_dir)
                return UpdateCancelled(skill_name=skill_name, reason="declined", cleanup_performed=True)
    except CancelledError as e:
        _discard_backup(state.backup_path, backup_dir)
        return UpdateCancelled(skill_name=skill_name, reason=e.reason, cleanup_performed=True)
    except SkillKeeperError as e:
        _discard_backup(state.backup_path, backup_dir)
        return UpdateFailed(skill_name=skill_name, error=e, phase=state.phase)

    try:
        state.enter(UpdatePhase.EXECUTION)
        deadline.check()
        raise_if_cancelled(token)
        state.aside_path = move_aside(skill_path)
        written = prepared.inspection.archive.extract_all(
            skill_path, strip_prefix=prepared.inspection.root, token=token
        )

        state.enter(UpdatePhase.POST_VALIDATION)
        warnings = verify_extraction(skill_path, written)
        if len(written) != prepared.inspection.file_count:
            logger.debug(
                "Extracted %d of %d entries (symlink entries are skipped)",
                len(written),
                prepared.inspection.file_count,
            )
    except SkillKeeperError as e:
        if state.aside_path is None:
            # Nothing was moved; the installed skill is untouched
            _discard_backup(state.backup_path, backup_dir)
            if isinstance(e, CancelledError):
                return UpdateCancelled(skill_name=skill_name, reason=e.reason, cleanup_performed=True)
            return UpdateFailed(skill_name=skill_name, error=e, phase=state.phase)
        return _rollback(skill_name, e, state)

    state.enter(UpdatePhase.CLEANUP)
    try:
        remove_tree(state.aside_path)
    except SkillKeeperError as e:
        logger.warning("Previous version left at %s: %s", state.aside_path, e)

    backup_removed = False
    if state.backup_path is not None and not keep_backup:
        backup_removed = cleanup_backup(state.backup_path, backup_dir)

    current_size = sum(p.stat().st_size for p in written if p.is_file())
    logger.info("Updated %s", skill_name)
    return UpdateSuccess(
        skill_name=skill_name,
        skill_path=skill_path,
        previous_file_count=prepared.previous.file_count,
        previous_size=prepared.previous.size,
        current_file_count=len(written),
        current_size=current_size,
        backup_path=state.backup_path,
        backup_removed=backup_removed,
        warnings=prepared.warnings + [w for w in warnings if w not in prepared.warnings],
    )


def _discard_backup(backup_path: Optional[Path], backup_dir: Optional[Path]) -> None:
    if backup_path is not None:
        cleanup_backup(backup_path, backup_dir)


def _rollback(skill_name: str, failure: SkillKeeperError, state: UpdateState) -> UpdateOutcome:
    """Put the previous version back after a failed execution."""
    skill_path = state.skill_path
    logger.warning("Update of %s failed, rolling back: %s", skill_name, failure)

    try:
        restore_aside(state.aside_path, skill_path)
    except RollbackError as aside_error:
        if state.backup_path is None:
            return _rollback_failed(skill_name, failure, aside_error.message, state)
        try:
            remove_tree(skill_path)
            restore_from_backup(state.backup_path, skill_path)
        except SkillKeeperError as backup_error:
            reason = f"{aside_error.message}; restoring from backup failed: {backup_error.message}"
            return _rollback_failed(skill_name, failure, reason, state)
        logger.warning("Restored %s from backup %s", skill_name, state.backup_path)
        try:
            remove_tree(state.aside_path)
        except SkillKeeperError as e:
            logger.warning("Previous version left at %s: %s", state.aside_path, e)

    if isinstance(failure, CancelledError):
        return UpdateCancelled(skill_name=skill_name, reason=failure.reason, cleanup_performed=True)

    return UpdateRolledBack(
        skill_name=skill_name,
        skill_path=skill_path,
        failure_reason=failure.message,
        backup_path=state.backup_path,
    )


def _rollback_failed(
    skill_name: str,
    failure: SkillKeeperError,
    rollback_reason: str,
    state: UpdateState,
) -> UpdateRollbackFailed:
    skill_path = state.skill_path
    logger.error("Rollback of %s failed: %s", skill_name, rollback_reason)

    instructions = []
    if state.aside_path is not None and os.path.lexists(state.aside_path):
        instructions.append(
            f"The previous version is at {state.aside_path}. Remove {skill_path} and "
            f"rename {state.aside_path} to {skill_path}."
        )
    if state.backup_path is not None:
        instructions.append(
            f"A backup of the previous version is at {state.backup_path}. Extract it into "
            f"{skill_path.parent} (it contains a single '{skill_name}/' directory)."
        )
    if not instructions:
        instructions.append(f"No copy of the previous version is left; reinstall '{skill_name}'.")
    instructions.append("Keep the backup file until the skill has been recovered.")

    return UpdateRollbackFailed(
        skill_name=skill_name,
        skill_path=skill_path,
        update_failure_reason=failure.message,
        rollback_failure_reason=rollback_reason,
        backup_path=state.backup_path,
        recovery_instructions=instructions,
    )


def _audit(outcome: UpdateOutcome) -> None:
    if isinstance(outcome, UpdateSuccess):
        log_event(
            AuditEventType.UPDATED,
            outcome.skill_name,
            {
                "path": str(outcome.skill_path),
                "previous_file_count": outcome.previous_file_count,
                "current_file_count": outcome.current_file_count,
                "backup": str(outcome.backup_path) if outcome.backup_path else None,
            },
        )
    elif isinstance(outcome, UpdateRolledBack):
        log_event(
            AuditEventType.ROLLED_BACK,
            outcome.skill_name,
            {"reason": outcome.failure_reason, "backup": str(outcome.backup_path)},
        )
    elif isinstance(outcome, UpdateRollbackFailed):
        log_event(
            AuditEventType.ROLLBACK_FAILED,
            outcome.skill_name,
            {
                "update_failure": outcome.update_failure_reason,
                "rollback_failure": outcome.rollback_failure_reason,
                "backup": str(outcome.backup_path),
            },
        )
    elif isinstance(outcome, UpdateFailed):
        log_event(
            AuditEventType.UPDATE_FAILED,
            outcome.skill_name,
            {"phase": outcome.phase.value, "error": outcome.error.to_dict()},
        )
    elif isinstance(outcome, UpdateCancelled):
        log_event(
            AuditEventType.CANCELLED,
            outcome.skill_name,
            {"operation": "update", "reason": outcome.reason},
        )
