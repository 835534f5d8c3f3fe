"""Remove installed skills.

Removal goes through the safe deletion engine, so nothing outside the
skill directory is touched and symlinks are unlinked rather than
followed. Per-file failures do not stop the removal; they are collected
and reported as a partial uninstall.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Optional, Union

from skillkeeper.archive import format_file_size
from skillkeeper.audit import AuditEventType, log_event
from skillkeeper.cancellation import CancellationToken, raise_if_cancelled
from skillkeeper.config import ResourceLimits, get_config
from skillkeeper.discovery import discover_skill
from skillkeeper.enumerator import (
    SkillSummary,
    check_resource_limits,
    enumerate_skill_files,
    summarize,
)
from skillkeeper.errors import (
    CancelledError,
    ExitCode,
    NotFoundError,
    SecurityReason,
    SecurityViolation,
    SkillKeeperError,
    ValidationError,
    exit_code_for_error,
)
from skillkeeper.lifecycle import ConfirmCallback, Deadline, take_lock
from skillkeeper.lock import release_lock
from skillkeeper.safe_delete import DeleteProgress, DeletionSummary, delete_tree
from skillkeeper.scope import resolve_scope
from skillkeeper.security import check_symlink_safety, require_no_hard_links
from skillkeeper.validator import validate_skill_name

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[DeleteProgress], None]


# =============================================================================
# Outcomes
# =============================================================================


@dataclass
class UninstallSuccess:
    """Every file and the skill directory were removed."""

    skill_name: str
    skill_path: Path
    summary: DeletionSummary

    status = "success"
    exit_code = ExitCode.SUCCESS


@dataclass
class UninstallPartial:
    """Some entries could not be removed."""

    skill_name: str
    skill_path: Path
    summary: DeletionSummary
    files_remaining: int
    last_error: Optional[str] = None

    status = "partial"
    exit_code = ExitCode.FILESYSTEM_ERROR


@dataclass
class UninstallDryRunPreview:
    """What an uninstall would remove; nothing was deleted."""

    skill_name: str
    skill_path: Path
    files: list[str]
    summary: SkillSummary
    warnings: list[str] = field(default_factory=list)

    status = "dry-run-preview"
    exit_code = ExitCode.SUCCESS


@dataclass
class UninstallFailed:
    """The uninstall was refused before anything was deleted."""

    skill_name: str
    error: SkillKeeperError

    status = "failed"

    @property
    def exit_code(self) -> ExitCode:
        return exit_code_for_error(self.error)


@dataclass
class UninstallCancelled:
    """The uninstall was cancelled.

    If removal had already started, ``summary`` describes what was deleted.
    """

    skill_name: str
    reason: str
    summary: Optional[DeletionSummary] = None
    files_remaining: int = 0

    status = "cancelled"
    exit_code = ExitCode.CANCELLED


UninstallOutcome = Union[
    UninstallSuccess,
    UninstallPartial,
    UninstallDryRunPreview,
    UninstallFailed,
    UninstallCancelled,
]


# =============================================================================
# Uninstall
# =============================================================================


def _inspect_installed(skill_path: Path) -> tuple[SkillSummary, list[str]]:
    if os.path.islink(skill_path):
        return SkillSummary(symlink_count=1), ["."]
    entries = list(enumerate_skill_files(skill_path))
    return summarize(entries), [e.relative_path for e in entries]


def _count_remaining(skill_path: Path) -> int:
    if not os.path.lexists(skill_path):
        return 0
    if os.path.islink(skill_path):
        return 1
    return sum(1 for e in enumerate_skill_files(skill_path) if not e.is_directory)


def uninstall_skill(
    skill_name: str,
    scope: str = "project",
    force: bool = False,
    dry_run: bool = False,
    cwd: Optional[Path] = None,
    home: Optional[Path] = None,
    confirm: Optional[ConfirmCallback] = None,
    token: Optional[CancellationToken] = None,
    limits: Optional[ResourceLimits] = None,
    on_progress: Optional[ProgressCallback] = None,
) -> UninstallOutcome:
    """Uninstall a skill from a scope.

    Args:
        skill_name: Skill to remove
        scope: "project", "personal" or a directory path
        force: Remove directories without SKILL.md, oversized skills and
            skills with hard links; skip confirmation; clear a stale lock
        dry_run: List what would be removed
        cwd: Project directory for the project scope
        home: Home directory for the personal scope
        confirm: Asked before removal and before a stale lock is cleared
        token: Cancellation token, checked between deletions
        limits: Resource limits (defaults to configuration)
        on_progress: Called with each deletion event

    Returns:
        One of the uninstall outcome objects
    """
    limits = limits or get_config().limits

    try:
        raise_if_cancelled(token)
        validate_skill_name(skill_name)
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
            raise NotFoundError(
                f"Skill '{skill_name}' is not installed in {scope_info.label}", lookup.path
            )
        skill_path = lookup.path
        is_link = check_symlink_safety(skill_path, scope_info.path)

        summary, files = _inspect_installed(skill_path)
        warnings = []
        if not lookup.has_skill_md:
            message = f"{skill_path} has no SKILL.md and may not be a skill"
            if not force:
                raise ValidationError(f"{message}. Use --force to remove it anyway.", field="skill")
            warnings.append(message)

        if not is_link:
            exceeded = check_resource_limits(summary, limits)
            if exceeded and not force:
                raise ValidationError("; ".join(exceeded) + ". Use --force to proceed.", field="skill")
            warnings.extend(exceeded)

            report = require_no_hard_links(skill_path, force=force)
            if report.found:
                warnings.append(report.message())
    except CancelledError as e:
        return UninstallCancelled(skill_name=skill_name, reason=e.reason)
    except SkillKeeperError as e:
        logger.debug("Uninstall of %s refused: %s", skill_name, e)
        outcome: UninstallOutcome = UninstallFailed(skill_name=skill_name, error=e)
        _audit(outcome)
        return outcome

    if dry_run:
        return UninstallDryRunPreview(
            skill_name=skill_name,
            skill_path=skill_path,
            files=files,
            summary=summary,
            warnings=warnings,
        )

    if confirm is not None and not force:
        prompt = (
            f"Remove '{skill_name}' ({summary.file_count} files, "
            f"{format_file_size(summary.total_size)}) from {scope_info.label}?"
        )
        if not confirm(prompt):
            return UninstallCancelled(skill_name=skill_name, reason="declined")

    try:
        lock_path = take_lock(scope_info.path, skill_name, "uninstall", None, force, confirm)
    except SkillKeeperError as e:
        outcome = UninstallFailed(skill_name=skill_name, error=e)
        _audit(outcome)
        return outcome

    try:
        outcome = _remove(skill_name, skill_path, limits, token, on_progress)
    finally:
        release_lock(lock_path)

    _audit(outcome)
    return outcome


def _remove(
    skill_name: str,
    skill_path: Path,
    limits: ResourceLimits,
    token: Optional[CancellationToken],
    on_progress: Optional[ProgressCallback],
) -> UninstallOutcome:
    deadline = Deadline("uninstall", limits.uninstall_timeout)
    summary = DeletionSummary()
    stopped = None

    for progress in delete_tree(skill_path):
        summary.record(progress)
        if on_progress is not None:
            on_progress(progress)
        if token is not None and token.cancelled:
            stopped = "cancelled"
            break
        if deadline.expired:
            stopped = "timeout"
            break

    if summary.skill_directory_deleted:
        logger.info("Uninstalled %s (%s freed)", skill_name, format_file_size(summary.bytes_freed))
        return UninstallSuccess(skill_name=skill_name, skill_path=skill_path, summary=summary)

    remaining = _count_remaining(skill_path)
    if stopped == "cancelled":
        return UninstallCancelled(
            skill_name=skill_name,
            reason=token.reason or "interrupted",
            summary=summary,
            files_remaining=remaining,
        )

    if stopped == "timeout":
        last_error = f"uninstall timed out after {limits.uninstall_timeout:g}s"
    elif summary.error_messages:
        last_error = summary.error_messages[-1]
    else:
        last_error = f"{skill_path} could not be removed"

    logger.warning("Uninstall of %s incomplete: %s", skill_name, last_error)
    return UninstallPartial(
        skill_name=skill_name,
        skill_path=skill_path,
        summary=summary,
        files_remaining=remaining,
        last_error=last_error,
    )


def _audit(outcome: UninstallOutcome) -> None:
    if isinstance(outcome, UninstallSuccess):
        log_event(
            AuditEventType.UNINSTALLED,
            outcome.skill_name,
            {"path": str(outcome.skill_path), **outcome.summary.to_dict()},
        )
    elif isinstance(outcome, UninstallPartial):
        log_event(
            AuditEventType.UNINSTALL_PARTIAL,
            outcome.skill_name,
            {
                "path": str(outcome.skill_path),
                "files_remaining": outcome.files_remaining,
                "last_error": outcome.last_error,
            },
        )
    elif isinstance(outcome, UninstallFailed):
        log_event(
            AuditEventType.UNINSTALL_FAILED,
            outcome.skill_name,
            {"error": outcome.error.to_dict()},
        )
    elif isinstance(outcome, UninstallCancelled):
        log_event(
            AuditEventType.CANCELLED,
            outcome.skill_name,
            {"operation": "uninstall", "reason": outcome.reason},
        )


# =============================================================================
# Batch uninstall
# =============================================================================


@dataclass
class BatchUninstallResult:
    """Outcomes of uninstalling several skills."""

    outcomes: dict[str, UninstallOutcome] = field(default_factory=dict)

    @property
    def succeeded(self) -> list[str]:
        return [n for n, o in self.outcomes.items() if isinstance(o, UninstallSuccess)]

    @property
    def failed(self) -> list[str]:
        return [
            n
            for n, o in self.outcomes.items()
            if not isinstance(o, (UninstallSuccess, UninstallDryRunPreview))
        ]

    @property
    def files_deleted(self) -> int:
        return sum(
            o.summary.files_deleted
            for o in self.outcomes.values()
            if isinstance(o, (UninstallSuccess, UninstallPartial))
        )

    @property
    def bytes_freed(self) -> int:
        return sum(
            o.summary.bytes_freed
            for o in self.outcomes.values()
            if isinstance(o, (UninstallSuccess, UninstallPartial))
        )

    @property
    def exit_code(self) -> ExitCode:
        """First non-zero exit code, in input order."""
        for outcome in self.outcomes.values():
            if outcome.exit_code != ExitCode.SUCCESS:
                return outcome.exit_code
        return ExitCode.SUCCESS


def uninstall_skills(
    skill_names: Iterable[str],
    token: Optional[CancellationToken] = None,
    **options,
) -> BatchUninstallResult:
    """Uninstall several skills, continuing past individual failures.

    Stops early once the token is cancelled; skills not reached are not
    included in the result.
    """
    result = BatchUninstallResult()
    for name in skill_names:
        if token is not None and token.cancelled:
            break
        result.outcomes[name] = uninstall_skill(name, token=token, **options)
    return result
