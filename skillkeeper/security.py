"""Path security checks for archives, symlinks and install targets.

Every check raises ``SecurityViolation`` with a ``SecurityReason`` so that
callers can branch on the reason code. Nothing in this module mutates the
filesystem.
"""

from __future__ import annotations

import logging
import os
import posixpath
import re
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional

from skillkeeper.config import ResourceLimits
from skillkeeper.errors import SecurityReason, SecurityViolation

logger = logging.getLogger(__name__)

# Maximum number of hard-linked files listed in a report
MAX_HARD_LINKS_REPORTED = 10

_DRIVE_RE = re.compile(r"^[A-Za-z]:")


def _normalize(path: Path | str) -> str:
    return os.path.normpath(os.path.abspath(os.fspath(path)))


def is_within(base: Path | str, candidate: Path | str) -> bool:
    """Check that candidate is base or nested under it.

    Both paths are normalized first (``.``/``..`` resolved, separators
    collapsed). Symlinks are not followed.

    Args:
        base: Containing directory
        candidate: Path to check

    Returns:
        True if candidate equals base or lies under it
    """
    base_str = _normalize(base)
    candidate_str = _normalize(candidate)

    if candidate_str == base_str:
        return True

    prefix = base_str if base_str.endswith(os.sep) else base_str + os.sep
    return candidate_str.startswith(prefix)


def verify_containment(base: Path | str, candidate: Path | str) -> Path:
    """Return the normalized candidate, or raise if it escapes base.

    Raises:
        SecurityViolation: With reason containment-violation
    """
    if not is_within(base, candidate):
        raise SecurityViolation(
            SecurityReason.CONTAINMENT_VIOLATION,
            f"{candidate} is outside {base}",
            path=os.fspath(candidate),
        )
    return Path(_normalize(candidate))


def check_case_mismatch(path: Path | str) -> bool:
    """Check whether path exists only under a differently-cased name.

    On a case-sensitive filesystem a differently-cased sibling is simply a
    different file, so this only reports True where the lookup succeeded
    through case folding.
    """
    path = Path(path)
    if not os.path.lexists(path):
        return False

    try:
        names = os.listdir(path.parent)
    except OSError:
        return False

    if path.name in names:
        return False

    folded = path.name.casefold()
    return any(name.casefold() == folded for name in names)


def validate_entry_path(
    base: Path | str,
    entry_name: str,
    check_case: bool = True,
) -> Path:
    """Validate an archive entry name against an extraction target.

    Args:
        base: Directory the entry would be extracted into
        entry_name: Archive-relative entry name
        check_case: Also reject case-only collisions with existing files

    Returns:
        Absolute path the entry resolves to

    Raises:
        SecurityViolation: If the entry would land outside base
    """
    if "\x00" in entry_name:
        raise SecurityViolation(
            SecurityReason.PATH_TRAVERSAL,
            f"Entry name contains a null byte: {entry_name!r}",
            path=entry_name,
        )

    name = entry_name.replace("\\", "/")

    if name.startswith("/") or _DRIVE_RE.match(name):
        raise SecurityViolation(
            SecurityReason.ZIP_ENTRY_ESCAPE,
            f"Absolute path in archive: {entry_name}",
            path=entry_name,
        )

    if ".." in name.split("/"):
        normalized = posixpath.normpath(name)
        if normalized == ".." or normalized.startswith("../"):
            raise SecurityViolation(
                SecurityReason.PATH_TRAVERSAL,
                f"Entry escapes the extraction directory: {entry_name}",
                path=entry_name,
            )

    base_str = _normalize(base)
    target = os.path.normpath(os.path.join(base_str, name))
    if not is_within(base_str, target):
        raise SecurityViolation(
            SecurityReason.ZIP_ENTRY_ESCAPE,
            f"Entry resolves outside the extraction directory: {entry_name}",
            path=entry_name,
        )

    # Follow symlinks already on disk between base and the target
    real_base = os.path.realpath(base_str)
    real_parent = os.path.realpath(os.path.dirname(target))
    if not is_within(real_base, real_parent) or (
        os.path.islink(target) and not is_within(real_base, os.path.realpath(target))
    ):
        raise SecurityViolation(
            SecurityReason.SYMLINK_ESCAPE,
            f"Entry would be written through a symlink outside the target: {entry_name}",
            path=entry_name,
        )

    if check_case and check_case_mismatch(target):
        raise SecurityViolation(
            SecurityReason.CASE_MISMATCH,
            f"Entry collides with an existing path that differs only by case: {entry_name}",
            path=entry_name,
        )

    return Path(target)


def is_case_insensitive(path: Path | str) -> bool:
    """Probe whether the filesystem holding path folds case.

    Walks up to the nearest existing directory whose name has letters and
    checks whether its case-swapped name refers to the same directory.
    Returns False when nothing can be probed.
    """
    current = Path(_normalize(path))
    while True:
        if current.exists() and current.name.swapcase() != current.name:
            swapped = current.parent / current.name.swapcase()
            try:
                return swapped.exists() and os.path.samefile(current, swapped)
            except OSError:
                return False
        if current.parent == current:
            return False
        current = current.parent


def check_entries(base: Path | str, entry_names: Iterable[str]) -> list[Path]:
    """Validate every entry name, stopping at the first violation.

    On a case-insensitive filesystem, two entries that differ only by case
    would overwrite each other and are rejected as well.

    Returns:
        Resolved target paths in entry order
    """
    targets = []
    seen: dict[str, str] = {}
    fold_case = is_case_insensitive(base)

    for entry_name in entry_names:
        targets.append(validate_entry_path(base, entry_name))
        if not fold_case:
            continue

        key = entry_name.replace("\\", "/").rstrip("/")
        folded = key.casefold()
        if folded in seen and seen[folded] != key:
            raise SecurityViolation(
                SecurityReason.CASE_MISMATCH,
                f"Entries differ only by case: {seen[folded]} and {key}",
                path=entry_name,
            )
        seen.setdefault(folded, key)

    return targets


def check_zip_bomb(
    compressed_size: int,
    uncompressed_size: int,
    limits: Optional[ResourceLimits] = None,
) -> None:
    """Reject archives whose declared size is implausible.

    Args:
        compressed_size: Size of the archive file in bytes
        uncompressed_size: Sum of declared uncompressed entry sizes
        limits: Thresholds to apply (defaults to ResourceLimits())

    Raises:
        SecurityViolation: With reason zip-bomb
    """
    limits = limits or ResourceLimits()

    if uncompressed_size > limits.zip_bomb_max_uncompressed:
        raise SecurityViolation(
            SecurityReason.ZIP_BOMB,
            f"Archive expands to {uncompressed_size} bytes, "
            f"above the {limits.zip_bomb_max_uncompressed} byte ceiling",
        )

    if uncompressed_size < limits.zip_bomb_ratio_min_size:
        return

    ratio = uncompressed_size / max(compressed_size, 1)
    if ratio > limits.zip_bomb_max_ratio:
        raise SecurityViolation(
            SecurityReason.ZIP_BOMB,
            f"Archive compression ratio {ratio:.0f}:1 exceeds "
            f"{limits.zip_bomb_max_ratio:g}:1",
        )


def check_symlink_safety(path: Path | str, scope_root: Path | str) -> bool:
    """Check that path, if it is a symlink, still points inside scope_root.

    Returns:
        True if path is a symlink (that stays inside scope_root)

    Raises:
        SecurityViolation: With reason symlink-escape
    """
    if not os.path.islink(path):
        return False

    real_target = os.path.realpath(path)
    if not is_within(os.path.realpath(scope_root), real_target):
        raise SecurityViolation(
            SecurityReason.SYMLINK_ESCAPE,
            f"{path} is a symlink to {real_target}, outside {scope_root}",
            path=os.fspath(path),
        )
    return True


def find_escaping_symlinks(skill_dir: Path | str) -> list[Path]:
    """List symlinks under skill_dir whose targets resolve outside it.

    Symlinked directories are reported but never descended into.
    """
    real_root = os.path.realpath(skill_dir)
    escaping = []

    for dirpath, dirnames, filenames in os.walk(skill_dir, followlinks=False):
        for name in dirnames + filenames:
            full = os.path.join(dirpath, name)
            if os.path.islink(full) and not is_within(real_root, os.path.realpath(full)):
                escaping.append(Path(full))

    return sorted(escaping)


@dataclass
class HardLinkReport:
    """Files with more than one hard link.

    Attributes:
        count: Total number of hard-linked files found
        paths: Up to MAX_HARD_LINKS_REPORTED relative paths
    """

    count: int = 0
    paths: list[str] = field(default_factory=list)

    @property
    def found(self) -> bool:
        return self.count > 0

    def message(self) -> str:
        listed = ", ".join(self.paths)
        more = self.count - len(self.paths)
        suffix = f" and {more} more" if more > 0 else ""
        return (
            f"{self.count} file(s) have multiple hard links ({listed}{suffix}). "
            "Their content is shared with files outside the skill; use --force to proceed."
        )


def detect_hard_links(skill_dir: Path | str) -> HardLinkReport:
    """Find regular files under skill_dir with a link count above one."""
    report = HardLinkReport()
    skill_dir = os.fspath(skill_dir)

    for dirpath, _dirnames, filenames in os.walk(skill_dir, followlinks=False):
        for name in filenames:
            full = os.path.join(dirpath, name)
            try:
                st = os.lstat(full)
            except OSError:
                continue
            if stat.S_ISREG(st.st_mode) and st.st_nlink > 1:
                report.count += 1
                if len(report.paths) < MAX_HARD_LINKS_REPORTED:
                    report.paths.append(os.path.relpath(full, skill_dir))

    if report.found:
        logger.warning("Found %d hard-linked file(s) in %s", report.count, skill_dir)
    return report


def require_no_hard_links(skill_dir: Path | str, force: bool = False) -> HardLinkReport:
    """Raise hard-link-detected unless force is set.

    Raises:
        SecurityViolation: With reason hard-link-detected
    """
    report = detect_hard_links(skill_dir)
    if report.found and not force:
        raise SecurityViolation(
            SecurityReason.HARD_LINK_DETECTED,
            report.message(),
            path=os.fspath(skill_dir),
        )
    return report
