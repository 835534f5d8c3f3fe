"""Enumerate the contents of an installed skill without following symlinks."""

from __future__ import annotations

import logging
import os
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from skillkeeper.config import ResourceLimits
from skillkeeper.frontmatter import SKILL_FILE

logger = logging.getLogger(__name__)


@dataclass
class FileInfo:
    """One entry below a skill directory.

    Attributes:
        relative_path: Path relative to the skill directory, using "/"
        absolute_path: Absolute path of the entry
        size: Size from lstat (0 for directories)
        is_directory: Real directory (never a symlink to one)
        is_symlink: Symbolic link
        link_count: Hard link count
    """

    relative_path: str
    absolute_path: Path
    size: int
    is_directory: bool
    is_symlink: bool
    link_count: int = 1


def enumerate_skill_files(skill_dir: Path) -> Iterator[FileInfo]:
    """Yield every entry below skill_dir, parents before children.

    Uses an explicit stack and lstat, so symlinks are reported as leaves
    and never descended into. Unreadable directories are logged and
    skipped.
    """
    root = Path(skill_dir)
    stack = [root]

    while stack:
        current = stack.pop()
        try:
            names = sorted(os.listdir(current))
        except OSError as e:
            logger.warning("Cannot read directory %s: %s", current, e)
            continue

        subdirs = []
        for name in names:
            path = current / name
            try:
                st = os.lstat(path)
            except OSError as e:
                logger.warning("Cannot stat %s: %s", path, e)
                continue

            is_link = stat.S_ISLNK(st.st_mode)
            is_dir = stat.S_ISDIR(st.st_mode)
            yield FileInfo(
                relative_path=path.relative_to(root).as_posix(),
                absolute_path=path,
                size=0 if is_dir else st.st_size,
                is_directory=is_dir,
                is_symlink=is_link,
                link_count=st.st_nlink,
            )
            if is_dir:
                subdirs.append(path)

        stack.extend(reversed(subdirs))


@dataclass
class SkillSummary:
    """Aggregate counts for a skill directory."""

    file_count: int = 0
    directory_count: int = 0
    symlink_count: int = 0
    total_size: int = 0
    has_skill_md: bool = False

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "file_count": self.file_count,
            "directory_count": self.directory_count,
            "symlink_count": self.symlink_count,
            "total_size": self.total_size,
            "has_skill_md": self.has_skill_md,
        }


def summarize(entries: list[FileInfo]) -> SkillSummary:
    """Build a summary from already-enumerated entries."""
    summary = SkillSummary()
    for info in entries:
        if info.is_symlink:
            summary.symlink_count += 1
        elif info.is_directory:
            summary.directory_count += 1
        else:
            summary.file_count += 1
            summary.total_size += info.size
        if info.relative_path == SKILL_FILE and not info.is_directory:
            summary.has_skill_md = True
    return summary


def get_skill_summary(skill_dir: Path) -> SkillSummary:
    """Count files, directories, symlinks and bytes below skill_dir."""
    return summarize(list(enumerate_skill_files(skill_dir)))


def check_resource_limits(
    summary: SkillSummary,
    limits: Optional[ResourceLimits] = None,
) -> list[str]:
    """Describe every limit the summary exceeds (empty if none)."""
    limits = limits or ResourceLimits()
    exceeded = []

    if summary.total_size > limits.max_total_size:
        exceeded.append(
            f"Total size {summary.total_size} bytes exceeds {limits.max_total_size} bytes"
        )

    total_files = summary.file_count + summary.symlink_count
    if total_files > limits.max_file_count:
        exceeded.append(f"{total_files} files exceed the limit of {limits.max_file_count}")

    return exceeded
