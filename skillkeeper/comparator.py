"""Compare an installed skill with a candidate package.

The comparison is read-only and informational: it feeds dry-run previews
and confirmation prompts and never affects what an update does.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Literal, Optional

from skillkeeper.archive import SkillArchive, format_file_size
from skillkeeper.enumerator import enumerate_skill_files
from skillkeeper.frontmatter import SKILL_FILE, FrontmatterError, parse_metadata, read_skill_metadata

ChangeType = Literal["added", "removed", "modified"]

_HASH_CHUNK = 64 * 1024


@dataclass
class FileChange:
    """One file that differs between installed skill and package."""

    path: str
    change_type: ChangeType
    size_before: int = 0
    size_after: int = 0

    @property
    def size_delta(self) -> int:
        return self.size_after - self.size_before

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "path": self.path,
            "change_type": self.change_type,
            "size_before": self.size_before,
            "size_after": self.size_after,
            "size_delta": self.size_delta,
        }


@dataclass
class VersionComparison:
    """Differences between installed skill and package."""

    files_added: list[FileChange] = field(default_factory=list)
    files_removed: list[FileChange] = field(default_factory=list)
    files_modified: list[FileChange] = field(default_factory=list)
    unchanged_count: int = 0

    @property
    def added_count(self) -> int:
        return len(self.files_added)

    @property
    def removed_count(self) -> int:
        return len(self.files_removed)

    @property
    def modified_count(self) -> int:
        return len(self.files_modified)

    @property
    def size_change(self) -> int:
        changes = self.files_added + self.files_removed + self.files_modified
        return sum(change.size_delta for change in changes)

    @property
    def has_changes(self) -> bool:
        return bool(self.files_added or self.files_removed or self.files_modified)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "files_added": [c.to_dict() for c in self.files_added],
            "files_removed": [c.to_dict() for c in self.files_removed],
            "files_modified": [c.to_dict() for c in self.files_modified],
            "added_count": self.added_count,
            "removed_count": self.removed_count,
            "modified_count": self.modified_count,
            "unchanged_count": self.unchanged_count,
            "size_change": self.size_change,
        }


@dataclass
class VersionInfo:
    """Summary of one side of an update."""

    path: Path
    file_count: int
    size: int
    last_modified: Optional[datetime] = None
    description: Optional[str] = None
    version: Optional[str] = None


def _hash_file(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_HASH_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _package_files(archive: SkillArchive) -> dict[str, int]:
    root = archive.root_directory()
    prefix = f"{root}/" if root else ""
    files = {}
    for entry in archive.file_entries():
        if entry.is_symlink:
            continue
        name = entry.name[len(prefix):] if prefix and entry.name.startswith(prefix) else entry.name
        files[name] = entry.size
    return files


def compare_versions(
    installed_dir: Path,
    archive: SkillArchive,
    thorough: bool = False,
) -> VersionComparison:
    """Diff an installed skill against a package.

    Files are matched by relative path. By default a file counts as
    modified when its size differs; with thorough=True, same-sized files
    are also compared by SHA-256 of their content.
    """
    installed = {
        info.relative_path: info
        for info in enumerate_skill_files(installed_dir)
        if not info.is_directory and not info.is_symlink
    }
    packaged = _package_files(archive)
    root = archive.root_directory()
    prefix = f"{root}/" if root else ""

    comparison = VersionComparison()

    for path in sorted(packaged):
        size_after = packaged[path]
        if path not in installed:
            comparison.files_added.append(FileChange(path, "added", 0, size_after))
            continue

        size_before = installed[path].size
        modified = size_before != size_after
        if not modified and thorough:
            package_hash = hashlib.sha256(archive.read_bytes(prefix + path)).hexdigest()
            modified = package_hash != _hash_file(installed[path].absolute_path)

        if modified:
            comparison.files_modified.append(FileChange(path, "modified", size_before, size_after))
        else:
            comparison.unchanged_count += 1

    for path in sorted(set(installed) - set(packaged)):
        comparison.files_removed.append(FileChange(path, "removed", installed[path].size, 0))

    return comparison


def get_installed_version_info(skill_dir: Path) -> VersionInfo:
    """Describe an installed skill."""
    files = [
        info
        for info in enumerate_skill_files(skill_dir)
        if not info.is_directory and not info.is_symlink
    ]
    last_modified = None
    for info in files:
        try:
            mtime = datetime.fromtimestamp(info.absolute_path.stat().st_mtime)
        except OSError:
            continue
        if last_modified is None or mtime > last_modified:
            last_modified = mtime

    metadata = read_skill_metadata(skill_dir)
    return VersionInfo(
        path=Path(skill_dir),
        file_count=len(files),
        size=sum(info.size for info in files),
        last_modified=last_modified,
        description=metadata.description if metadata else None,
        version=metadata.version if metadata else None,
    )


def get_package_version_info(archive: SkillArchive) -> VersionInfo:
    """Describe a package."""
    entries = [e for e in archive.file_entries() if not e.is_symlink]
    stamps = [e.modified for e in entries if e.modified is not None]

    root = archive.root_directory()
    skill_md = f"{root}/{SKILL_FILE}" if root else SKILL_FILE
    description = version = None
    if archive.has_entry(skill_md):
        try:
            metadata = parse_metadata(archive.read_text(skill_md))
            description, version = metadata.description, metadata.version
        except (FrontmatterError, UnicodeDecodeError):
            pass

    return VersionInfo(
        path=archive.path,
        file_count=len(entries),
        size=sum(e.size for e in entries),
        last_modified=max(stamps) if stamps else None,
        description=description,
        version=version,
    )


def _version_key(version: str) -> Optional[tuple[int, ...]]:
    match = re.match(r"^v?(\d+(?:\.\d+)*)", version.strip())
    if not match:
        return None
    return tuple(int(part) for part in match.group(1).split("."))


def detect_downgrade(installed: VersionInfo, package: VersionInfo) -> Optional[str]:
    """Return a warning if the package looks older than what is installed.

    Declared versions are compared when both parse as dotted numbers;
    otherwise the newest file timestamps are compared.
    """
    if installed.version and package.version:
        before = _version_key(installed.version)
        after = _version_key(package.version)
        if before is not None and after is not None:
            if after < before:
                return f"Package version {package.version} is older than installed {installed.version}"
            return None

    if installed.last_modified and package.last_modified:
        if package.last_modified < installed.last_modified:
            return "Package files are older than the installed files"

    return None


def summarize_changes(comparison: VersionComparison) -> str:
    """One-line summary such as "2 added, 1 modified (+1.5 KB)"."""
    if not comparison.has_changes:
        return "No changes"

    parts = []
    if comparison.added_count:
        parts.append(f"{comparison.added_count} added")
    if comparison.removed_count:
        parts.append(f"{comparison.removed_count} removed")
    if comparison.modified_count:
        parts.append(f"{comparison.modified_count} modified")

    delta = comparison.size_change
    sign = "+" if delta >= 0 else "-"
    return f"{', '.join(parts)} ({sign}{format_file_size(abs(delta))})"


def format_diff_line(change: FileChange) -> str:
    """Format a change as "+ path", "- path" or "~ path" with sizes."""
    if change.change_type == "added":
        return f"+ {change.path} ({format_file_size(change.size_after)})"
    if change.change_type == "removed":
        return f"- {change.path} ({format_file_size(change.size_before)})"
    return (
        f"~ {change.path} ({format_file_size(change.size_before)} -> "
        f"{format_file_size(change.size_after)})"
    )
