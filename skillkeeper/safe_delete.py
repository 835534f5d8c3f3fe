"""Bottom-up deletion that never leaves its containment boundary.

``delete_entry`` removes one file, symlink or empty directory after
checking that it lies inside a base directory. ``delete_tree`` enumerates a
tree once, then deletes leaves first and directories deepest-first, so each
directory is empty by the time it is removed. Symlinks are unlinked, never
followed.
"""

from __future__ import annotations

import errno
import logging
import os
import stat
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, Literal, Optional

from skillkeeper.enumerator import enumerate_skill_files
from skillkeeper.security import is_within

logger = logging.getLogger(__name__)

# Most error messages kept in a DeletionSummary
MAX_ERROR_MESSAGES = 10

# Pause before retrying a busy file
BUSY_RETRY_DELAY = 0.1

DeleteStatus = Literal["success", "skipped", "error"]
PathType = Literal["file", "directory", "symlink"]

_BUSY_ERRNOS = {errno.EBUSY, errno.ETXTBSY}
_NOT_EMPTY_ERRNOS = {errno.ENOTEMPTY, errno.EEXIST}


@dataclass
class DeleteResult:
    """Outcome of deleting one entry.

    Attributes:
        path: Entry that was processed
        status: success, skipped or error
        path_type: What the entry was, if it could be determined
        size: Bytes freed (files and symlinks)
        reason: Why the entry was skipped (containment-violation,
            not-empty, not-found)
        error: Error message when status is error
    """

    path: Path
    status: DeleteStatus
    path_type: Optional[PathType] = None
    size: int = 0
    reason: Optional[str] = None
    error: Optional[str] = None


@dataclass
class DeleteProgress:
    """One event from delete_tree."""

    relative_path: str
    result: DeleteResult
    processed: int
    total: int


def _normalized(path: Path | str) -> str:
    return os.path.normpath(os.path.abspath(os.fspath(path)))


def _skipped(path: Path, reason: str, path_type: Optional[PathType] = None) -> DeleteResult:
    logger.debug("Skipped %s (%s)", path, reason)
    return DeleteResult(path=path, status="skipped", path_type=path_type, reason=reason)


def _remove(path: Path, is_dir: bool) -> None:
    if is_dir:
        os.rmdir(path)
    else:
        os.unlink(path)


def delete_entry(base_dir: Path, path: Path) -> DeleteResult:
    """Delete a single file, symlink or empty directory inside base_dir.

    Entries outside base_dir, or reached through a symlinked parent that
    leaves base_dir, are skipped with reason containment-violation and
    left untouched. Non-empty directories are skipped with reason
    not-empty. A busy entry is retried once.

    Args:
        base_dir: Containment boundary
        path: Entry to delete

    Returns:
        DeleteResult
    """
    path = Path(path)

    if not is_within(base_dir, path):
        return _skipped(path, "containment-violation")

    # A symlinked parent would redirect the unlink outside base_dir
    if _normalized(path) != _normalized(base_dir) and not is_within(
        os.path.realpath(base_dir), os.path.realpath(path.parent)
    ):
        return _skipped(path, "containment-violation")

    try:
        st = os.lstat(path)
    except FileNotFoundError:
        return _skipped(path, "not-found")
    except OSError as e:
        return DeleteResult(path=path, status="error", error=str(e))

    if stat.S_ISLNK(st.st_mode):
        path_type: PathType = "symlink"
    elif stat.S_ISDIR(st.st_mode):
        path_type = "directory"
    else:
        path_type = "file"
    is_dir = path_type == "directory"
    size = 0 if is_dir else st.st_size

    for attempt in range(2):
        try:
            _remove(path, is_dir)
            return DeleteResult(path=path, status="success", path_type=path_type, size=size)
        except FileNotFoundError:
            return _skipped(path, "not-found", path_type)
        except OSError as e:
            if is_dir and e.errno in _NOT_EMPTY_ERRNOS:
                return _skipped(path, "not-empty", path_type)
            if e.errno in _BUSY_ERRNOS and attempt == 0:
                time.sleep(BUSY_RETRY_DELAY)
                continue
            logger.debug("Failed to delete %s: %s", path, e)
            return DeleteResult(path=path, status="error", path_type=path_type, error=str(e))

    return DeleteResult(path=path, status="error", path_type=path_type, error="resource busy")


def delete_tree(root_dir: Path) -> Iterator[DeleteProgress]:
    """Delete root_dir and everything under it, lazily.

    The tree is enumerated once up front so that ``total`` is fixed. Files
    and symlinks are removed first, then directories deepest-first, then
    root_dir itself (checked against its own parent). One DeleteProgress is
    yielded per entry; the consumer may stop early.
    """
    root = Path(_normalized(root_dir))
    if os.path.islink(root):
        # A symlinked skill directory is removed as a single link
        yield DeleteProgress(".", delete_entry(root.parent, root), 1, 1)
        return

    entries = list(enumerate_skill_files(root))

    leaves = [e for e in entries if not e.is_directory]
    directories = sorted(
        (e for e in entries if e.is_directory),
        key=lambda e: e.relative_path.count("/"),
        reverse=True,
    )
    total = len(leaves) + len(directories) + 1
    processed = 0

    for info in leaves + directories:
        result = delete_entry(root, info.absolute_path)
        processed += 1
        yield DeleteProgress(info.relative_path, result, processed, total)

    result = delete_entry(root.parent, root)
    processed += 1
    yield DeleteProgress(".", result, processed, total)


@dataclass
class DeletionSummary:
    """Aggregate outcome of a deletion."""

    files_deleted: int = 0
    directories_deleted: int = 0
    symlinks_deleted: int = 0
    bytes_freed: int = 0
    skipped: int = 0
    errors: int = 0
    error_messages: list[str] = field(default_factory=list)
    skill_directory_deleted: bool = False

    def record(self, progress: DeleteProgress) -> None:
        """Fold one progress event into the summary."""
        result = progress.result

        if result.status == "success":
            if result.path_type == "directory":
                self.directories_deleted += 1
            elif result.path_type == "symlink":
                self.symlinks_deleted += 1
            else:
                self.files_deleted += 1
            self.bytes_freed += result.size
            if progress.relative_path == ".":
                self.skill_directory_deleted = True
        elif result.status == "skipped":
            self.skipped += 1
        else:
            self.errors += 1
            if len(self.error_messages) < MAX_ERROR_MESSAGES:
                self.error_messages.append(f"{progress.relative_path}: {result.error}")

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "files_deleted": self.files_deleted,
            "directories_deleted": self.directories_deleted,
            "symlinks_deleted": self.symlinks_deleted,
            "bytes_freed": self.bytes_freed,
            "skipped": self.skipped,
            "errors": self.errors,
            "error_messages": list(self.error_messages),
            "skill_directory_deleted": self.skill_directory_deleted,
        }


def delete_skill(skill_path: Path) -> DeletionSummary:
    """Delete a skill directory completely and summarize the outcome.

    Failures on individual entries do not stop the remaining deletions.
    """
    summary = DeletionSummary()
    for progress in delete_tree(skill_path):
        summary.record(progress)

    if summary.errors:
        logger.warning(
            "Deleting %s left %d error(s): %s",
            skill_path,
            summary.errors,
            "; ".join(summary.error_messages),
        )
    return summary
