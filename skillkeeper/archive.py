"""Zip archive creation and extraction for skill packages.

Writing goes through ``ArchiveWriter``, which builds the archive under a
temporary name and only moves it into place once the file has been closed
and flushed to disk. Reading goes through ``SkillArchive``, whose
extraction validates every entry before the first byte is written.
"""

from __future__ import annotations

import logging
import os
import secrets
import shutil
import stat
import zipfile
import zlib
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional

from skillkeeper.cancellation import CancellationToken, raise_if_cancelled
from skillkeeper.errors import FileSystemError, NotFoundError, ValidationError
from skillkeeper.security import check_entries, validate_entry_path

logger = logging.getLogger(__name__)

# Files and directories never included in a package
EXCLUDED_PATTERNS = [
    ".git/",
    "node_modules/",
    ".DS_Store",
    "*.log",
    "__pycache__/",
    "*.pyc",
]

PACKAGE_EXTENSION = ".skill"
COMPRESSION_LEVEL = 9
DEFAULT_DIR_MODE = 0o755
DEFAULT_FILE_MODE = 0o644


def is_excluded(relative_path: str, patterns: Optional[Iterable[str]] = None) -> bool:
    """Check an archive-relative path against exclusion patterns.

    Patterns ending in ``/`` exclude a directory at any depth, patterns
    starting with ``*`` match a suffix, and anything else must equal the
    final path component.

    Args:
        relative_path: Path relative to the archive root
        patterns: Patterns to apply (defaults to EXCLUDED_PATTERNS)

    Returns:
        True if the path should be left out of the archive
    """
    path = relative_path.replace("\\", "/")
    patterns = EXCLUDED_PATTERNS if patterns is None else patterns

    for pattern in patterns:
        if pattern.endswith("/"):
            dir_name = pattern[:-1]
            if path.startswith(dir_name + "/") or f"/{dir_name}/" in path:
                return True
        elif pattern.startswith("*"):
            if path.endswith(pattern[1:]):
                return True
        elif path.rstrip("/").split("/")[-1] == pattern:
            return True

    return False


def format_file_size(size: int) -> str:
    """Format a byte count for display."""
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    if size < 1024 * 1024 * 1024:
        return f"{size / (1024 * 1024):.1f} MB"
    return f"{size / (1024 * 1024 * 1024):.1f} GB"


# =============================================================================
# Writing
# =============================================================================


class ArchiveWriter:
    """Builds a zip archive at output_path.

    The archive is written to a hidden partial file next to output_path.
    ``finalize`` closes it, flushes it to disk and renames it into place,
    so a package path never names a truncated file.
    """

    def __init__(self, output_path: Path, exclusions: Optional[Iterable[str]] = None):
        self.output_path = Path(output_path)
        self.exclusions = list(EXCLUDED_PATTERNS if exclusions is None else exclusions)
        self.file_count = 0
        self.finalized = False
        self._partial_path = self.output_path.with_name(
            f".{self.output_path.name}.{secrets.token_hex(4)}.partial"
        )
        try:
            self.output_path.parent.mkdir(parents=True, exist_ok=True)
            self._zip = zipfile.ZipFile(
                self._partial_path,
                "w",
                compression=zipfile.ZIP_DEFLATED,
                compresslevel=COMPRESSION_LEVEL,
                strict_timestamps=False,
            )
        except OSError as e:
            raise FileSystemError("write", self.output_path, str(e))

    def __enter__(self) -> ArchiveWriter:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None:
            self.abort()
        elif not self.finalized:
            self.finalize()

    def add_file(self, path: Path, arcname: str) -> None:
        """Add one regular file under arcname."""
        try:
            self._zip.write(path, arcname)
        except OSError as e:
            raise FileSystemError("read", path, str(e))
        self.file_count += 1

    def add_directory(self, directory: Path, archive_prefix: str = "") -> int:
        """Add the files under directory, skipping excluded paths and symlinks.

        Args:
            directory: Directory to read from
            archive_prefix: Path inside the archive that directory maps to

        Returns:
            Number of files added
        """
        directory = Path(directory)
        added = 0

        try:
            entries = sorted(os.scandir(directory), key=lambda e: e.name)
        except OSError as e:
            raise FileSystemError("readdir", directory, str(e))

        for entry in entries:
            arcname = f"{archive_prefix}/{entry.name}" if archive_prefix else entry.name

            if entry.is_symlink():
                logger.debug("Skipping symlink %s", entry.path)
                continue

            if entry.is_dir(follow_symlinks=False):
                if is_excluded(arcname + "/", self.exclusions):
                    continue
                added += self.add_directory(Path(entry.path), arcname)
            elif entry.is_file(follow_symlinks=False):
                if is_excluded(arcname, self.exclusions):
                    continue
                self.add_file(Path(entry.path), arcname)
                added += 1

        return added

    def finalize(self) -> Path:
        """Close the archive, flush it and move it to output_path."""
        try:
            self._zip.close()
            with open(self._partial_path, "rb") as f:
                os.fsync(f.fileno())
            os.replace(self._partial_path, self.output_path)
        except OSError as e:
            self.abort()
            raise FileSystemError("write", self.output_path, str(e))

        self.finalized = True
        logger.debug("Wrote %s (%d files)", self.output_path, self.file_count)
        return self.output_path

    def abort(self) -> None:
        """Discard the partial archive."""
        try:
            self._zip.close()
        except (OSError, ValueError):
            pass
        try:
            self._partial_path.unlink()
        except FileNotFoundError:
            pass


def create_archive(output_path: Path, exclusions: Optional[Iterable[str]] = None) -> ArchiveWriter:
    """Start a new archive at output_path."""
    return ArchiveWriter(output_path, exclusions)


def create_package_archive(
    source_dir: Path,
    output_path: Path,
    archive_prefix: str,
    exclusions: Optional[Iterable[str]] = None,
) -> int:
    """Write source_dir into a finalized archive under archive_prefix.

    Returns:
        Number of files written
    """
    with create_archive(output_path, exclusions) as writer:
        count = writer.add_directory(source_dir, archive_prefix)
    return count


# =============================================================================
# Reading
# =============================================================================


def _entry_timestamp(info: zipfile.ZipInfo) -> Optional[datetime]:
    try:
        return datetime(*info.date_time)
    except ValueError:
        return None


@dataclass
class ArchiveEntry:
    """One member of a zip archive.

    Attributes:
        name: Archive-relative path using forward slashes
        size: Declared uncompressed size
        compressed_size: Stored size
        is_directory: Whether the entry is a directory
        is_symlink: Whether the entry was stored as a symbolic link
        mode: Unix permission bits from the external attributes (0 if absent)
        modified: Timestamp stored in the archive
    """

    name: str
    size: int
    compressed_size: int
    is_directory: bool
    is_symlink: bool = False
    mode: int = 0
    modified: Optional[datetime] = None

    @classmethod
    def from_zipinfo(cls, info: zipfile.ZipInfo) -> ArchiveEntry:
        unix_mode = (info.external_attr >> 16) & 0xFFFF
        return cls(
            name=info.filename.replace("\\", "/"),
            size=info.file_size,
            compressed_size=info.compress_size,
            is_directory=info.is_dir(),
            is_symlink=stat.S_ISLNK(unix_mode),
            mode=unix_mode & 0o777,
            modified=_entry_timestamp(info),
        )


def is_valid_zip(path: Path) -> bool:
    """Check that path is a readable zip file."""
    path = Path(path)
    return path.is_file() and zipfile.is_zipfile(path)


class SkillArchive:
    """Read access to a skill package."""

    def __init__(self, path: Path):
        self.path = Path(path)
        try:
            self._zip = zipfile.ZipFile(self.path)
        except FileNotFoundError:
            raise NotFoundError(f"Package not found: {self.path}", self.path)
        except zipfile.BadZipFile as e:
            raise ValidationError(f"Not a valid zip archive: {self.path} ({e})", field="package")
        except OSError as e:
            raise FileSystemError("read", self.path, str(e))
        self._entries = [ArchiveEntry.from_zipinfo(info) for info in self._zip.infolist()]

    def __enter__(self) -> SkillArchive:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self._zip.close()

    @property
    def archive_size(self) -> int:
        return self.path.stat().st_size

    def entries(self) -> list[ArchiveEntry]:
        return list(self._entries)

    def file_entries(self) -> list[ArchiveEntry]:
        return [e for e in self._entries if not e.is_directory]

    def total_uncompressed_size(self) -> int:
        """Sum of declared sizes of all non-directory entries."""
        return sum(e.size for e in self._entries if not e.is_directory)

    def root_directory(self) -> Optional[str]:
        """Return the single top-level directory shared by every entry.

        Any entry stored at the archive root (no directory prefix) means
        there is no single root.
        """
        roots = set()
        for entry in self._entries:
            name = entry.name.lstrip("/")
            if "/" not in name:
                return None
            roots.add(name.split("/", 1)[0])

        if len(roots) == 1:
            return roots.pop()
        return None

    def has_entry(self, name: str) -> bool:
        return any(e.name == name for e in self._entries)

    def read_bytes(self, name: str) -> bytes:
        """Read one entry fully into memory."""
        try:
            return self._zip.read(name)
        except KeyError:
            raise NotFoundError(f"{name} not found in {self.path}")
        except (zipfile.BadZipFile, zlib.error, EOFError) as e:
            raise ValidationError(f"Corrupt entry {name}: {e}", field="package")
        except (NotImplementedError, RuntimeError) as e:
            # Unsupported compression method or an encrypted entry
            raise ValidationError(f"Cannot read entry {name}: {e}", field="package")

    def read_text(self, name: str, encoding: str = "utf-8") -> str:
        """Read one entry as text."""
        return self.read_bytes(name).decode(encoding)

    def _relative_names(self, strip_prefix: Optional[str]) -> list[tuple[ArchiveEntry, str]]:
        planned = []
        for entry in self._entries:
            name = entry.name
            if strip_prefix:
                prefix = strip_prefix.rstrip("/") + "/"
                if not name.startswith(prefix):
                    raise ValidationError(
                        f"Entry {name} is outside the package root {strip_prefix}",
                        field="package",
                    )
                name = name[len(prefix):]
            if not name.strip("/"):
                continue
            planned.append((entry, name))
        return planned

    def extract_all(
        self,
        target_dir: Path,
        overwrite: bool = False,
        strip_prefix: Optional[str] = None,
        token: Optional[CancellationToken] = None,
    ) -> list[Path]:
        """Extract every entry into target_dir.

        All entry names are validated before anything is written, so a
        malicious archive never leaves partial output behind. Symlink
        entries are skipped.

        Args:
            target_dir: Directory to extract into (created if missing)
            overwrite: Replace files that already exist
            strip_prefix: Leading directory to remove from every entry
            token: Checked before each entry is written

        Returns:
            Paths of the extracted files

        Raises:
            SecurityViolation: If any entry would escape target_dir
            FileSystemError: If writing fails
            CancelledError: If the token is cancelled mid-extraction
        """
        target_dir = Path(os.path.abspath(target_dir))
        planned = self._relative_names(strip_prefix)

        links = [rel for entry, rel in planned if entry.is_symlink]
        for rel in links:
            logger.warning("Skipping symlink entry %s in %s", rel, self.path)
        planned = [(entry, rel) for entry, rel in planned if not entry.is_symlink]

        check_entries(target_dir, [rel for _, rel in planned])

        try:
            target_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FileSystemError("mkdir", target_dir, str(e))

        written = []
        for entry, rel in planned:
            raise_if_cancelled(token)
            destination = validate_entry_path(target_dir, rel)
            if entry.is_directory:
                self._make_directory(destination, entry.mode)
            else:
                self.extract_entry(entry, destination, overwrite)
                written.append(destination)

        return written

    def _make_directory(self, destination: Path, mode: int) -> None:
        try:
            destination.mkdir(parents=True, exist_ok=True)
            os.chmod(destination, (mode or DEFAULT_DIR_MODE) | 0o700)
        except OSError as e:
            raise FileSystemError("mkdir", destination, str(e))

    def extract_entry(self, entry: ArchiveEntry, destination: Path, overwrite: bool = False) -> None:
        """Write one file entry to an already-validated destination."""
        if os.path.lexists(destination):
            if not overwrite:
                raise FileSystemError("extract", destination, "file already exists")
            if destination.is_dir() and not destination.is_symlink():
                raise FileSystemError("extract", destination, "a directory is in the way")
            destination.unlink()

        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            with self._zip.open(entry.name) as source, open(destination, "wb") as sink:
                shutil.copyfileobj(source, sink)
            os.chmod(destination, (entry.mode or DEFAULT_FILE_MODE) | 0o600)
        except (zipfile.BadZipFile, zlib.error, EOFError) as e:
            raise ValidationError(f"Corrupt entry {entry.name}: {e}", field="package")
        except (NotImplementedError, RuntimeError) as e:
            raise ValidationError(f"Cannot read entry {entry.name}: {e}", field="package")
        except OSError as e:
            raise FileSystemError("extract", destination, str(e))


def open_archive(path: Path) -> SkillArchive:
    """Open a package for reading."""
    return SkillArchive(path)
