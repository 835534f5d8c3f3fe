"""Tests for archive creation and extraction."""

import os
import stat
import zipfile
from pathlib import Path

import pytest

from conftest import rewrite_entry_header
from skillkeeper.archive import (
    ArchiveWriter,
    SkillArchive,
    create_package_archive,
    format_file_size,
    is_excluded,
    is_valid_zip,
    open_archive,
)
from skillkeeper.cancellation import CancellationToken
from skillkeeper.errors import (
    CancelledError,
    FileSystemError,
    NotFoundError,
    SecurityReason,
    SecurityViolation,
    ValidationError,
)


# =============================================================================
# Exclusion Tests
# =============================================================================


class TestIsExcluded:
    """Tests for is_excluded function."""

    def test_directory_pattern_at_root(self):
        """A directory pattern matches at the archive root."""
        assert is_excluded(".git/config")

    def test_directory_pattern_nested(self):
        """A directory pattern matches at any depth."""
        assert is_excluded("foo/lib/node_modules/pkg/index.js")

    def test_glob_suffix(self):
        """Glob suffix patterns match file endings."""
        assert is_excluded("foo/debug.log")
        assert is_excluded("foo/cache/mod.pyc")

    def test_exact_name(self):
        """Exact-name patterns match the last component."""
        assert is_excluded("foo/.DS_Store")

    def test_regular_file(self):
        """Ordinary files are kept."""
        assert not is_excluded("foo/scripts/run.sh")
        assert not is_excluded("foo/logger.py")

    def test_custom_patterns(self):
        """Custom patterns replace the defaults."""
        assert is_excluded("foo/secret.env", ["*.env"])
        assert not is_excluded("foo/.git/config", [])


# =============================================================================
# Writing Tests
# =============================================================================


class TestArchiveWriter:
    """Tests for archive creation."""

    def test_add_directory_with_prefix(self, tmp_path: Path, make_skill):
        """Files are stored under the archive prefix."""
        skill = make_skill(tmp_path / "src", "foo", {"scripts/run.sh": "echo hi"})
        output = tmp_path / "foo.skill"

        count = create_package_archive(skill, output, "foo")

        assert count == 2
        with zipfile.ZipFile(output) as zf:
            assert sorted(zf.namelist()) == ["foo/SKILL.md", "foo/scripts/run.sh"]

    def test_exclusions_applied_to_nested_paths(self, tmp_path: Path, make_skill):
        """Excluded files are left out at every depth."""
        skill = make_skill(
            tmp_path / "src",
            "foo",
            {
                "lib/node_modules/x/index.js": "x",
                ".git/HEAD": "ref",
                "debug.log": "log",
                "keep.txt": "keep",
            },
        )
        output = tmp_path / "foo.skill"

        create_package_archive(skill, output, "foo")

        with zipfile.ZipFile(output) as zf:
            assert sorted(zf.namelist()) == ["foo/SKILL.md", "foo/keep.txt"]

    def test_symlinks_skipped(self, tmp_path: Path, make_skill):
        """Symlinks are not packaged."""
        skill = make_skill(tmp_path / "src", "foo")
        os.symlink(tmp_path, skill / "escape")
        output = tmp_path / "foo.skill"

        count = create_package_archive(skill, output, "foo")

        assert count == 1

    def test_no_partial_file_after_finalize(self, tmp_path: Path, make_skill):
        """Only the final archive remains once finalized."""
        skill = make_skill(tmp_path / "src", "foo")
        output = tmp_path / "out" / "foo.skill"

        create_package_archive(skill, output, "foo")

        assert [p.name for p in output.parent.iterdir()] == ["foo.skill"]
        assert is_valid_zip(output)

    def test_abort_on_error(self, tmp_path: Path):
        """An exception inside the writer discards the partial archive."""
        output = tmp_path / "out" / "foo.skill"

        with pytest.raises(RuntimeError):
            with ArchiveWriter(output) as writer:
                writer.add_file(Path(__file__), "foo/test.py")
                raise RuntimeError("boom")

        assert not output.exists()
        assert list(output.parent.iterdir()) == []


# =============================================================================
# Reading Tests
# =============================================================================


class TestSkillArchive:
    """Tests for reading archives."""

    def test_missing_archive(self, tmp_path: Path):
        """A missing file is not-found."""
        with pytest.raises(NotFoundError):
            open_archive(tmp_path / "missing.skill")

    def test_not_a_zip(self, tmp_path: Path):
        """A non-zip file is a validation error."""
        path = tmp_path / "bad.skill"
        path.write_text("not a zip")
        with pytest.raises(ValidationError):
            open_archive(path)

    def test_root_directory(self, tmp_path: Path, make_zip):
        """A single shared top-level directory is detected."""
        path = make_zip(tmp_path / "a.zip", {"foo/SKILL.md": "x", "foo/a/b.txt": "y"})
        with open_archive(path) as archive:
            assert archive.root_directory() == "foo"

    def test_root_directory_with_root_file(self, tmp_path: Path, make_zip):
        """Any entry at the archive root disqualifies a single root."""
        path = make_zip(tmp_path / "a.zip", {"foo/SKILL.md": "x", "README.md": "y"})
        with open_archive(path) as archive:
            assert archive.root_directory() is None

    def test_root_directory_with_two_roots(self, tmp_path: Path, make_zip):
        """Two top-level directories mean no single root."""
        path = make_zip(tmp_path / "a.zip", {"foo/SKILL.md": "x", "bar/SKILL.md": "y"})
        with open_archive(path) as archive:
            assert archive.root_directory() is None

    def test_sizes(self, tmp_path: Path, make_zip):
        """Uncompressed size sums file entries."""
        path = make_zip(tmp_path / "a.zip", {"foo/a.txt": "12345", "foo/b.txt": "123"})
        with open_archive(path) as archive:
            assert archive.total_uncompressed_size() == 8
            assert len(archive.file_entries()) == 2


class TestExtractAll:
    """Tests for SkillArchive.extract_all."""

    def test_extract_with_strip_prefix(self, tmp_path: Path, make_zip):
        """The root directory can be stripped on extraction."""
        path = make_zip(tmp_path / "a.zip", {"foo/SKILL.md": "x", "foo/scripts/run.sh": "y"})
        target = tmp_path / "out"

        with open_archive(path) as archive:
            written = archive.extract_all(target, strip_prefix="foo")

        assert sorted(p.relative_to(target).as_posix() for p in written) == [
            "SKILL.md",
            "scripts/run.sh",
        ]
        assert (target / "scripts" / "run.sh").read_text() == "y"

    def test_traversal_writes_nothing(self, tmp_path: Path, make_zip):
        """A malicious entry aborts before any file is written."""
        path = make_zip(
            tmp_path / "evil.zip",
            {"a.txt": "first", "../../etc/passwd": "root::0:0", "z.txt": "last"},
        )
        target = tmp_path / "out"

        with open_archive(path) as archive:
            with pytest.raises(SecurityViolation) as exc_info:
                archive.extract_all(target)

        assert exc_info.value.reason == SecurityReason.PATH_TRAVERSAL
        assert not target.exists()

    def test_refuses_overwrite(self, tmp_path: Path, make_zip):
        """Existing files are kept unless overwrite is set."""
        path = make_zip(tmp_path / "a.zip", {"a.txt": "new"})
        target = tmp_path / "out"
        target.mkdir()
        (target / "a.txt").write_text("old")

        with open_archive(path) as archive:
            with pytest.raises(FileSystemError):
                archive.extract_all(target)
            archive.extract_all(target, overwrite=True)

        assert (target / "a.txt").read_text() == "new"

    def test_symlink_entries_skipped(self, tmp_path: Path):
        """Symlink entries are never materialized."""
        path = tmp_path / "links.zip"
        with zipfile.ZipFile(path, "w") as zf:
            zf.writestr("foo/SKILL.md", "x")
            info = zipfile.ZipInfo("foo/link")
            info.external_attr = (stat.S_IFLNK | 0o777) << 16
            zf.writestr(info, "/etc/passwd")

        target = tmp_path / "out"
        with open_archive(path) as archive:
            archive.extract_all(target, strip_prefix="foo")

        assert (target / "SKILL.md").exists()
        assert not os.path.lexists(target / "link")

    def test_permissions_from_archive(self, tmp_path: Path):
        """File modes come from the archive without setuid bits."""
        path = tmp_path / "modes.zip"
        with zipfile.ZipFile(path, "w") as zf:
            info = zipfile.ZipInfo("run.sh")
            info.external_attr = (stat.S_IFREG | stat.S_ISUID | 0o755) << 16
            zf.writestr(info, "#!/bin/sh\n")

        target = tmp_path / "out"
        with open_archive(path) as archive:
            archive.extract_all(target)

        mode = (target / "run.sh").stat().st_mode
        assert mode & 0o777 == 0o755
        assert not mode & stat.S_ISUID

    def test_cancellation(self, tmp_path: Path, make_zip):
        """A cancelled token stops extraction."""
        path = make_zip(tmp_path / "a.zip", {"a.txt": "a", "b.txt": "b"})
        token = CancellationToken()
        token.cancel("test")

        with open_archive(path) as archive:
            with pytest.raises(CancelledError):
                archive.extract_all(tmp_path / "out", token=token)


class TestUnreadableEntries:
    """Tests for entries zipfile cannot decode."""

    def test_unsupported_compression(self, tmp_path: Path, make_zip):
        """An unknown compression method is a package validation error."""
        path = make_zip(tmp_path / "a.zip", {"foo/SKILL.md": "x", "foo/data.txt": "data"})
        rewrite_entry_header(path, "foo/data.txt", method=99)

        with open_archive(path) as archive:
            assert archive.read_text("foo/SKILL.md") == "x"
            with pytest.raises(ValidationError):
                archive.read_bytes("foo/data.txt")
            with pytest.raises(ValidationError):
                archive.extract_all(tmp_path / "out", strip_prefix="foo")

    def test_encrypted_entry(self, tmp_path: Path, make_zip):
        """An encrypted entry is a package validation error."""
        path = make_zip(tmp_path / "a.zip", {"foo/SKILL.md": "x", "foo/secret.txt": "s"})
        rewrite_entry_header(path, "foo/secret.txt", flag_bits=0x1)

        with open_archive(path) as archive:
            with pytest.raises(ValidationError):
                archive.read_bytes("foo/secret.txt")


class TestFormatFileSize:
    """Tests for format_file_size function."""

    def test_units(self):
        """Sizes are shown in the largest sensible unit."""
        assert format_file_size(512) == "512 B"
        assert format_file_size(2048) == "2.0 KB"
        assert format_file_size(3 * 1024 * 1024) == "3.0 MB"
