"""Tests for uninstalling skills."""

import os
from pathlib import Path
from unittest.mock import patch

from skillkeeper.cancellation import CancellationToken
from skillkeeper.config import ResourceLimits
from skillkeeper.errors import (
    ExitCode,
    LockContentionError,
    NotFoundError,
    SecurityReason,
    ValidationError,
)
from skillkeeper.lock import acquire_lock, get_lock_path
from skillkeeper.uninstaller import (
    UninstallCancelled,
    UninstallDryRunPreview,
    UninstallFailed,
    UninstallPartial,
    UninstallSuccess,
    uninstall_skill,
    uninstall_skills,
)


def write_stale_lock(scope: Path, name: str) -> Path:
    lock_path = get_lock_path(scope, name)
    lock_path.write_text('{"pid": 999999, "timestamp": "", "operationType": "update"}')
    return lock_path


# =============================================================================
# Uninstall
# =============================================================================


class TestUninstall:
    """Tests for uninstall_skill function."""

    def test_uninstall(self, scope_dir: Path, make_skill):
        """The skill directory and its files are removed."""
        make_skill(scope_dir, "foo", {"scripts/run.sh": "echo"})

        outcome = uninstall_skill("foo", scope=str(scope_dir))

        assert isinstance(outcome, UninstallSuccess)
        assert outcome.summary.files_deleted == 2
        assert outcome.summary.skill_directory_deleted
        assert list(scope_dir.iterdir()) == []

    def test_stale_lock_with_force(self, scope_dir: Path, make_skill):
        """force clears a lock left by a dead process."""
        make_skill(scope_dir, "foo", {"a.txt": "aaa"})
        write_stale_lock(scope_dir, "foo")

        with patch("skillkeeper.lock.is_process_alive", return_value=False):
            outcome = uninstall_skill("foo", scope=str(scope_dir), force=True)

        assert isinstance(outcome, UninstallSuccess)
        assert outcome.summary.bytes_freed > 0
        assert not (scope_dir / "foo").exists()
        assert not get_lock_path(scope_dir, "foo").exists()

    def test_stale_lock_without_force(self, scope_dir: Path, make_skill):
        """Without force or consent a stale lock blocks removal."""
        make_skill(scope_dir, "foo")
        write_stale_lock(scope_dir, "foo")

        with patch("skillkeeper.lock.is_process_alive", return_value=False):
            outcome = uninstall_skill("foo", scope=str(scope_dir))

        assert isinstance(outcome.error, LockContentionError)
        assert (scope_dir / "foo" / "SKILL.md").exists()

    def test_live_lock(self, scope_dir: Path, make_skill):
        """A live lock is never cleared, even with force."""
        make_skill(scope_dir, "foo")
        acquire_lock(scope_dir, "foo", "update")

        outcome = uninstall_skill("foo", scope=str(scope_dir), force=True)

        assert isinstance(outcome, UninstallFailed)
        assert (scope_dir / "foo").exists()

    def test_not_found(self, scope_dir: Path):
        """Missing skills are not-found."""
        outcome = uninstall_skill("foo", scope=str(scope_dir))

        assert isinstance(outcome.error, NotFoundError)
        assert outcome.exit_code == ExitCode.NOT_FOUND

    def test_invalid_name(self, scope_dir: Path):
        """Names that could address other paths are refused."""
        outcome = uninstall_skill("..", scope=str(scope_dir))
        assert isinstance(outcome.error, ValidationError)

    def test_missing_skill_md_requires_force(self, scope_dir: Path):
        """Directories without SKILL.md are only removed with force."""
        (scope_dir / "foo").mkdir()
        (scope_dir / "foo" / "data.txt").write_text("x")

        refused = uninstall_skill("foo", scope=str(scope_dir))
        forced = uninstall_skill("foo", scope=str(scope_dir), force=True)

        assert isinstance(refused.error, ValidationError)
        assert isinstance(forced, UninstallSuccess)

    def test_symlink_escape(self, scope_dir: Path, tmp_path: Path, make_skill):
        """A skill symlinked from outside the scope is refused."""
        real = make_skill(tmp_path / "elsewhere", "foo")
        os.symlink(real, scope_dir / "foo")

        outcome = uninstall_skill("foo", scope=str(scope_dir), force=True)

        assert outcome.error.reason == SecurityReason.SYMLINK_ESCAPE
        assert (real / "SKILL.md").exists()

    def test_inner_symlinks_not_followed(self, scope_dir: Path, tmp_path: Path, make_skill):
        """Symlinks inside the skill are unlinked, their targets kept."""
        outside = tmp_path / "outside"
        outside.mkdir()
        (outside / "keep.txt").write_text("keep")
        skill = make_skill(scope_dir, "foo")
        os.symlink(outside, skill / "linked")

        outcome = uninstall_skill("foo", scope=str(scope_dir))

        assert isinstance(outcome, UninstallSuccess)
        assert outcome.summary.symlinks_deleted == 1
        assert (outside / "keep.txt").read_text() == "keep"

    def test_hard_links_require_force(self, scope_dir: Path, tmp_path: Path, make_skill):
        """Hard-linked files need force; the other link survives."""
        skill = make_skill(scope_dir, "foo", {"a.txt": "a"})
        os.link(skill / "a.txt", tmp_path / "other.txt")

        refused = uninstall_skill("foo", scope=str(scope_dir))
        forced = uninstall_skill("foo", scope=str(scope_dir), force=True)

        assert refused.error.reason == SecurityReason.HARD_LINK_DETECTED
        assert isinstance(forced, UninstallSuccess)
        assert (tmp_path / "other.txt").read_text() == "a"

    def test_resource_limits(self, scope_dir: Path, make_skill):
        """Oversized skills need force."""
        make_skill(scope_dir, "foo", {"a.txt": "a", "b.txt": "b"})
        limits = ResourceLimits(max_file_count=1)

        outcome = uninstall_skill("foo", scope=str(scope_dir), limits=limits)

        assert isinstance(outcome.error, ValidationError)


# =============================================================================
# Preview, confirmation and interruption
# =============================================================================


class TestUninstallControl:
    """Tests for dry runs, confirmation, cancellation and timeouts."""

    def test_dry_run(self, scope_dir: Path, make_skill):
        """A dry run lists files without deleting."""
        make_skill(scope_dir, "foo", {"scripts/run.sh": "echo"})

        outcome = uninstall_skill("foo", scope=str(scope_dir), dry_run=True)

        assert isinstance(outcome, UninstallDryRunPreview)
        assert sorted(outcome.files) == ["SKILL.md", "scripts", "scripts/run.sh"]
        assert outcome.summary.file_count == 2
        assert (scope_dir / "foo" / "scripts" / "run.sh").exists()

    def test_declined(self, scope_dir: Path, make_skill):
        """Declining keeps the skill."""
        make_skill(scope_dir, "foo")

        outcome = uninstall_skill("foo", scope=str(scope_dir), confirm=lambda prompt: False)

        assert isinstance(outcome, UninstallCancelled)
        assert (scope_dir / "foo").exists()

    def test_cancel_mid_removal(self, scope_dir: Path, make_skill):
        """Cancelling stops deletion and reports what is left."""
        make_skill(scope_dir, "foo", {"a.txt": "a", "b.txt": "b", "c.txt": "c"})
        token = CancellationToken()

        def on_progress(progress):
            token.cancel("interrupted")

        outcome = uninstall_skill("foo", scope=str(scope_dir), token=token, on_progress=on_progress)

        assert isinstance(outcome, UninstallCancelled)
        assert outcome.summary.files_deleted == 1
        assert outcome.files_remaining == 3
        assert not get_lock_path(scope_dir, "foo").exists()

    def test_timeout_is_partial(self, scope_dir: Path, make_skill):
        """Running out of time yields a partial uninstall."""
        make_skill(scope_dir, "foo", {"a.txt": "a"})

        with patch("skillkeeper.lifecycle.Deadline.expired", new=True):
            outcome = uninstall_skill("foo", scope=str(scope_dir))

        assert isinstance(outcome, UninstallPartial)
        assert outcome.exit_code == ExitCode.FILESYSTEM_ERROR
        assert "timed out" in outcome.last_error
        assert outcome.files_remaining == 1


# =============================================================================
# Batch uninstall
# =============================================================================


class TestBatchUninstall:
    """Tests for uninstall_skills function."""

    def test_continues_past_failures(self, scope_dir: Path, make_skill):
        """One missing skill does not stop the others."""
        make_skill(scope_dir, "foo", {"a.txt": "aa"})
        make_skill(scope_dir, "bar")

        result = uninstall_skills(["foo", "missing", "bar"], scope=str(scope_dir))

        assert result.succeeded == ["foo", "bar"]
        assert result.failed == ["missing"]
        assert result.files_deleted == 3
        assert result.bytes_freed > 0
        assert result.exit_code == ExitCode.NOT_FOUND

    def test_stops_when_cancelled(self, scope_dir: Path, make_skill):
        """A cancelled token stops the batch."""
        make_skill(scope_dir, "foo")
        token = CancellationToken()
        token.cancel("interrupted")

        result = uninstall_skills(["foo"], scope=str(scope_dir), token=token)

        assert result.outcomes == {}
        assert (scope_dir / "foo").exists()
