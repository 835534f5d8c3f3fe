"""Tests for the skillkeeper CLI."""

from pathlib import Path
from unittest.mock import patch

from typer.testing import CliRunner

from skillkeeper.cli import app
from skillkeeper.errors import ExitCode

runner = CliRunner()


def test_app_help():
    """Test that the CLI shows help without errors."""
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    assert "install" in result.output
    assert "uninstall" in result.output


# =============================================================================
# Authoring Commands
# =============================================================================


class TestNewCommand:
    """Tests for the new command."""

    def test_creates_skill_scaffold(self, tmp_path):
        """Test that a skill directory with SKILL.md is created."""
        result = runner.invoke(app, ["new", "my-skill", "--out", str(tmp_path)])

        assert result.exit_code == 0
        assert (tmp_path / "my-skill" / "SKILL.md").exists()
        assert "Next steps" in result.output

    def test_fails_if_exists(self, tmp_path):
        """Test that an existing skill is not overwritten."""
        runner.invoke(app, ["new", "my-skill", "--out", str(tmp_path)])
        result = runner.invoke(app, ["new", "my-skill", "--out", str(tmp_path)])

        assert result.exit_code == 1
        assert "--force" in result.output

    def test_invalid_name_fails(self, tmp_path):
        """Test that an invalid name is rejected."""
        result = runner.invoke(app, ["new", "My_Skill", "--out", str(tmp_path)])

        assert result.exit_code == ExitCode.INVALID_PACKAGE
        assert not (tmp_path / "My_Skill").exists()


class TestValidateCommand:
    """Tests for the validate command."""

    def test_valid_skill(self, tmp_path, make_skill):
        """Test that a valid skill passes."""
        skill = make_skill(tmp_path, "foo")
        result = runner.invoke(app, ["validate", str(skill)])

        assert result.exit_code == 0
        assert "valid" in result.output

    def test_invalid_skill(self, tmp_path):
        """Test that a directory without SKILL.md fails."""
        (tmp_path / "foo").mkdir()
        result = runner.invoke(app, ["validate", str(tmp_path / "foo")])

        assert result.exit_code == ExitCode.INVALID_PACKAGE
        assert "Validation failed" in result.output

    def test_strict_fails_on_warnings(self, tmp_path):
        """Test that warnings fail validation in strict mode."""
        skill = tmp_path / "foo"
        skill.mkdir()
        (skill / "SKILL.md").write_text("---\nname: foo\ndescription: d\n---\n")

        assert runner.invoke(app, ["validate", str(skill)]).exit_code == 0
        assert runner.invoke(app, ["validate", str(skill), "--strict"]).exit_code != 0


class TestPackageCommand:
    """Tests for the package command."""

    def test_creates_package(self, tmp_path, make_skill):
        """Test that a .skill file is written."""
        skill = make_skill(tmp_path / "src", "foo")
        result = runner.invoke(app, ["package", str(skill), "--out", str(tmp_path / "dist")])

        assert result.exit_code == 0
        assert (tmp_path / "dist" / "foo.skill").exists()
        assert "Package created" in result.output

    def test_missing_skill(self, tmp_path):
        """Test that a missing directory exits with not-found."""
        result = runner.invoke(app, ["package", str(tmp_path / "nope")])
        assert result.exit_code == ExitCode.NOT_FOUND


# =============================================================================
# Lifecycle Commands
# =============================================================================


class TestInstallCommand:
    """Tests for the install command."""

    def test_install(self, scope_dir, make_package):
        """Test installing into a custom scope."""
        package = make_package("foo", {"scripts/run.sh": "echo"})
        result = runner.invoke(app, ["install", str(package), "--scope", str(scope_dir)])

        assert result.exit_code == 0
        assert "Installed" in result.output
        assert (scope_dir / "foo" / "scripts" / "run.sh").exists()

    def test_overwrite_required(self, scope_dir, make_skill, make_package):
        """Test that an existing skill needs --force."""
        make_skill(scope_dir, "foo")
        result = runner.invoke(app, ["install", str(make_package("foo")), "--scope", str(scope_dir)])

        assert result.exit_code == ExitCode.FILESYSTEM_ERROR
        assert "already installed" in result.output

    def test_force_reinstall(self, scope_dir, make_skill, make_package):
        """Test that --force replaces an existing skill."""
        make_skill(scope_dir, "foo", {"old.txt": "old"})
        result = runner.invoke(
            app, ["install", str(make_package("foo")), "--scope", str(scope_dir), "--force"]
        )

        assert result.exit_code == 0
        assert "Reinstalled" in result.output
        assert not (scope_dir / "foo" / "old.txt").exists()

    def test_traversal_rejected(self, scope_dir, tmp_path, make_zip):
        """Test that a malicious package exits with a security error."""
        package = make_zip(tmp_path / "evil.skill", {"foo/SKILL.md": "x", "../evil.txt": "x"})
        result = runner.invoke(app, ["install", str(package), "--scope", str(scope_dir)])

        assert result.exit_code == ExitCode.SECURITY_ERROR
        assert "path-traversal" in result.output

    def test_dry_run(self, scope_dir, make_package):
        """Test that --dry-run writes nothing."""
        result = runner.invoke(
            app, ["install", str(make_package("foo")), "--scope", str(scope_dir), "--dry-run"]
        )

        assert result.exit_code == 0
        assert "Dry run" in result.output
        assert not (scope_dir / "foo").exists()


class TestUpdateCommand:
    """Tests for the update command."""

    def test_update(self, scope_dir, make_skill, make_package):
        """Test a confirmed update."""
        make_skill(scope_dir, "foo", {"a.txt": "old"})
        package = make_package("foo", {"a.txt": "new content"})

        result = runner.invoke(
            app, ["update", "foo", str(package), "--scope", str(scope_dir), "--yes"]
        )

        assert result.exit_code == 0
        assert "Updated" in result.output
        assert (scope_dir / "foo" / "a.txt").read_text() == "new content"

    def test_update_prompts(self, scope_dir, make_skill, make_package):
        """Test that answering no leaves the skill alone."""
        make_skill(scope_dir, "foo", {"a.txt": "old"})
        package = make_package("foo", {"a.txt": "new content"})

        result = runner.invoke(
            app, ["update", "foo", str(package), "--scope", str(scope_dir)], input="n\n"
        )

        assert result.exit_code == ExitCode.CANCELLED
        assert (scope_dir / "foo" / "a.txt").read_text() == "old"

    def test_dry_run_shows_diff(self, scope_dir, make_skill, make_package):
        """Test that --dry-run lists changed files."""
        make_skill(scope_dir, "foo", {"a.txt": "old"})
        package = make_package("foo", {"b.txt": "b"})

        result = runner.invoke(
            app, ["update", "foo", str(package), "--scope", str(scope_dir), "--dry-run"]
        )

        assert result.exit_code == 0
        assert "+ b.txt" in result.output
        assert "- a.txt" in result.output

    def test_not_installed(self, scope_dir, make_package):
        """Test updating a missing skill."""
        result = runner.invoke(
            app, ["update", "foo", str(make_package("foo")), "--scope", str(scope_dir), "--yes"]
        )
        assert result.exit_code == ExitCode.NOT_FOUND

    def test_rolled_back_exit_code(self, scope_dir, make_skill, make_package):
        """Test that a rolled-back update exits with its own code."""
        from skillkeeper.errors import FileSystemError
        from skillkeeper.updater import UpdateRolledBack

        make_skill(scope_dir, "foo")
        outcome = UpdateRolledBack(
            skill_name="foo",
            skill_path=scope_dir / "foo",
            failure_reason=str(FileSystemError("extract", scope_dir, "disk full")),
        )
        with patch("skillkeeper.updater.update_skill", return_value=outcome):
            result = runner.invoke(
                app, ["update", "foo", str(make_package("foo")), "--scope", str(scope_dir), "--yes"]
            )

        assert result.exit_code == ExitCode.ROLLED_BACK
        assert "Rolled back" in result.output


class TestUninstallCommand:
    """Tests for the uninstall command."""

    def test_uninstall_with_yes(self, scope_dir, make_skill):
        """Test removing a skill without prompting."""
        make_skill(scope_dir, "foo")
        result = runner.invoke(app, ["uninstall", "foo", "--scope", str(scope_dir), "--yes"])

        assert result.exit_code == 0
        assert "Uninstalled" in result.output
        assert not (scope_dir / "foo").exists()

    def test_uninstall_prompt_declined(self, scope_dir, make_skill):
        """Test that answering no keeps the skill."""
        make_skill(scope_dir, "foo")
        result = runner.invoke(app, ["uninstall", "foo", "--scope", str(scope_dir)], input="n\n")

        assert result.exit_code == ExitCode.CANCELLED
        assert (scope_dir / "foo").exists()

    def test_batch(self, scope_dir, make_skill):
        """Test removing several skills with one missing."""
        make_skill(scope_dir, "foo")
        make_skill(scope_dir, "bar")
        result = runner.invoke(
            app, ["uninstall", "foo", "missing", "bar", "--scope", str(scope_dir), "--yes"]
        )

        assert result.exit_code == ExitCode.NOT_FOUND
        assert "Removed 2 of 3" in result.output
        assert list(scope_dir.iterdir()) == []


# =============================================================================
# Inspection Commands
# =============================================================================


class TestListCommand:
    """Tests for the list command."""

    def test_lists_skills(self, scope_dir, make_skill):
        """Test that installed skills are shown."""
        make_skill(scope_dir, "foo")
        result = runner.invoke(app, ["list", "--scope", str(scope_dir)])

        assert result.exit_code == 0
        assert "foo" in result.output

    def test_empty(self, scope_dir):
        """Test the empty message."""
        result = runner.invoke(app, ["list", "--scope", str(scope_dir)])
        assert "No skills installed" in result.output


class TestDiscoverCommand:
    """Tests for the discover command."""

    def test_finds_nested(self, tmp_path: Path, make_skill):
        """Test that nested skills are reported."""
        make_skill(tmp_path / "repo" / "pkg" / ".claude" / "skills", "nested")
        result = runner.invoke(app, ["discover", str(tmp_path / "repo")])

        assert result.exit_code == 0
        assert "nested" in result.output

    def test_depth_warning(self, tmp_path: Path, make_skill):
        """Test that hitting the depth limit is reported."""
        make_skill(tmp_path / "repo" / "a" / "b" / ".claude" / "skills", "deep")
        result = runner.invoke(app, ["discover", str(tmp_path / "repo"), "--depth", "1"])

        assert "Stopped at depth 1" in result.output


class TestBackupsCommand:
    """Tests for the backups command."""

    def test_no_backups(self):
        """Test the empty message."""
        result = runner.invoke(app, ["backups"])
        assert "No backups found" in result.output

    def test_lists_kept_backup(self, scope_dir, make_skill, make_package):
        """Test that a kept backup is listed."""
        make_skill(scope_dir, "foo")
        runner.invoke(
            app,
            ["update", "foo", str(make_package("foo")), "--scope", str(scope_dir), "--yes", "--keep-backup"],
        )
        result = runner.invoke(app, ["backups", "foo"])

        assert result.exit_code == 0
        assert "foo" in result.output
