"""Tests for skill file enumeration."""

import os
from pathlib import Path

from skillkeeper.config import ResourceLimits
from skillkeeper.enumerator import (
    check_resource_limits,
    enumerate_skill_files,
    get_skill_summary,
)


class TestEnumerateSkillFiles:
    """Tests for enumerate_skill_files function."""

    def test_parents_before_children(self, tmp_path: Path, make_skill):
        """Every directory is yielded before its contents."""
        skill = make_skill(tmp_path, "foo", {"a/b/c.txt": "c"})

        paths = [info.relative_path for info in enumerate_skill_files(skill)]

        assert paths.index("a") < paths.index("a/b") < paths.index("a/b/c.txt")
        assert "SKILL.md" in paths

    def test_symlinks_are_leaves(self, tmp_path: Path, make_skill):
        """Symlinked directories are reported but never entered."""
        outside = tmp_path / "outside"
        outside.mkdir()
        (outside / "hidden.txt").write_text("x")
        skill = make_skill(tmp_path, "foo")
        os.symlink(outside, skill / "link")

        entries = {info.relative_path: info for info in enumerate_skill_files(skill)}

        assert entries["link"].is_symlink
        assert not entries["link"].is_directory
        assert "link/hidden.txt" not in entries


class TestSkillSummary:
    """Tests for get_skill_summary and check_resource_limits."""

    def test_counts(self, tmp_path: Path, make_skill):
        """Files, directories and bytes are counted."""
        skill = make_skill(tmp_path, "foo", {"scripts/run.sh": "12345"})
        os.symlink(skill / "SKILL.md", skill / "alias.md")

        summary = get_skill_summary(skill)

        assert summary.file_count == 2
        assert summary.directory_count == 1
        assert summary.symlink_count == 1
        assert summary.total_size == (skill / "SKILL.md").stat().st_size + 5
        assert summary.has_skill_md

    def test_within_limits(self, tmp_path: Path, make_skill):
        """A small skill exceeds nothing."""
        summary = get_skill_summary(make_skill(tmp_path, "foo"))
        assert check_resource_limits(summary) == []

    def test_exceeds_limits(self, tmp_path: Path, make_skill):
        """Both limits are reported."""
        summary = get_skill_summary(make_skill(tmp_path, "foo", {"a": "aa", "b": "bb"}))
        limits = ResourceLimits(max_total_size=1, max_file_count=1)

        assert len(check_resource_limits(summary, limits)) == 2
