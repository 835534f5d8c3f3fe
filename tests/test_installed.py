"""Tests for listing installed skills."""

from pathlib import Path

from skillkeeper.installed import (
    is_skill_installed,
    list_installed_skills,
    list_nested_skills,
    list_skills_in,
)


class TestListSkills:
    """Tests for list_skills_in and list_installed_skills."""

    def test_lists_valid_skills(self, scope_dir: Path, make_skill):
        """Skills are listed by name with their description."""
        make_skill(scope_dir, "beta", description="Second")
        make_skill(scope_dir, "alpha", description="First")

        skills = list_skills_in(scope_dir, "custom")

        assert [s.name for s in skills] == ["alpha", "beta"]
        assert skills[0].description == "First"

    def test_skips_non_skills(self, scope_dir: Path, make_skill):
        """Hidden entries, files and directories without SKILL.md are skipped."""
        make_skill(scope_dir, "foo")
        (scope_dir / ".foo.skillkeeper-old-1234abcd").mkdir()
        (scope_dir / ".lock-foo").write_text("{}")
        (scope_dir / "empty").mkdir()

        assert [s.name for s in list_skills_in(scope_dir, "custom")] == ["foo"]

    def test_invalid_skill_md(self, scope_dir: Path):
        """Unparseable SKILL.md is listed with a marker."""
        (scope_dir / "broken").mkdir()
        (scope_dir / "broken" / "SKILL.md").write_text("no frontmatter")

        skills = list_skills_in(scope_dir, "custom")

        assert skills[0].description == "(invalid SKILL.md)"

    def test_both_scopes(self, tmp_path: Path, make_skill):
        """Without a scope, personal and project skills are listed."""
        home = tmp_path / "home"
        project = tmp_path / "project"
        make_skill(home / ".claude" / "skills", "mine")
        make_skill(project / ".claude" / "skills", "ours")

        skills = list_installed_skills(cwd=project, home=home)

        assert [(s.scope, s.name) for s in skills] == [("personal", "mine"), ("project", "ours")]

    def test_is_installed(self, tmp_path: Path, make_skill):
        """is_skill_installed checks for SKILL.md."""
        make_skill(tmp_path / ".claude" / "skills", "foo")

        assert is_skill_installed("foo", cwd=tmp_path)
        assert not is_skill_installed("bar", cwd=tmp_path)


class TestListNestedSkills:
    """Tests for list_nested_skills function."""

    def test_labels_by_package(self, tmp_path: Path, make_skill):
        """Skills are labelled with their package directory."""
        make_skill(tmp_path / ".claude" / "skills", "root-skill")
        make_skill(tmp_path / "packages" / "web" / ".claude" / "skills", "web-skill")

        skills, limited = list_nested_skills(tmp_path)

        assert {(s.scope, s.name) for s in skills} == {
            (".", "root-skill"),
            ("packages/web", "web-skill"),
        }
        assert not limited

    def test_gitignore_respected(self, tmp_path: Path, make_skill):
        """Ignored directories are skipped unless disabled."""
        (tmp_path / ".gitignore").write_text("generated/\n")
        make_skill(tmp_path / "generated" / ".claude" / "skills", "gen")

        ignored, _ = list_nested_skills(tmp_path)
        included, _ = list_nested_skills(tmp_path, respect_gitignore=False)

        assert ignored == []
        assert [s.name for s in included] == ["gen"]
