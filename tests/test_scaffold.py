"""Tests for the scaffold module."""

import pytest
import yaml

from skillkeeper.errors import ValidationError
from skillkeeper.frontmatter import parse_frontmatter
from skillkeeper.scaffold import (
    create_skill_scaffold,
    generate_frontmatter,
    generate_skill_md,
)
from skillkeeper.validator import validate_skill_directory


class TestGenerateFrontmatter:
    """Tests for frontmatter generation."""

    def test_generates_valid_yaml(self):
        """Test that the block between delimiters is valid YAML."""
        content = generate_frontmatter("test-skill")
        parsed = yaml.safe_load(content.strip().strip("-"))

        assert parsed["name"] == "test-skill"
        assert parsed["description"]

    def test_includes_description(self):
        """Test that custom description is included."""
        content = generate_frontmatter("test-skill", description="My custom description")
        data, _ = parse_frontmatter(content)

        assert data["description"] == "My custom description"

    def test_quotes_special_characters(self):
        """Test that YAML-significant characters survive."""
        data, _ = parse_frontmatter(generate_frontmatter("x", description="Use: when # needed"))
        assert data["description"] == "Use: when # needed"


class TestGenerateSkillMd:
    """Tests for SKILL.md generation."""

    def test_includes_title(self):
        """Test that the title is derived from the name."""
        assert "# My Skill" in generate_skill_md("my-skill")

    def test_includes_sections(self):
        """Test that instruction sections are present."""
        content = generate_skill_md("my-skill")
        assert "## Instructions" in content
        assert "## Scripts" in content


class TestCreateSkillScaffold:
    """Tests for create_skill_scaffold function."""

    def test_creates_directory_structure(self, tmp_path):
        """Test that directory structure is created."""
        skill_dir = create_skill_scaffold("test-skill", tmp_path)

        assert skill_dir == tmp_path / "test-skill"
        assert (skill_dir / "SKILL.md").is_file()
        assert (skill_dir / "scripts" / ".gitkeep").is_file()

    def test_scaffold_validates(self, tmp_path):
        """Test that a fresh scaffold is a valid skill."""
        skill_dir = create_skill_scaffold("test-skill", tmp_path, description="Does things")
        assert validate_skill_directory(skill_dir).valid

    def test_defaults_to_project_skills_dir(self, tmp_path, monkeypatch):
        """Test the default location is ./.claude/skills."""
        monkeypatch.chdir(tmp_path)
        skill_dir = create_skill_scaffold("test-skill")
        assert skill_dir == tmp_path.resolve() / ".claude" / "skills" / "test-skill"

    def test_rejects_invalid_name(self, tmp_path):
        """Test that invalid names are refused."""
        with pytest.raises(ValidationError):
            create_skill_scaffold("Test Skill", tmp_path)

    def test_raises_if_exists(self, tmp_path):
        """Test that existing directory raises error."""
        create_skill_scaffold("test-skill", tmp_path)

        with pytest.raises(FileExistsError):
            create_skill_scaffold("test-skill", tmp_path)

    def test_force_overwrites(self, tmp_path):
        """Test that force rewrites SKILL.md."""
        create_skill_scaffold("test-skill", tmp_path, description="first")
        skill_dir = create_skill_scaffold("test-skill", tmp_path, description="second", force=True)

        data, _ = parse_frontmatter((skill_dir / "SKILL.md").read_text())
        assert data["description"] == "second"
