"""Scaffold generator for new skills."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import yaml

from skillkeeper.frontmatter import SKILL_FILE
from skillkeeper.scope import get_skills_dir
from skillkeeper.validator import validate_skill_name


def generate_frontmatter(name: str, description: str = "") -> str:
    """Generate the YAML frontmatter block for SKILL.md."""
    data = {
        "name": name,
        "description": description or f"Describe what {name} does and when to use it",
    }
    return "---\n" + yaml.dump(data, default_flow_style=False, sort_keys=False, allow_unicode=True) + "---\n"


def generate_skill_md(name: str, description: str = "") -> str:
    """Generate the SKILL.md content for a new skill."""
    title = name.replace("-", " ").title()
    return f"""{generate_frontmatter(name, description)}
# {title}

## Instructions

Explain step by step what to do when this skill is used.

## Scripts

Put helper scripts in `scripts/` and reference them from the instructions.
"""


def create_skill_scaffold(
    name: str,
    output_dir: Optional[Path] = None,
    description: str = "",
    force: bool = False,
) -> Path:
    """Create a new skill directory.

    Args:
        name: Skill name (lowercase letters, digits and hyphens)
        output_dir: Parent directory (defaults to the project skills directory)
        description: Description for the frontmatter
        force: If True, write into an existing skill directory

    Returns:
        Path to the created skill directory

    Raises:
        ValidationError: If the name is not a valid skill name
        FileExistsError: If the skill directory already exists and force is False
    """
    validate_skill_name(name)

    output_dir = Path(output_dir) if output_dir is not None else get_skills_dir("project")
    skill_dir = output_dir / name

    if skill_dir.exists() and not force:
        raise FileExistsError(f"Skill directory already exists: {skill_dir}")

    scripts_dir = skill_dir / "scripts"
    scripts_dir.mkdir(parents=True, exist_ok=True)

    (skill_dir / SKILL_FILE).write_text(generate_skill_md(name, description), encoding="utf-8")
    (scripts_dir / ".gitkeep").write_text("")

    return skill_dir
