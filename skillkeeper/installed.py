"""List skills installed in the project and personal scopes."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from skillkeeper.discovery import collect_nested, load_gitignore
from skillkeeper.frontmatter import SKILL_FILE, read_skill_metadata
from skillkeeper.scope import resolve_scope


@dataclass
class InstalledSkill:
    """Information about an installed skill."""

    name: str
    description: str
    path: Path
    scope: str
    version: Optional[str] = None


def list_skills_in(skills_dir: Path, scope_label: str) -> list[InstalledSkill]:
    """List skill directories (those containing SKILL.md) in one directory."""
    skills_dir = Path(skills_dir)
    if not skills_dir.is_dir():
        return []

    skills = []
    for item in skills_dir.iterdir():
        if item.name.startswith(".") or not item.is_dir():
            continue
        if not (item / SKILL_FILE).is_file():
            continue

        metadata = read_skill_metadata(item)
        if metadata is None:
            skills.append(
                InstalledSkill(
                    name=item.name,
                    description=f"(invalid {SKILL_FILE})",
                    path=item,
                    scope=scope_label,
                )
            )
            continue

        skills.append(
            InstalledSkill(
                name=item.name,
                description=metadata.description or "",
                path=item,
                scope=scope_label,
                version=metadata.version,
            )
        )

    return sorted(skills, key=lambda s: s.name)


def list_installed_skills(
    scope: Optional[str] = None,
    cwd: Optional[Path] = None,
    home: Optional[Path] = None,
) -> list[InstalledSkill]:
    """List installed skills.

    Args:
        scope: "project", "personal", a directory path, or None for both
            built-in scopes
        cwd: Project directory
        home: Home directory

    Returns:
        Skills sorted by scope, then name
    """
    scopes = [scope] if scope is not None else ["personal", "project"]

    skills: list[InstalledSkill] = []
    for name in scopes:
        info = resolve_scope(name, cwd=cwd, home=home)
        skills.extend(list_skills_in(info.path, info.label))

    return sorted(skills, key=lambda s: (s.scope, s.name))


def is_skill_installed(
    skill_name: str,
    scope: str = "project",
    cwd: Optional[Path] = None,
    home: Optional[Path] = None,
) -> bool:
    """Check whether a skill directory with SKILL.md exists in a scope."""
    info = resolve_scope(scope, cwd=cwd, home=home)
    return (info.path / skill_name / SKILL_FILE).is_file()


def list_nested_skills(
    project_root: Path,
    max_depth: int = 3,
    respect_gitignore: bool = True,
) -> tuple[list[InstalledSkill], bool]:
    """List skills in every .claude/skills directory below project_root.

    Returns:
        (skills, depth_limit_reached)
    """
    project_root = Path(project_root).resolve()
    ignore = load_gitignore(project_root) if respect_gitignore else None
    result = collect_nested(project_root, max_depth, ignore)

    skills = []
    for skills_dir in result.directories:
        label = skills_dir.parent.parent.relative_to(project_root).as_posix()
        skills.extend(list_skills_in(skills_dir, label or "."))

    return skills, result.depth_limit_reached
