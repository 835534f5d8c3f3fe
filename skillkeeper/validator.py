"""Validation of skill names and skill directories."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from skillkeeper.errors import ValidationError
from skillkeeper.frontmatter import SKILL_FILE, FrontmatterError, parse_frontmatter

NAME_PATTERN = re.compile(r"^[a-z0-9]+(-[a-z0-9]+)*$")
MAX_NAME_LENGTH = 64
MAX_DESCRIPTION_LENGTH = 1024


def check_skill_name(name: str) -> Optional[str]:
    """Return an error message if name cannot be a skill directory name.

    Names are lowercase ASCII letters and digits separated by single
    hyphens, at most 64 characters, and can never name a path.
    """
    if not name or not name.strip():
        return "Skill name cannot be empty"

    if any(ord(c) < 32 or ord(c) == 127 for c in name):
        return "Skill name cannot contain control characters"

    if not name.isascii():
        return "Skill name must be ASCII"

    if "/" in name or "\\" in name:
        return "Skill name cannot contain path separators"

    if name in (".", ".."):
        return "Skill name cannot be '.' or '..'"

    if len(name) > MAX_NAME_LENGTH:
        return f"Skill name must be {MAX_NAME_LENGTH} characters or less (got {len(name)})"

    if not NAME_PATTERN.match(name):
        return (
            "Skill name must contain only lowercase letters, numbers, and hyphens, "
            f"and cannot start or end with a hyphen (got '{name}')"
        )

    return None


def validate_skill_name(name: str) -> str:
    """Return name unchanged, or raise ValidationError."""
    error = check_skill_name(name)
    if error:
        raise ValidationError(error, field="skill_name")
    return name


@dataclass
class ValidationResult:
    """Result of validating a skill directory.

    Attributes:
        skill_path: Directory that was validated
        skill_name: Name from frontmatter, if it could be read
        errors: Problems that make the skill invalid
        warnings: Non-fatal observations
    """

    skill_path: Path
    skill_name: Optional[str] = None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


def validate_skill_directory(skill_dir: Path) -> ValidationResult:
    """Validate the SKILL.md of a skill directory.

    Checks that SKILL.md exists and has parseable frontmatter with a name
    and description, that the name is well formed and matches the
    directory name, and that the description is short and has no angle
    brackets.

    Args:
        skill_dir: Skill directory

    Returns:
        ValidationResult
    """
    skill_dir = Path(skill_dir)
    result = ValidationResult(skill_path=skill_dir)

    skill_md = skill_dir / SKILL_FILE
    if not skill_md.is_file():
        result.errors.append(f"{SKILL_FILE} not found in {skill_dir}")
        return result

    try:
        content = skill_md.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        result.errors.append(f"Cannot read {SKILL_FILE}: {e}")
        return result

    try:
        frontmatter, body = parse_frontmatter(content)
    except FrontmatterError as e:
        result.errors.append(str(e))
        return result

    name = frontmatter.get("name")
    description = frontmatter.get("description")

    missing = [
        key
        for key, value in (("name", name), ("description", description))
        if value is None or (isinstance(value, str) and not value.strip())
    ]
    if missing:
        label = "field" if len(missing) == 1 else "fields"
        result.errors.append(f"Missing required {label}: {', '.join(missing)}")

    for key, value in (("name", name), ("description", description)):
        if value is not None and not isinstance(value, str):
            result.errors.append(f"Field '{key}' must be a string")

    if isinstance(name, str) and name.strip():
        result.skill_name = name
        error = check_skill_name(name)
        if error:
            result.errors.append(error)
        elif name != skill_dir.name:
            result.errors.append(
                f"Skill name '{name}' does not match directory name '{skill_dir.name}'"
            )

    if isinstance(description, str) and description.strip():
        if len(description) > MAX_DESCRIPTION_LENGTH:
            result.errors.append(
                f"Description must be {MAX_DESCRIPTION_LENGTH} characters or less "
                f"(got {len(description)})"
            )
        if "<" in description or ">" in description:
            result.errors.append("Description cannot contain angle brackets (< or >)")

    if not body.strip():
        result.warnings.append(f"{SKILL_FILE} has no content after the frontmatter")

    return result
