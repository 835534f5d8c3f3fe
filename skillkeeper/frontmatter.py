"""SKILL.md frontmatter parsing."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import yaml

SKILL_FILE = "SKILL.md"

_FRONTMATTER_RE = re.compile(r"^---[ \t]*\r?\n(.*?)\r?\n---[ \t]*(?:\r?\n|$)", re.DOTALL)
_EMPTY_RE = re.compile(r"^---[ \t]*\r?\n---[ \t]*(?:\r?\n|$)")


class FrontmatterError(Exception):
    """Raised when SKILL.md frontmatter is missing or malformed."""

    pass


def parse_frontmatter(content: str) -> tuple[dict[str, Any], str]:
    """Split SKILL.md content into frontmatter and body.

    Args:
        content: Full SKILL.md text

    Returns:
        Tuple of (frontmatter mapping, markdown body)

    Raises:
        FrontmatterError: If the frontmatter is absent, unclosed, empty,
            not valid YAML or not a mapping
    """
    if not content.startswith("---"):
        raise FrontmatterError("SKILL.md must start with '---' frontmatter")

    if _EMPTY_RE.match(content):
        raise FrontmatterError("Frontmatter is empty")

    match = _FRONTMATTER_RE.match(content)
    if not match:
        raise FrontmatterError("Frontmatter is not closed with '---'")

    raw = match.group(1)
    if not raw.strip():
        raise FrontmatterError("Frontmatter is empty")

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise FrontmatterError(f"Invalid YAML in frontmatter: {e}")

    if not isinstance(data, dict):
        raise FrontmatterError("Frontmatter must be a YAML mapping")

    return data, content[match.end():]


@dataclass
class SkillMetadata:
    """Metadata read from a skill's frontmatter."""

    name: Optional[str] = None
    description: Optional[str] = None
    version: Optional[str] = None

    @classmethod
    def from_frontmatter(cls, data: dict[str, Any]) -> SkillMetadata:
        version = data.get("version")
        if version is None and isinstance(data.get("metadata"), dict):
            version = data["metadata"].get("version")
        name = data.get("name")
        description = data.get("description")
        return cls(
            name=str(name) if name is not None else None,
            description=str(description) if description is not None else None,
            version=str(version) if version is not None else None,
        )


def parse_metadata(content: str) -> SkillMetadata:
    """Parse metadata from SKILL.md text, raising FrontmatterError."""
    data, _ = parse_frontmatter(content)
    return SkillMetadata.from_frontmatter(data)


def read_skill_metadata(skill_dir: Path) -> Optional[SkillMetadata]:
    """Read metadata from skill_dir/SKILL.md.

    Returns:
        SkillMetadata, or None if SKILL.md is missing or unparseable
    """
    skill_md = Path(skill_dir) / SKILL_FILE
    try:
        return parse_metadata(skill_md.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, FrontmatterError):
        return None
