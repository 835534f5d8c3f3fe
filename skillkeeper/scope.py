"""Install scopes: where skills live on disk."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Optional

from skillkeeper.errors import ValidationError

# Skills directories
USER_SKILLS_DIR = Path.home() / ".claude" / "skills"
PROJECT_SKILLS_DIR = Path(".claude") / "skills"

ScopeKind = Literal["project", "personal", "custom"]


@dataclass
class ScopeInfo:
    """A resolved scope."""

    kind: ScopeKind
    path: Path

    @property
    def label(self) -> str:
        if self.kind == "custom":
            return str(self.path)
        return self.kind


def get_skills_dir(
    scope: ScopeKind = "project",
    cwd: Optional[Path] = None,
    home: Optional[Path] = None,
) -> Path:
    """Get the skills directory for a built-in scope.

    Args:
        scope: "project" for ./.claude/skills/, "personal" for ~/.claude/skills/
        cwd: Project directory (defaults to the current directory)
        home: Home directory (defaults to the user's home)

    Returns:
        Absolute path to the skills directory
    """
    if scope == "personal":
        if home is not None:
            return Path(home).resolve() / ".claude" / "skills"
        return USER_SKILLS_DIR
    if cwd is not None:
        return Path(cwd).resolve() / PROJECT_SKILLS_DIR
    return PROJECT_SKILLS_DIR.resolve()


def resolve_scope(
    scope: str = "project",
    cwd: Optional[Path] = None,
    home: Optional[Path] = None,
) -> ScopeInfo:
    """Resolve a scope string to a directory.

    "project" and "personal" map to the built-in locations; any other value
    is a custom path, with ``~`` expanded and relative paths taken from cwd.

    Raises:
        ValidationError: If scope is empty
    """
    if scope is None or not str(scope).strip():
        raise ValidationError("Scope cannot be empty", field="scope")

    if scope in ("project", "personal"):
        return ScopeInfo(kind=scope, path=get_skills_dir(scope, cwd=cwd, home=home))

    raw = str(scope)
    if "\x00" in raw:
        raise ValidationError("Scope path contains a null byte", field="scope")

    if raw == "~" or raw.startswith("~/") or raw.startswith("~" + os.sep):
        base_home = Path(home) if home is not None else Path.home()
        path = base_home / raw[2:] if len(raw) > 1 else base_home
    else:
        path = Path(raw)
        if not path.is_absolute():
            path = Path(cwd or Path.cwd()) / path

    return ScopeInfo(kind="custom", path=path.resolve())
