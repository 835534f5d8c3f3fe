"""Finding skills on disk.

Two kinds of lookup live here: locating one installed skill by name within
a scope, and walking a project tree for nested ``.claude/skills``
directories (monorepos keep one per package).
"""

from __future__ import annotations

import fnmatch
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator, Literal, Optional

from skillkeeper.frontmatter import SKILL_FILE

logger = logging.getLogger(__name__)

# Directories never descended into during nested discovery
SKIP_DIRECTORIES = frozenset(
    {"node_modules", "dist", "build", ".git", "vendor", "coverage", "__pycache__"}
)

SKILL_METADATA_DIR = ".claude"
SKILLS_SUBDIR = "skills"
GITIGNORE_FILE = ".gitignore"

IgnorePredicate = Callable[[str], bool]


# =============================================================================
# Installed skill lookup
# =============================================================================


@dataclass
class SkillLookup:
    """Result of looking up a skill by name.

    Attributes:
        status: found, not-found or case-mismatch
        path: Where the skill is (found) or was looked for
        has_skill_md: Whether SKILL.md exists (found only)
        actual_name: Name on disk when it differs only by case
    """

    status: Literal["found", "not-found", "case-mismatch"]
    path: Path
    has_skill_md: bool = False
    actual_name: Optional[str] = None

    @property
    def found(self) -> bool:
        return self.status == "found"


def _case_insensitive_match(directory: Path, name: str) -> Optional[str]:
    try:
        names = os.listdir(directory)
    except OSError:
        return None
    folded = name.casefold()
    for candidate in names:
        if candidate != name and candidate.casefold() == folded:
            return candidate
    return None


def discover_skill(scope_path: Path, skill_name: str) -> SkillLookup:
    """Locate an installed skill directory.

    A directory that only matches by case is reported as case-mismatch,
    whether the filesystem would have resolved it or not, so that an
    operation never acts on a skill under a name the user did not type.
    """
    scope_path = Path(scope_path)
    skill_path = scope_path / skill_name

    if not os.path.lexists(skill_path):
        actual = _case_insensitive_match(scope_path, skill_name)
        if actual:
            return SkillLookup("case-mismatch", scope_path / actual, actual_name=actual)
        return SkillLookup("not-found", skill_path)

    try:
        exact = skill_name in os.listdir(scope_path)
    except OSError:
        exact = True
    if not exact:
        actual = _case_insensitive_match(scope_path, skill_name)
        return SkillLookup(
            "case-mismatch",
            scope_path / (actual or skill_name),
            actual_name=actual,
        )

    if not skill_path.is_dir():
        return SkillLookup("not-found", skill_path)

    return SkillLookup(
        "found",
        skill_path,
        has_skill_md=(skill_path / SKILL_FILE).is_file(),
    )


# =============================================================================
# Ignore files
# =============================================================================


@dataclass
class _IgnoreRule:
    pattern: str
    negate: bool
    directory_only: bool
    anchored: bool


class GitignoreMatcher:
    """A small .gitignore matcher for directory pruning.

    Supports comments, negation, trailing-slash directory rules and
    anchored (slash-containing) patterns. The last matching rule wins.
    """

    def __init__(self, content: str = ""):
        self.rules: list[_IgnoreRule] = []
        self.add(content)

    def add(self, content: str) -> None:
        for raw in content.splitlines():
            line = raw.rstrip()
            if not line or line.startswith("#"):
                continue

            negate = line.startswith("!")
            if negate:
                line = line[1:]
            if line.startswith("\\"):
                line = line[1:]

            directory_only = line.endswith("/")
            line = line.rstrip("/")
            if not line:
                continue

            anchored = "/" in line
            line = line.lstrip("/")
            if line.startswith("**/"):
                line = line[3:]
                anchored = "/" in line

            self.rules.append(_IgnoreRule(line, negate, directory_only, anchored))

    def _rule_matches(self, rule: _IgnoreRule, path: str, is_dir: bool) -> bool:
        if rule.directory_only and not is_dir:
            return False
        if rule.anchored:
            return fnmatch.fnmatchcase(path, rule.pattern)
        return fnmatch.fnmatchcase(path.rsplit("/", 1)[-1], rule.pattern)

    def ignores(self, relative_path: str) -> bool:
        """Check a root-relative path; a trailing "/" marks a directory."""
        is_dir = relative_path.endswith("/")
        path = relative_path.strip("/")

        ignored = False
        for rule in self.rules:
            if self._rule_matches(rule, path, is_dir):
                ignored = not rule.negate
        return ignored

    __call__ = ignores


def load_gitignore(project_root: Path) -> Optional[GitignoreMatcher]:
    """Load <project_root>/.gitignore, or None if it is absent or unreadable."""
    path = Path(project_root) / GITIGNORE_FILE
    try:
        return GitignoreMatcher(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError):
        return None


# =============================================================================
# Nested discovery
# =============================================================================


def should_skip_directory(name: str) -> bool:
    """Whether a directory name is never descended into."""
    if name in SKIP_DIRECTORIES:
        return True
    return name.startswith(".") and name != SKILL_METADATA_DIR


class NestedSkillDiscovery:
    """Iterates over nested ``.claude/skills`` directories below a root.

    Traversal uses an explicit stack. Each directory is identified by
    (device, inode) before it is visited, so symlink cycles are visited
    once. ``depth_limit_reached`` becomes True once iteration has met a
    directory at max_depth that still had eligible subdirectories.

    Args:
        root_dir: Directory to start from (depth 0)
        max_depth: Deepest level to examine; negative yields nothing
        ignore: Predicate on root-relative paths ("a/b/") that prunes a directory
    """

    def __init__(
        self,
        root_dir: Path,
        max_depth: int = 3,
        ignore: Optional[IgnorePredicate] = None,
    ):
        self.root_dir = Path(root_dir).resolve()
        self.max_depth = max_depth
        self.ignore = ignore
        self.depth_limit_reached = False

    def _eligible_subdirs(self, directory: Path) -> list[Path]:
        try:
            entries = list(os.scandir(directory))
        except OSError as e:
            logger.debug("Cannot read %s: %s", directory, e)
            return []

        subdirs = []
        for entry in entries:
            if entry.name == SKILL_METADATA_DIR or should_skip_directory(entry.name):
                continue
            try:
                if entry.is_symlink():
                    # Only symlinks to directories are followed
                    if not os.path.isdir(entry.path):
                        continue
                elif not entry.is_dir(follow_symlinks=False):
                    continue
            except OSError:
                continue

            path = Path(entry.path)
            if self.ignore is not None:
                relative = path.relative_to(self.root_dir).as_posix() + "/"
                if self.ignore(relative):
                    continue
            subdirs.append(path)

        return sorted(subdirs, reverse=True)

    def __iter__(self) -> Iterator[Path]:
        if self.max_depth < 0:
            return

        stack: list[tuple[Path, int]] = [(self.root_dir, 0)]
        visited: set[tuple[int, int]] = set()

        while stack:
            directory, depth = stack.pop()
            try:
                st = os.stat(directory)
            except OSError:
                continue

            identity = (st.st_dev, st.st_ino)
            if identity in visited:
                logger.debug("Already visited %s", directory)
                continue
            visited.add(identity)

            candidate = directory / SKILL_METADATA_DIR / SKILLS_SUBDIR
            if candidate.is_dir():
                yield candidate

            subdirs = self._eligible_subdirs(directory)
            if not subdirs:
                continue
            if depth >= self.max_depth:
                self.depth_limit_reached = True
                continue

            # Reverse-sorted so that pops come out in name order
            stack.extend((subdir, depth + 1) for subdir in subdirs)


def discover_nested(
    root_dir: Path,
    max_depth: int = 3,
    ignore: Optional[IgnorePredicate] = None,
) -> NestedSkillDiscovery:
    """Lazily discover nested skill directories (see NestedSkillDiscovery)."""
    return NestedSkillDiscovery(root_dir, max_depth, ignore)


@dataclass
class NestedDiscoveryResult:
    """All discovered skill directories and the depth-limit flag."""

    directories: list[Path] = field(default_factory=list)
    depth_limit_reached: bool = False


def collect_nested(
    root_dir: Path,
    max_depth: int = 3,
    ignore: Optional[IgnorePredicate] = None,
) -> NestedDiscoveryResult:
    """Run nested discovery to completion."""
    discovery = discover_nested(root_dir, max_depth, ignore)
    directories = list(discovery)
    return NestedDiscoveryResult(
        directories=directories,
        depth_limit_reached=discovery.depth_limit_reached,
    )
