"""Package a skill directory into a .skill archive."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

from skillkeeper.archive import PACKAGE_EXTENSION, create_package_archive
from skillkeeper.errors import FileSystemError, NotFoundError, ValidationError
from skillkeeper.validator import validate_skill_directory

logger = logging.getLogger(__name__)


@dataclass
class PackageResult:
    """A package that was written."""

    package_path: Path
    file_count: int
    size: int
    warnings: list[str]


def package_skill(
    skill_path: Path,
    output_dir: Optional[Path] = None,
    force: bool = False,
    exclusions: Optional[Iterable[str]] = None,
) -> PackageResult:
    """Validate a skill directory and write <output_dir>/<name>.skill.

    Entries are stored under a single top-level directory named after the
    skill. Excluded paths (.git/, node_modules/, *.log, ...) and symlinks
    are left out.

    Args:
        skill_path: Skill directory to package
        output_dir: Where to write the package (defaults to the current directory)
        force: Overwrite an existing package
        exclusions: Exclusion patterns (defaults to the standard set)

    Returns:
        PackageResult

    Raises:
        NotFoundError: If skill_path does not exist
        ValidationError: If the skill is invalid
        FileSystemError: If the package exists (without force) or cannot be written
    """
    skill_path = Path(skill_path).resolve()
    if not skill_path.is_dir():
        raise NotFoundError(f"Skill directory not found: {skill_path}", skill_path)

    validation = validate_skill_directory(skill_path)
    if not validation.valid:
        raise ValidationError("Invalid skill: " + "; ".join(validation.errors), field="skill")

    name = validation.skill_name or skill_path.name
    output_dir = Path(output_dir) if output_dir is not None else Path.cwd()
    package_path = output_dir / f"{name}{PACKAGE_EXTENSION}"

    if os.path.lexists(package_path) and not force:
        raise FileSystemError(
            "write", package_path, "package already exists (use --force to overwrite)"
        )

    file_count = create_package_archive(skill_path, package_path, name, exclusions)
    size = package_path.stat().st_size
    logger.info("Packaged %s into %s (%d files)", name, package_path, file_count)

    return PackageResult(
        package_path=package_path,
        file_count=file_count,
        size=size,
        warnings=validation.warnings,
    )
