"""Shared fixtures for skillkeeper tests."""

import struct
import zipfile
from pathlib import Path
from typing import Callable, Optional

import pytest

from skillkeeper.archive import create_package_archive
from skillkeeper.audit import AuditLogger, set_audit_logger
from skillkeeper.config import SkillKeeperConfig, reset_config, set_config


def skill_md(name: str, description: Optional[str] = None, body: str = "# Instructions\n\nDo the thing.\n") -> str:
    """SKILL.md content with valid frontmatter."""
    description = description or f"Test skill {name}"
    return f"---\nname: {name}\ndescription: {description}\n---\n\n{body}"


def rewrite_entry_header(path: Path, name: str, method: Optional[int] = None, flag_bits: int = 0) -> None:
    """Change the compression method or set flag bits of one stored zip entry in place."""
    data = bytearray(Path(path).read_bytes())
    with zipfile.ZipFile(path) as zf:
        local = zf.getinfo(name).header_offset

    encoded = name.encode("utf-8")
    central = data.find(b"PK\x01\x02")
    while data[central + 46 : central + 46 + len(encoded)] != encoded:
        central = data.find(b"PK\x01\x02", central + 4)
        assert central != -1, f"{name} not in central directory"

    for flags_offset in (local + 6, central + 8):
        current = struct.unpack_from("<H", data, flags_offset)[0]
        struct.pack_into("<H", data, flags_offset, current | flag_bits)
        if method is not None:
            struct.pack_into("<H", data, flags_offset + 2, method)

    Path(path).write_bytes(bytes(data))


@pytest.fixture(autouse=True)
def isolated_config(tmp_path: Path):
    """Point configuration, backups and the audit log at a temporary directory."""
    data_dir = tmp_path / "skillkeeper-data"
    set_config(SkillKeeperConfig(data_dir=str(data_dir)))
    set_audit_logger(AuditLogger(data_dir, enabled=False))
    yield data_dir
    set_audit_logger(None)
    reset_config()


@pytest.fixture
def scope_dir(tmp_path: Path) -> Path:
    """An empty custom install scope."""
    path = tmp_path / "scope"
    path.mkdir()
    return path


@pytest.fixture
def make_skill() -> Callable[..., Path]:
    """Factory writing a skill directory with SKILL.md and extra files."""

    def _make(parent: Path, name: str, files: Optional[dict] = None, description: Optional[str] = None) -> Path:
        skill_dir = Path(parent) / name
        skill_dir.mkdir(parents=True, exist_ok=True)
        (skill_dir / "SKILL.md").write_text(skill_md(name, description))
        for relative, content in (files or {}).items():
            path = skill_dir / relative
            path.parent.mkdir(parents=True, exist_ok=True)
            if isinstance(content, bytes):
                path.write_bytes(content)
            else:
                path.write_text(content)
        return skill_dir

    return _make


@pytest.fixture
def make_zip() -> Callable[[Path, dict], Path]:
    """Factory writing a zip with exactly the given entry names."""

    def _make(path: Path, entries: dict) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            for name, content in entries.items():
                zf.writestr(name, content)
        return path

    return _make


@pytest.fixture
def make_package(tmp_path: Path, make_skill) -> Callable[..., Path]:
    """Factory building a skill in a scratch directory and packaging it."""
    counter = {"n": 0}

    def _make(name: str, files: Optional[dict] = None, description: Optional[str] = None) -> Path:
        counter["n"] += 1
        source = tmp_path / f"source-{counter['n']}"
        skill_dir = make_skill(source, name, files, description)
        package_path = tmp_path / "packages" / f"{name}-{counter['n']}.skill"
        create_package_archive(skill_dir, package_path, name)
        return package_path

    return _make
