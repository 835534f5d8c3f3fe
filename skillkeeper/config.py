"""Configuration for skillkeeper.

This module provides configuration management including:
- User and project-level configuration files
- Resource limits and zip-bomb thresholds
- Environment variable overrides
- Configuration validation
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import yaml


# =============================================================================
# Configuration Paths
# =============================================================================

USER_CONFIG_DIR = Path.home() / ".config" / "skillkeeper"
USER_CONFIG_FILE = USER_CONFIG_DIR / "config.yml"
PROJECT_CONFIG_FILE = Path(".skillkeeper.yml")
DEFAULT_DATA_DIR = Path.home() / ".skillkeeper"

# Environment variable prefix
ENV_PREFIX = "SKILLKEEPER_"

# Separator for nested keys in environment variables
ENV_NESTED_SEPARATOR = "__"

MB = 1024 * 1024
GB = 1024 * MB


class ConfigError(Exception):
    """Raised when configuration is invalid."""

    pass


class LogLevel(Enum):
    """Log levels."""

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


# =============================================================================
# Configuration Dataclasses
# =============================================================================


@dataclass
class ResourceLimits:
    """Size, count and time limits applied to lifecycle operations.

    Attributes:
        max_total_size: Largest skill or package (bytes) accepted without force
        max_file_count: Most files accepted without force
        zip_bomb_max_ratio: Uncompressed/compressed ratio considered a zip bomb
        zip_bomb_ratio_min_size: Uncompressed size below which the ratio is ignored
        zip_bomb_max_uncompressed: Absolute uncompressed ceiling, never overridable
        update_timeout: Seconds allowed for an update
        uninstall_timeout: Seconds allowed for removing files
    """

    max_total_size: int = GB
    max_file_count: int = 10000
    zip_bomb_max_ratio: float = 100.0
    zip_bomb_ratio_min_size: int = 10 * MB
    zip_bomb_max_uncompressed: int = 4 * GB
    update_timeout: float = 300.0
    uninstall_timeout: float = 300.0

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "max_total_size": self.max_total_size,
            "max_file_count": self.max_file_count,
            "zip_bomb_max_ratio": self.zip_bomb_max_ratio,
            "zip_bomb_ratio_min_size": self.zip_bomb_ratio_min_size,
            "zip_bomb_max_uncompressed": self.zip_bomb_max_uncompressed,
            "update_timeout": self.update_timeout,
            "uninstall_timeout": self.uninstall_timeout,
        }

    @classmethod
    def from_dict(cls, data: dict) -> ResourceLimits:
        """Create from dictionary."""
        defaults = cls()
        return cls(
            max_total_size=int(data.get("max_total_size", defaults.max_total_size)),
            max_file_count=int(data.get("max_file_count", defaults.max_file_count)),
            zip_bomb_max_ratio=float(
                data.get("zip_bomb_max_ratio", defaults.zip_bomb_max_ratio)
            ),
            zip_bomb_ratio_min_size=int(
                data.get("zip_bomb_ratio_min_size", defaults.zip_bomb_ratio_min_size)
            ),
            zip_bomb_max_uncompressed=int(
                data.get("zip_bomb_max_uncompressed", defaults.zip_bomb_max_uncompressed)
            ),
            update_timeout=float(data.get("update_timeout", defaults.update_timeout)),
            uninstall_timeout=float(
                data.get("uninstall_timeout", defaults.uninstall_timeout)
            ),
        )


@dataclass
class SkillKeeperConfig:
    """Main skillkeeper configuration.

    Attributes:
        version: Configuration schema version
        log_level: Logging level
        color_output: Whether to use colored output
        data_dir: Directory for backups and the audit log
        backup_dir: Backup directory (defaults to <data_dir>/backups)
        audit_enabled: Whether lifecycle outcomes are written to the audit log
        discovery_max_depth: Default depth for nested skill discovery
        limits: Resource limits
    """

    version: str = "1.0"
    log_level: LogLevel = LogLevel.INFO
    color_output: bool = True
    data_dir: Optional[str] = None
    backup_dir: Optional[str] = None
    audit_enabled: bool = True
    discovery_max_depth: int = 3
    limits: ResourceLimits = field(default_factory=ResourceLimits)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "version": self.version,
            "log_level": self.log_level.value,
            "color_output": self.color_output,
            "data_dir": self.data_dir,
            "backup_dir": self.backup_dir,
            "audit_enabled": self.audit_enabled,
            "discovery_max_depth": self.discovery_max_depth,
            "limits": self.limits.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> SkillKeeperConfig:
        """Create from dictionary."""
        log_level = data.get("log_level", "info")
        try:
            level = LogLevel(str(log_level).lower()) if log_level else LogLevel.INFO
        except ValueError:
            raise ConfigError(f"Unknown log level: {log_level}")

        return cls(
            version=str(data.get("version", "1.0")),
            log_level=level,
            color_output=data.get("color_output", True),
            data_dir=data.get("data_dir"),
            backup_dir=data.get("backup_dir"),
            audit_enabled=data.get("audit_enabled", True),
            discovery_max_depth=int(data.get("discovery_max_depth", 3)),
            limits=ResourceLimits.from_dict(data.get("limits") or {}),
        )

    def to_yaml(self) -> str:
        """Convert to YAML string."""
        return yaml.dump(
            self.to_dict(),
            default_flow_style=False,
            allow_unicode=True,
            sort_keys=False,
        )

    @classmethod
    def from_yaml(cls, yaml_str: str) -> SkillKeeperConfig:
        """Create from YAML string."""
        data = yaml.safe_load(yaml_str) or {}
        return cls.from_dict(data)

    def get_data_dir(self) -> Path:
        """Directory for backups and the audit log."""
        if self.data_dir:
            return Path(self.data_dir).expanduser()
        return DEFAULT_DATA_DIR

    def get_backup_dir(self) -> Path:
        """Directory where update backups are written."""
        if self.backup_dir:
            return Path(self.backup_dir).expanduser()
        return self.get_data_dir() / "backups"


# =============================================================================
# Configuration Loading
# =============================================================================


def get_user_config_path() -> Path:
    """Get the path to user config file."""
    return USER_CONFIG_FILE


def get_project_config_path() -> Path:
    """Get the path to project config file."""
    return PROJECT_CONFIG_FILE.resolve()


def load_config_file(path: Path) -> dict:
    """Load configuration from a YAML file.

    Args:
        path: Path to configuration file

    Returns:
        Configuration dictionary

    Raises:
        ConfigError: If file cannot be loaded
    """
    if not path.exists():
        return {}

    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}")

    if not isinstance(data, dict):
        raise ConfigError(f"Configuration in {path} must be a mapping")
    return data


def save_config_file(path: Path, config: dict) -> None:
    """Save configuration to a YAML file.

    Args:
        path: Path to configuration file
        config: Configuration dictionary
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        yaml.dump(
            config,
            f,
            default_flow_style=False,
            allow_unicode=True,
            sort_keys=False,
        )


def _coerce_env_value(value: str) -> Any:
    if value.lower() in ("true", "yes"):
        return True
    if value.lower() in ("false", "no"):
        return False
    return value


def load_env_overrides() -> dict:
    """Load configuration overrides from environment variables.

    Environment variables with the SKILLKEEPER_ prefix are converted to config
    keys. A double underscore selects a nested key, so
    SKILLKEEPER_LIMITS__MAX_FILE_COUNT becomes limits.max_file_count.

    Returns:
        Dictionary of environment overrides
    """
    overrides: dict = {}

    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue

        parts = key[len(ENV_PREFIX) :].lower().split(ENV_NESTED_SEPARATOR)
        target = overrides
        for part in parts[:-1]:
            target = target.setdefault(part, {})
        target[parts[-1]] = _coerce_env_value(value)

    return overrides


def merge_configs(*configs: dict) -> dict:
    """Merge multiple configuration dictionaries.

    Later configs override earlier ones. Nested dicts are merged recursively.

    Args:
        *configs: Configuration dictionaries to merge

    Returns:
        Merged configuration
    """
    result: dict = {}

    for config in configs:
        for key, value in config.items():
            if (
                key in result
                and isinstance(result[key], dict)
                and isinstance(value, dict)
            ):
                result[key] = merge_configs(result[key], value)
            else:
                result[key] = value

    return result


# =============================================================================
# Global Configuration
# =============================================================================

_config: Optional[SkillKeeperConfig] = None


def get_config(reload: bool = False) -> SkillKeeperConfig:
    """Get the global skillkeeper configuration.

    Loads configuration from (in order of precedence):
    1. Environment variables (highest)
    2. Project config (.skillkeeper.yml)
    3. User config (~/.config/skillkeeper/config.yml)
    4. Default values (lowest)

    Args:
        reload: Force reload of configuration

    Returns:
        SkillKeeperConfig instance
    """
    global _config

    if _config is not None and not reload:
        return _config

    user_config = load_config_file(get_user_config_path())
    project_config = load_config_file(get_project_config_path())
    env_overrides = load_env_overrides()

    merged = merge_configs(user_config, project_config, env_overrides)

    try:
        _config = SkillKeeperConfig.from_dict(merged)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid configuration value: {e}")

    return _config


def set_config(config: SkillKeeperConfig) -> None:
    """Set the global configuration.

    Args:
        config: Configuration to set
    """
    global _config
    _config = config


def reset_config() -> None:
    """Reset the global configuration to None (forces reload on next get)."""
    global _config
    _config = None


def save_user_config(config: SkillKeeperConfig) -> Path:
    """Save configuration to user config file.

    Args:
        config: Configuration to save

    Returns:
        Path to saved config file
    """
    path = get_user_config_path()
    save_config_file(path, config.to_dict())
    return path


# =============================================================================
# Configuration Validation
# =============================================================================


def validate_config(config: SkillKeeperConfig) -> list[str]:
    """Validate a configuration.

    Args:
        config: Configuration to validate

    Returns:
        List of validation errors (empty if valid)
    """
    errors = []
    limits = config.limits

    for name in ("max_total_size", "max_file_count", "zip_bomb_max_uncompressed"):
        if getattr(limits, name) <= 0:
            errors.append(f"limits.{name} must be positive")

    for name in ("update_timeout", "uninstall_timeout"):
        if getattr(limits, name) <= 0:
            errors.append(f"limits.{name} must be positive")

    if limits.zip_bomb_max_ratio < 1:
        errors.append("limits.zip_bomb_max_ratio must be at least 1")

    if limits.zip_bomb_ratio_min_size < 0:
        errors.append("limits.zip_bomb_ratio_min_size cannot be negative")

    if config.discovery_max_depth < 0:
        errors.append("discovery_max_depth cannot be negative")

    return errors
