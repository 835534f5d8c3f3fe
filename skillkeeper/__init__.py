"""skillkeeper - Safely package, install, update and uninstall Agent Skills."""

__version__ = "0.1.0"

from skillkeeper.errors import (
    SkillKeeperError,
    ValidationError,
    NotFoundError,
    FileSystemError,
    PackageMismatchError,
    SecurityViolation,
    SecurityReason,
    LockContentionError,
    BackupError,
    RollbackError,
    OperationTimeoutError,
    CancelledError,
    ExitCode,
    exit_code_for,
)
from skillkeeper.cancellation import (
    CancellationToken,
    install_signal_handlers,
)
from skillkeeper.security import (
    is_within,
    validate_entry_path,
    check_zip_bomb,
)
from skillkeeper.archive import (
    SkillArchive,
    ArchiveWriter,
    create_archive,
    open_archive,
)
from skillkeeper.lock import (
    acquire_lock,
    release_lock,
    LockAcquisitionResult,
)
from skillkeeper.safe_delete import (
    delete_entry,
    delete_tree,
    delete_skill,
    DeletionSummary,
)
from skillkeeper.discovery import (
    discover_nested,
    collect_nested,
    NestedDiscoveryResult,
)
from skillkeeper.installer import (
    install_skill,
    InstallSuccess,
    InstallDryRunPreview,
    InstallOverwriteRequired,
    InstallFailed,
    InstallCancelled,
)
from skillkeeper.updater import (
    update_skill,
    UpdatePhase,
    UpdateState,
    UpdateSuccess,
    UpdateDryRunPreview,
    UpdateRolledBack,
    UpdateRollbackFailed,
    UpdateCancelled,
    UpdateFailed,
)
from skillkeeper.uninstaller import (
    uninstall_skill,
    uninstall_skills,
    UninstallSuccess,
    UninstallPartial,
    UninstallDryRunPreview,
    UninstallFailed,
    UninstallCancelled,
)
from skillkeeper.packager import package_skill, PackageResult
from skillkeeper.scaffold import create_skill_scaffold
from skillkeeper.installed import list_installed_skills, is_skill_installed, InstalledSkill
from skillkeeper.validator import validate_skill_directory, ValidationResult

__all__ = [
    # Version
    "__version__",
    # Errors
    "SkillKeeperError",
    "ValidationError",
    "NotFoundError",
    "FileSystemError",
    "PackageMismatchError",
    "SecurityViolation",
    "SecurityReason",
    "LockContentionError",
    "BackupError",
    "RollbackError",
    "OperationTimeoutError",
    "CancelledError",
    "ExitCode",
    "exit_code_for",
    # Cancellation
    "CancellationToken",
    "install_signal_handlers",
    # Path security
    "is_within",
    "validate_entry_path",
    "check_zip_bomb",
    # Archives
    "SkillArchive",
    "ArchiveWriter",
    "create_archive",
    "open_archive",
    # Locks
    "acquire_lock",
    "release_lock",
    "LockAcquisitionResult",
    # Deletion
    "delete_entry",
    "delete_tree",
    "delete_skill",
    "DeletionSummary",
    # Discovery
    "discover_nested",
    "collect_nested",
    "NestedDiscoveryResult",
    # Install
    "install_skill",
    "InstallSuccess",
    "InstallDryRunPreview",
    "InstallOverwriteRequired",
    "InstallFailed",
    "InstallCancelled",
    # Update
    "update_skill",
    "UpdatePhase",
    "UpdateState",
    "UpdateSuccess",
    "UpdateDryRunPreview",
    "UpdateRolledBack",
    "UpdateRollbackFailed",
    "UpdateCancelled",
    "UpdateFailed",
    # Uninstall
    "uninstall_skill",
    "uninstall_skills",
    "UninstallSuccess",
    "UninstallPartial",
    "UninstallDryRunPreview",
    "UninstallFailed",
    "UninstallCancelled",
    # Authoring and listing
    "package_skill",
    "PackageResult",
    "create_skill_scaffold",
    "list_installed_skills",
    "is_skill_installed",
    "InstalledSkill",
    "validate_skill_directory",
    "ValidationResult",
]
