"""Audit trail for skill lifecycle operations.

Each install, update, rollback and uninstall outcome is appended to a
JSON-lines file readable only by the current user.
"""

from __future__ import annotations

import json
import logging
import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from skillkeeper.config import get_config

logger = logging.getLogger(__name__)

AUDIT_LOG_FILE = "audit.log"
AUDIT_FILE_MODE = 0o600


class AuditEventType(Enum):
    """Types of audit events."""

    INSTALLED = "installed"
    INSTALL_FAILED = "install_failed"
    UPDATED = "updated"
    UPDATE_FAILED = "update_failed"
    ROLLED_BACK = "rolled_back"
    ROLLBACK_FAILED = "rollback_failed"
    UNINSTALLED = "uninstalled"
    UNINSTALL_PARTIAL = "uninstall_partial"
    UNINSTALL_FAILED = "uninstall_failed"
    CANCELLED = "cancelled"


@dataclass
class AuditEvent:
    """An audit event in the trail.

    Attributes:
        event_id: Unique event identifier
        timestamp: When the event occurred
        event_type: Type of event
        skill_name: Name of the skill involved
        actor: Who performed the action
        details: Additional event details
    """

    event_id: str
    timestamp: datetime
    event_type: AuditEventType
    skill_name: str
    actor: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "event_id": self.event_id,
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "skill_name": self.skill_name,
            "actor": self.actor,
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: dict) -> AuditEvent:
        """Create from dictionary."""
        return cls(
            event_id=data["event_id"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            event_type=AuditEventType(data["event_type"]),
            skill_name=data["skill_name"],
            actor=data["actor"],
            details=data.get("details", {}),
        )

    def to_json(self) -> str:
        """Convert to JSON line format."""
        return json.dumps(self.to_dict(), default=str)


def get_current_actor() -> str:
    """Get the current actor (user) for audit events."""
    actor = os.environ.get("SKILLKEEPER_ACTOR")
    if actor:
        return actor

    actor = os.environ.get("USER") or os.environ.get("USERNAME")
    if actor:
        return actor

    return "unknown"


class AuditLogger:
    """Appends audit events to a log file.

    Attributes:
        audit_dir: Directory holding the audit log
        enabled: Whether events are written
    """

    def __init__(self, audit_dir: Path, enabled: bool = True):
        self.audit_dir = Path(audit_dir)
        self.enabled = enabled

    @property
    def log_path(self) -> Path:
        return self.audit_dir / AUDIT_LOG_FILE

    def log(
        self,
        event_type: AuditEventType,
        skill_name: str,
        details: Optional[dict] = None,
        actor: Optional[str] = None,
    ) -> AuditEvent:
        """Record an event.

        Failing to write the audit log is reported as a warning and never
        affects the operation being audited.

        Returns:
            The AuditEvent (written or not)
        """
        event = AuditEvent(
            event_id=str(uuid.uuid4()),
            timestamp=datetime.now(),
            event_type=event_type,
            skill_name=skill_name,
            actor=actor or get_current_actor(),
            details=details or {},
        )

        if not self.enabled:
            return event

        try:
            self.audit_dir.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, AUDIT_FILE_MODE)
            with os.fdopen(fd, "a", encoding="utf-8") as f:
                f.write(event.to_json() + "\n")
        except OSError as e:
            logger.warning("Could not write audit log %s: %s", self.log_path, e)

        return event

    def read_events(
        self,
        skill_name: Optional[str] = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Read events, newest first, optionally for one skill."""
        if not self.log_path.exists():
            return []

        events = []
        with open(self.log_path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    event = AuditEvent.from_dict(json.loads(line))
                except (json.JSONDecodeError, KeyError, ValueError):
                    continue
                if skill_name and event.skill_name != skill_name:
                    continue
                events.append(event)

        events.sort(key=lambda e: e.timestamp, reverse=True)
        return events[:limit]


# =============================================================================
# Global Logger Instance
# =============================================================================

_audit_logger: Optional[AuditLogger] = None


def get_audit_logger() -> AuditLogger:
    """Get the global audit logger, built from configuration on first use."""
    global _audit_logger
    if _audit_logger is None:
        config = get_config()
        _audit_logger = AuditLogger(config.get_data_dir(), enabled=config.audit_enabled)
    return _audit_logger


def set_audit_logger(audit_logger: Optional[AuditLogger]) -> None:
    """Set (or with None, reset) the global audit logger."""
    global _audit_logger
    _audit_logger = audit_logger


def log_event(
    event_type: AuditEventType,
    skill_name: str,
    details: Optional[dict] = None,
) -> AuditEvent:
    """Log an audit event using the global logger."""
    return get_audit_logger().log(event_type, skill_name, details)
