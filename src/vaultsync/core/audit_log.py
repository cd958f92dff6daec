# Core - Audit Logging
#
# Append-only, structured audit trail for vault and sync events.
# Every unlock, create, conflict merge, offline fallback and server write
# is recorded with a timestamp and the identity it concerned.
#
# Never pass secrets, derived keys or blobs in `details`. The auth tag is
# logged only as a short prefix (see `tag_prefix`).

import logging
import socket
import sys
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional
from uuid import uuid4

import structlog


class EventType(str, Enum):
    """Types of events that can be logged."""

    # Vault lifecycle (client)
    VAULT_CREATED = "vault.created"
    VAULT_UNLOCKED = "vault.unlocked"
    VAULT_UNLOCK_FAILED = "vault.unlock.failed"
    VAULT_ENTRY_CHANGED = "vault.entry.changed"

    # Synchronization (client)
    SYNC_PUSH_ACCEPTED = "sync.push.accepted"
    SYNC_CONFLICT_MERGED = "sync.conflict.merged"
    SYNC_REMOTE_ADOPTED = "sync.remote.adopted"
    SYNC_OFFLINE_FALLBACK = "sync.offline.fallback"
    SYNC_RECONCILE_EXHAUSTED = "sync.reconcile.exhausted"
    SYNC_LOCAL_DISCARDED = "sync.local.discarded"

    # Server side
    SERVER_VAULT_CREATED = "server.vault.created"
    SERVER_VAULT_UPDATED = "server.vault.updated"
    SERVER_CONFLICT = "server.conflict"
    SERVER_AUTH_FAILED = "server.auth.failed"

    # System
    SYSTEM_START = "system.start"
    SYSTEM_STOP = "system.stop"


class EventSeverity(str, Enum):
    """
    Severity levels for audit events.

    - INFO: normal activity
    - INVESTIGATE: recoverable anomaly (conflict, offline fallback)
    - ALERT: failed authentication or decryption
    - CRITICAL: user intervention required
    """
    INFO = "info"
    INVESTIGATE = "investigate"
    ALERT = "alert"
    CRITICAL = "critical"


def tag_prefix(auth_tag: str) -> str:
    """Shorten an auth tag for log output."""
    return auth_tag[:12]


class AuditLogger:
    """
    Append-only audit logger backed by structlog JSON output.

    One log file per day under `log_dir`. Each event carries an event ID,
    UTC timestamp, event type, severity and host context.
    """

    def __init__(self, log_dir: Optional[Path] = None):
        """
        Initialize audit logger.

        Args:
            log_dir: Directory for audit logs (default: ./audit_logs)
        """
        self.log_dir = Path(log_dir) if log_dir else Path("./audit_logs")
        self.log_dir.mkdir(parents=True, exist_ok=True)

        structlog.configure(
            processors=[
                structlog.stdlib.add_log_level,
                structlog.stdlib.add_logger_name,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer()
            ],
            wrapper_class=structlog.stdlib.BoundLogger,
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=True,
        )

        self._file_handler = self._setup_file_handler()
        self.logger = structlog.get_logger("vaultsync.audit")

    def _setup_file_handler(self) -> logging.Handler:
        """Attach a daily file handler to the audit logger."""
        today = datetime.now().strftime("%Y-%m-%d")
        log_file = self.log_dir / f"audit_{today}.log"

        file_handler = logging.FileHandler(log_file, mode='a', encoding='utf-8')
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(logging.Formatter('%(message)s'))  # structlog formats

        audit_logger = logging.getLogger("vaultsync.audit")
        audit_logger.addHandler(file_handler)
        audit_logger.setLevel(logging.INFO)
        return file_handler

    def close(self) -> None:
        """Detach and close the file handler."""
        logging.getLogger("vaultsync.audit").removeHandler(self._file_handler)
        self._file_handler.close()

    def log_event(
        self,
        event_type: EventType,
        severity: EventSeverity,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        user_context: Optional[Dict[str, Any]] = None
    ) -> str:
        """
        Log an audit event (append-only).

        Args:
            event_type: Type of event (from EventType enum)
            severity: Severity level (from EventSeverity enum)
            message: Human-readable event description
            details: Additional event details (no secrets)
            user_context: Identity context (username, auth tag prefix)

        Returns:
            str: Event ID (UUID) for reference
        """
        event_id = str(uuid4())

        event_data = {
            "event_id": event_id,
            "event_type": event_type.value,
            "severity": severity.value,
            "message": message,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "details": details or {},
            "user_context": user_context or self._get_default_user_context(),
        }

        self.logger.info("audit_event", **event_data)
        return event_id

    def log_sync_event(
        self,
        event_type: EventType,
        username: str,
        message: str,
        severity: EventSeverity = EventSeverity.INFO,
        details: Optional[Dict[str, Any]] = None
    ) -> str:
        """
        Log a vault/sync event for one identity.

        Args:
            event_type: Type of sync event
            username: Vault owner
            message: Event description
            severity: Event severity
            details: Additional details (counters, merge stats)

        Returns:
            str: Event ID
        """
        context = self._get_default_user_context()
        context["username"] = username
        return self.log_event(
            event_type=event_type,
            severity=severity,
            message=message,
            details=details,
            user_context=context,
        )

    def _get_default_user_context(self) -> Dict[str, Any]:
        return {
            "hostname": socket.gethostname(),
            "platform": sys.platform,
        }


# Global logger instance
_audit_logger: Optional[AuditLogger] = None


def get_audit_logger() -> AuditLogger:
    """Get global audit logger (singleton pattern)."""
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger()
    return _audit_logger
