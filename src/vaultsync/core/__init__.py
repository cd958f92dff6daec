# Core Module - Shared Utilities
#
# - Audit logging (structlog)
# - SQLite connection helper

from .audit_log import (
    AuditLogger,
    EventSeverity,
    EventType,
    get_audit_logger,
    tag_prefix,
)
from .db import connect

__all__ = [
    "AuditLogger",
    "EventType",
    "EventSeverity",
    "get_audit_logger",
    "tag_prefix",
    "connect",
]
