"""Core audit module - audit event tracking and persistence."""

from core.audit.events import (
    AuditLogger,
    AuditEventType,
    AuditBackend,
    SQLiteAuditBackend,
    InMemoryAuditBackend,
    create_audit_event,
    null_audit,
)

__all__ = [
    "AuditLogger",
    "AuditEventType",
    "AuditBackend",
    "SQLiteAuditBackend",
    "InMemoryAuditBackend",
    "create_audit_event",
    "null_audit",
]
