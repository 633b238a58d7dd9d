"""Audit event logging and persistence.

Provides structured audit logging for operator and system actions on the
closing ledger: resolutions, settlements, ingestions, commission runs and
period locks. Supports multiple persistence backends.
"""

import json
import sqlite3
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from core.models.refs import AuditEvent, AuditSeverity, DataReference
from core.observability.logging import get_logger


logger = get_logger(__name__)


class AuditEventType(str, Enum):
    """Standard audit event types."""
    # Workflow events
    WORKFLOW_STARTED = "WORKFLOW_STARTED"
    WORKFLOW_COMPLETED = "WORKFLOW_COMPLETED"
    WORKFLOW_FAILED = "WORKFLOW_FAILED"

    # Report / ledger events
    REPORT_SAVED = "REPORT_SAVED"
    LEDGER_INGESTED = "LEDGER_INGESTED"
    LEDGER_EVENT_RECORDED = "LEDGER_EVENT_RECORDED"
    LEDGER_CLEARED = "LEDGER_CLEARED"
    PERIOD_LOCKED = "PERIOD_LOCKED"

    # Reconciliation events
    DIVERGENCE_RESOLVED = "DIVERGENCE_RESOLVED"
    DIVERGENCE_REJECTED = "DIVERGENCE_REJECTED"

    # Receivables events
    SETTLEMENT_REGISTERED = "SETTLEMENT_REGISTERED"
    SETTLEMENT_REJECTED = "SETTLEMENT_REJECTED"

    # Commission events
    COMMISSIONS_RECALCULATED = "COMMISSIONS_RECALCULATED"
    VENDOR_UPDATED = "VENDOR_UPDATED"

    # Closing events
    CLOSING_STEP_COMPLETED = "CLOSING_STEP_COMPLETED"
    PERIOD_CLOSED = "PERIOD_CLOSED"

    # System events
    SYSTEM_ERROR = "SYSTEM_ERROR"


def create_audit_event(
    event_type: AuditEventType,
    message: str,
    severity: AuditSeverity = AuditSeverity.INFO,
    period: Optional[str] = None,
    document_number: Optional[str] = None,
    workflow_id: Optional[str] = None,
    activity_name: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    actor: str = "system",
    snapshot_refs: Optional[List[DataReference]] = None,
) -> AuditEvent:
    """Create a new audit event with auto-generated ID and timestamp.

    Args:
        event_type: Type of event
        message: Human-readable message
        severity: Event severity level
        period: Closing period (YYYY-MM)
        document_number: Associated fiscal document or receivable
        workflow_id: Temporal workflow ID
        activity_name: Activity that generated the event
        details: Additional structured details
        actor: Who/what performed the action
        snapshot_refs: Related report snapshot references

    Returns:
        Configured AuditEvent ready for logging
    """
    return AuditEvent(
        event_id=str(uuid.uuid4()),
        timestamp=datetime.utcnow(),
        event_type=event_type.value,
        severity=severity,
        period=period,
        document_number=document_number,
        workflow_id=workflow_id,
        activity_name=activity_name,
        message=message,
        details=details or {},
        actor=actor,
        snapshot_refs=snapshot_refs or [],
    )


class AuditBackend(ABC):
    """Abstract base class for audit persistence backends."""

    @abstractmethod
    def log(self, event: AuditEvent) -> None:
        """Persist an audit event."""
        pass

    @abstractmethod
    def query(
        self,
        event_type: Optional[str] = None,
        period: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        """Query audit events with filters."""
        pass


class SQLiteAuditBackend(AuditBackend):
    """Audit backend that stores events in the ``audit_events`` table.

    Expects the schema created by ``core.storage.db.init_db``.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)

    def log(self, event: AuditEvent) -> None:
        conn = sqlite3.connect(self.db_path)
        try:
            conn.execute(
                """
                INSERT INTO audit_events (event_id, timestamp, event_type, period, event_json)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    event.event_id,
                    event.timestamp.isoformat(),
                    event.event_type,
                    event.period,
                    event.model_dump_json(),
                ),
            )
            conn.commit()
        finally:
            conn.close()

    def query(
        self,
        event_type: Optional[str] = None,
        period: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        clauses = []
        params: list = []
        if event_type:
            clauses.append("event_type = ?")
            params.append(event_type)
        if period:
            clauses.append("period = ?")
            params.append(period)
        if start_time:
            clauses.append("timestamp >= ?")
            params.append(start_time.isoformat())
        if end_time:
            clauses.append("timestamp <= ?")
            params.append(end_time.isoformat())

        sql = "SELECT event_json FROM audit_events"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY timestamp LIMIT ?"
        params.append(limit)

        conn = sqlite3.connect(self.db_path)
        try:
            rows = conn.execute(sql, params).fetchall()
        finally:
            conn.close()
        return [AuditEvent.model_validate(json.loads(row[0])) for row in rows]


class InMemoryAuditBackend(AuditBackend):
    """In-memory audit backend for testing."""

    def __init__(self):
        self._events: List[AuditEvent] = []

    def log(self, event: AuditEvent) -> None:
        self._events.append(event)

    def query(
        self,
        event_type: Optional[str] = None,
        period: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        results = []
        for event in self._events:
            if event_type and event.event_type != event_type:
                continue
            if period and event.period != period:
                continue
            if start_time and event.timestamp < start_time:
                continue
            if end_time and event.timestamp > end_time:
                continue
            results.append(event)
            if len(results) >= limit:
                break
        return results

    def clear(self) -> None:
        """Clear all events (for testing)."""
        self._events.clear()


class AuditLogger:
    """Main audit logger that supports multiple backends.

    Audit writes happen after the business transaction has committed; a
    failing backend is logged and does not undo the committed operation.

    Usage:
        audit = AuditLogger()
        audit.add_backend(SQLiteAuditBackend(db_path))

        audit.log_info(
            AuditEventType.SETTLEMENT_REGISTERED,
            "Settlement of 1000.00 on receivable 2002",
            period="2024-05",
            document_number="2002",
        )
    """

    def __init__(self, backends: Optional[List[AuditBackend]] = None):
        self._backends: List[AuditBackend] = list(backends or [])

    def add_backend(self, backend: AuditBackend) -> None:
        """Add an audit backend."""
        self._backends.append(backend)

    def log(self, event: AuditEvent) -> None:
        """Log event to all backends."""
        for backend in self._backends:
            try:
                backend.log(event)
            except Exception:
                logger.exception(
                    f"Audit logging failed for backend {type(backend).__name__}",
                    extra_fields={"event_type": event.event_type, "event_id": event.event_id},
                )

    def log_info(
        self,
        event_type: AuditEventType,
        message: str,
        **kwargs,
    ) -> None:
        """Log an INFO level event."""
        event = create_audit_event(event_type, message, AuditSeverity.INFO, **kwargs)
        self.log(event)

    def log_warning(
        self,
        event_type: AuditEventType,
        message: str,
        **kwargs,
    ) -> None:
        """Log a WARN level event."""
        event = create_audit_event(event_type, message, AuditSeverity.WARN, **kwargs)
        self.log(event)

    def log_error(
        self,
        event_type: AuditEventType,
        message: str,
        **kwargs,
    ) -> None:
        """Log an ERROR level event."""
        event = create_audit_event(event_type, message, AuditSeverity.ERROR, **kwargs)
        self.log(event)

    def query(
        self,
        event_type: Optional[str] = None,
        period: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        """Query events from all backends (returns first backend's results)."""
        if not self._backends:
            return []
        return self._backends[0].query(event_type, period, start_time, end_time, limit)


def null_audit() -> AuditLogger:
    """Audit logger with no backends (events are dropped)."""
    return AuditLogger()
