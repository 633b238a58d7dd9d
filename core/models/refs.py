"""Data reference and audit models for stored report snapshots and tracking."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field


class DataReference(BaseModel):
    """Reference to a stored closing report snapshot.

    Attributes:
        storage_uri: Location of the snapshot (``sqlite:///<db>#closing_reports/<period>``)
        content_hash: SHA256 hash of the canonical JSON for integrity verification
        content_type: MIME type of the snapshot
        size_bytes: Size of the canonical JSON in bytes
        stored_at: Timestamp when the snapshot was stored
    """
    storage_uri: str = Field(..., description="Snapshot location")
    content_hash: str = Field(..., description="SHA256 hash of content")
    content_type: str = Field(default="application/json", description="MIME type")
    size_bytes: int = Field(..., description="Size in bytes")
    stored_at: datetime = Field(default_factory=datetime.utcnow, description="Storage timestamp")


# =============================================================================
# Audit Event Models
# =============================================================================

class AuditSeverity(str, Enum):
    """Severity levels for audit events."""
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    BLOCK = "BLOCK"


class AuditEvent(BaseModel):
    """An audit event for tracking operator and system actions.

    Complements the resolution records and the ledger itself: every
    money-affecting operation leaves one of these behind.
    """
    event_id: str = Field(..., description="Unique event identifier")
    timestamp: datetime = Field(default_factory=datetime.utcnow, description="Event timestamp")
    event_type: str = Field(..., description="Type of event (DIVERGENCE_RESOLVED, SETTLEMENT_REGISTERED, etc.)")
    severity: AuditSeverity = Field(default=AuditSeverity.INFO, description="Event severity")

    # Context
    period: Optional[str] = Field(None, description="Closing period (YYYY-MM)")
    document_number: Optional[str] = Field(None, description="Associated fiscal document / receivable")
    workflow_id: Optional[str] = Field(None, description="Temporal workflow ID")
    activity_name: Optional[str] = Field(None, description="Activity that generated event")

    # Details
    message: str = Field(..., description="Human-readable message")
    details: dict = Field(default_factory=dict, description="Additional event details")

    # Actor
    actor: str = Field(default="system", description="Who/what performed the action")

    # Evidence
    snapshot_refs: list[DataReference] = Field(default_factory=list, description="Related report snapshots")
