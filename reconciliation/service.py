"""Transactional application of divergence resolutions.

A resolution is one atomic commit: the fiscal record mutation, the ledger
adjustment legs (debit first, then credit), their receivables projection and
the resolution record either all land or none do.

Exposes:
- save_report(report, ...)            -> DataReference
- apply_resolution(period, numero, action, ...) -> ResolutionResult
- list_divergences(period, ...)       -> List[FiscalRecord]
- list_resolutions(period, ...)       -> List[ResolutionRecord]
"""

import json
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from core.audit.events import AuditEventType, AuditLogger, null_audit
from core.config import DEFAULT_DB_PATH
from core.errors import ClosingLedgerError
from core.models.canonical import ClosingReport, DivergenceStatus, FiscalRecord
from core.models.ledger import (
    EventMetadata,
    LedgerEvent,
    NewLedgerEvent,
    ResolutionRecord,
)
from core.models.refs import DataReference
from core.observability.logging import get_logger, with_correlation
from core.storage.db import reader, transaction
from core.storage.reports import get_record, list_records, put_report, update_record
from ledger.service import (
    DEFAULT_CHUNK_SIZE,
    append_event,
    clear_period_data,
    ensure_period_open,
    ingest_events_from_report,
    record_real_date,
)
from receivables.projection import DEFAULT_DUE_DAYS, ORIGINAL_REFERENCE_KEY
from reconciliation.engine import ResolutionOutcome, resolve
from reconciliation.normalizer import normalize_report


logger = get_logger(__name__)


@dataclass
class ResolutionResult:
    record: FiscalRecord
    resolution: ResolutionRecord
    ledger_events: List[LedgerEvent] = field(default_factory=list)


# =============================================================================
# Report intake
# =============================================================================

def save_report(
    report: ClosingReport,
    actor: str = "SYSTEM",
    db_path: Path = DEFAULT_DB_PATH,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    due_days: int = DEFAULT_DUE_DAYS,
    audit: Optional[AuditLogger] = None,
) -> DataReference:
    """Store a finalized report and (re-)ingest it into the ledger.

    The period's previous ledger events are cleared and the normalized report
    stored in one commit; ingestion follows in chunks. Re-running after a
    failed ingestion converges to the same ledger.

    Raises:
        PeriodLockedError: If the period is locked
    """
    audit = audit or null_audit()
    normalized = normalize_report(report)
    now = datetime.utcnow()
    normalized.created_at = normalized.created_at or now
    normalized.updated_at = now

    with with_correlation(period=normalized.period, actor=actor):
        with transaction(db_path) as conn:
            ensure_period_open(conn, normalized.period)
            cleared = clear_period_data(normalized.period, actor, db_path, conn)
            ref = put_report(conn, normalized)

        events = ingest_events_from_report(normalized, actor, db_path, chunk_size, due_days)

        pending = len(normalized.pending_divergences())
        logger.info(
            f"Report {normalized.period} saved",
            extra_fields={"records": len(normalized.records), "pending_divergences": pending,
                          "events_cleared": cleared, "events_ingested": len(events),
                          "content_hash": ref.content_hash},
        )

    audit.log_info(
        AuditEventType.REPORT_SAVED,
        f"Report {normalized.period} saved with {pending} pending divergences",
        period=normalized.period,
        actor=actor,
        details={"records": len(normalized.records), "events_cleared": cleared},
        snapshot_refs=[ref],
    )
    audit.log_info(
        AuditEventType.LEDGER_INGESTED,
        f"{len(events)} ledger events ingested for {normalized.period}",
        period=normalized.period,
        actor=actor,
        details={"events": len(events)},
    )
    return ref


# =============================================================================
# Resolution
# =============================================================================

def _adjustment_events(period: str, record: FiscalRecord,
                       outcome: ResolutionOutcome) -> List[NewLedgerEvent]:
    return [
        NewLedgerEvent(
            type=adj.event_type,
            subtype=adj.subtype,
            period=period,
            origin_id=record.number,
            vendor=adj.vendor,
            value=adj.value,
            metadata=EventMetadata(
                description=f"Ajuste Divergência: {adj.description}",
                client=record.client or None,
                real_date=record_real_date(outcome.record),
                leg=adj.leg,
                extra={ORIGINAL_REFERENCE_KEY: adj.reference} if adj.reference else {},
            ),
        )
        for adj in outcome.adjustments
    ]


def _insert_resolution(conn: sqlite3.Connection, resolution: ResolutionRecord) -> None:
    conn.execute(
        """
        INSERT INTO resolution_records
        (id, period, divergence_id, divergence_type, action, actor, note,
         ledger_event_ids, timestamp)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            resolution.id,
            resolution.period,
            resolution.divergence_id,
            resolution.divergence_type.value,
            resolution.action,
            resolution.actor,
            resolution.note,
            json.dumps(resolution.ledger_event_ids),
            resolution.timestamp.isoformat(),
        ),
    )


def apply_resolution(
    period: str,
    document_number: str,
    action: str,
    actor: str,
    comment: str = "",
    vendor_code: Optional[str] = None,
    reference: Optional[str] = None,
    db_path: Path = DEFAULT_DB_PATH,
    due_days: int = DEFAULT_DUE_DAYS,
    audit: Optional[AuditLogger] = None,
) -> ResolutionResult:
    """Resolve a record's divergence with an action, atomically.

    Args:
        period: Closing period (YYYY-MM)
        document_number: Fiscal record number (the divergence id)
        action: ResolutionAction name
        actor: Operator identifier for the audit trail
        comment: Free-text observation appended to the resolution note
        vendor_code: Payload for MANUAL
        reference: Payload for MANUAL_REF

    Returns:
        ResolutionResult with the updated record, the resolution record and
        the ledger events appended

    Raises:
        FiscalRecordNotFound, DivergenceAlreadyResolved,
        InvalidActionForDivergence, PeriodLockedError, StorageError
    """
    audit = audit or null_audit()

    with with_correlation(period=period, document_number=document_number, actor=actor):
        try:
            with transaction(db_path) as conn:
                ensure_period_open(conn, period)
                record = get_record(conn, period, document_number)
                outcome = resolve(record, action, comment, vendor_code, reference)

                update_record(conn, period, outcome.record)

                appended = [
                    append_event(conn, event, actor, due_days=due_days)
                    for event in _adjustment_events(period, record, outcome)
                ]

                resolution = ResolutionRecord(
                    id=str(uuid.uuid4()),
                    period=period,
                    divergence_id=record.number,
                    divergence_type=outcome.divergence_type,
                    action=outcome.action.value,
                    actor=actor,
                    note=outcome.note,
                    timestamp=datetime.utcnow(),
                    ledger_event_ids=[e.id for e in appended],
                )
                _insert_resolution(conn, resolution)
        except ClosingLedgerError as exc:
            logger.warning(
                f"Resolution rejected: {exc.message}",
                extra_fields={"action": str(action), "error": type(exc).__name__},
            )
            audit.log_warning(
                AuditEventType.DIVERGENCE_REJECTED,
                f"Resolution of {document_number} with {action} rejected: {exc.message}",
                period=period,
                document_number=document_number,
                actor=actor,
                details=exc.to_dict(),
            )
            raise

        logger.info(
            f"Divergence {document_number} resolved with {outcome.action.value}",
            extra_fields={"divergence_type": outcome.divergence_type.value,
                          "final_vendor": outcome.record.final_vendor,
                          "ledger_events": len(appended)},
        )

    audit.log_info(
        AuditEventType.DIVERGENCE_RESOLVED,
        f"Divergence {document_number} resolved with {outcome.action.value}",
        period=period,
        document_number=document_number,
        actor=actor,
        details={
            "divergence_type": outcome.divergence_type.value,
            "note": outcome.note,
            "final_vendor": outcome.record.final_vendor,
            "ledger_event_ids": resolution.ledger_event_ids,
        },
    )
    return ResolutionResult(record=outcome.record, resolution=resolution, ledger_events=appended)


# =============================================================================
# Queries
# =============================================================================

def list_divergences(period: str, db_path: Path = DEFAULT_DB_PATH) -> List[FiscalRecord]:
    """Records of a period still awaiting a decision."""
    with reader(db_path) as conn:
        return list_records(conn, period, DivergenceStatus.DIVERGENCIA)


def list_resolutions(
    period: str,
    document_number: Optional[str] = None,
    db_path: Path = DEFAULT_DB_PATH,
) -> List[ResolutionRecord]:
    query = "SELECT * FROM resolution_records WHERE period = ?"
    params: list = [period]
    if document_number:
        query += " AND divergence_id = ?"
        params.append(document_number)
    query += " ORDER BY timestamp"
    with reader(db_path) as conn:
        rows = conn.execute(query, params).fetchall()
    return [
        ResolutionRecord(
            id=row["id"],
            period=row["period"],
            divergence_id=row["divergence_id"],
            divergence_type=row["divergence_type"],
            action=row["action"],
            actor=row["actor"],
            note=row["note"] or "",
            timestamp=row["timestamp"],
            ledger_event_ids=json.loads(row["ledger_event_ids"]),
        )
        for row in rows
    ]
