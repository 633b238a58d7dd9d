"""Ledger write and read paths.

The ledger is append-only: events are never updated or deleted in normal
operation. The two exceptions are administrative: ``clear_period_data``
(re-ingestion of a period's report) and ``lock_ledger_period`` (one-way lock
flag). Every append synchronously feeds the receivables projection inside
the same transaction.

Exposes:
- append_event(conn, event, ...)        -> LedgerEvent   (inside a caller transaction)
- record_event(event, ...)              -> LedgerEvent
- ingest_bulk_events(events, ...)       -> List[LedgerEvent]
- build_events_from_report(report)      -> List[NewLedgerEvent]
- ingest_events_from_report(report, ...)-> List[LedgerEvent]
- register_closing_adjustment(...)      -> LedgerEvent
- clear_period_data(period, ...)        -> int
- lock_ledger_period(period, ...)       -> int
- get_ledger / vendor_totals / is_period_locked
"""

import sqlite3
import uuid
from collections import defaultdict
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from core.config import DEFAULT_DB_PATH, MAX_BATCH_SIZE
from core.errors import PeriodLockedError
from core.models.canonical import (
    ClosingReport,
    DivergenceStatus,
    DivergenceType,
    DocumentType,
    FiscalRecord,
    VENDOR_REVERSED,
    VENDOR_STORE,
    VENDOR_UNDEFINED,
    to_money,
)
from core.models.ledger import (
    EventMetadata,
    LedgerEvent,
    LedgerEventSubtype,
    LedgerEventType,
    NewLedgerEvent,
)
from core.observability.logging import get_logger, with_correlation
from core.storage.db import chunked, now_iso, reader, transaction
from reconciliation.normalizer import booked_value, booked_vendor
from receivables.projection import (
    DEFAULT_DUE_DAYS,
    ORIGINAL_REFERENCE_KEY,
    apply_ledger_event,
    revert_period,
)


logger = get_logger(__name__)

SYSTEM_ACTOR = "SYSTEM"
# Resolution recorded on XML-only documents left uninvoiced
WAIT_ACTION = "WAIT"
DEFAULT_CHUNK_SIZE = 400


# =============================================================================
# Helpers
# =============================================================================

def generate_ledger_description(event: NewLedgerEvent) -> str:
    """``<description or type> (<subtype>) - <client>``, parts omitted when absent."""
    base = event.metadata.description or event.type.value
    sub = f"({event.subtype.value})" if event.subtype else ""
    cli = f" - {event.metadata.client}" if event.metadata.client else ""
    return f"{base} {sub}{cli}".strip()


def provisional_vendor(record: FiscalRecord) -> str:
    """Vendor a record is booked under: its final vendor once resolved."""
    return record.final_vendor or booked_vendor(record)


def awaiting_invoice_decision(record: FiscalRecord) -> bool:
    """XML without movement: no money moved until the operator invoices it.

    Holds while the divergence is pending and after a WAIT resolution.
    """
    if record.primary_divergence != DivergenceType.XML_SEM_MOVIMENTO:
        return False
    if record.divergence_status == DivergenceStatus.DIVERGENCIA:
        return True
    return record.resolution_action == WAIT_ACTION


def record_real_date(record: FiscalRecord) -> date:
    """Day the money moved: payment day for same-day sales, emission otherwise."""
    if record.document_type == DocumentType.PAGA_NO_DIA:
        return record.payment_date or record.emission_date
    return record.emission_date


def _row_to_event(row: sqlite3.Row) -> LedgerEvent:
    return LedgerEvent(
        id=row["id"],
        type=LedgerEventType(row["type"]),
        subtype=LedgerEventSubtype(row["subtype"]) if row["subtype"] else None,
        period=row["period"],
        origin_id=row["origin_id"],
        vendor=row["vendor"],
        value=Decimal(row["value"]),
        metadata=EventMetadata.model_validate_json(row["metadata_json"]),
        event_date=row["event_date"],
        description=row["description"] or "",
        created_at=row["created_at"],
        created_by=row["created_by"],
        is_locked=bool(row["is_locked"]),
    )


def period_locked(conn: sqlite3.Connection, period: str) -> bool:
    row = conn.execute(
        "SELECT is_locked FROM ledger_periods WHERE period = ?", (period,)
    ).fetchone()
    return bool(row and row["is_locked"])


def ensure_period_open(conn: sqlite3.Connection, period: str) -> None:
    """Raise PeriodLockedError if the period no longer accepts writes."""
    if period_locked(conn, period):
        logger.warning(
            f"Write rejected: period {period} is locked",
            extra_fields={"period": period},
        )
        raise PeriodLockedError(period)


# =============================================================================
# Write paths
# =============================================================================

def append_event(
    conn: sqlite3.Connection,
    event: NewLedgerEvent,
    actor: str = SYSTEM_ACTOR,
    default_subtype: LedgerEventSubtype = LedgerEventSubtype.MANUAL,
    due_days: int = DEFAULT_DUE_DAYS,
) -> LedgerEvent:
    """Append one event and project it, inside the caller's transaction.

    Args:
        conn: Connection inside an open transaction
        event: Event to append
        actor: Creator recorded on the event
        default_subtype: Subtype used when the event has none
        due_days: Receivable due days for invoiced sales

    Returns:
        The stored LedgerEvent

    Raises:
        PeriodLockedError: If the event's period is locked
    """
    ensure_period_open(conn, event.period)

    subtype = event.subtype or default_subtype
    stored = LedgerEvent(
        id=str(uuid.uuid4()),
        type=event.type,
        subtype=subtype,
        period=event.period,
        origin_id=event.origin_id,
        vendor=event.vendor,
        value=to_money(event.value),
        metadata=event.metadata,
        event_date=event.metadata.real_date or date.today(),
        description=generate_ledger_description(event.model_copy(update={"subtype": subtype})),
        created_at=datetime.utcnow(),
        created_by=actor or SYSTEM_ACTOR,
    )

    seq = conn.execute("SELECT COALESCE(MAX(seq), 0) + 1 AS next FROM ledger_events").fetchone()["next"]
    conn.execute(
        """
        INSERT INTO ledger_events
        (id, seq, period, event_date, type, subtype, origin_id, vendor, value,
         description, client, metadata_json, created_at, created_by, is_locked)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0)
        """,
        (
            stored.id,
            seq,
            stored.period,
            stored.event_date.isoformat(),
            stored.type.value,
            stored.subtype.value,
            stored.origin_id,
            stored.vendor,
            str(stored.value),
            stored.description,
            stored.metadata.client,
            stored.metadata.model_dump_json(by_alias=True),
            stored.created_at.isoformat(),
            stored.created_by,
        ),
    )

    apply_ledger_event(conn, stored, due_days=due_days)
    return stored


def record_event(
    event: NewLedgerEvent,
    actor: str = SYSTEM_ACTOR,
    db_path: Path = DEFAULT_DB_PATH,
    due_days: int = DEFAULT_DUE_DAYS,
) -> LedgerEvent:
    """Append a single event (manual adjustments) as its own atomic commit."""
    with with_correlation(period=event.period, document_number=event.origin_id, actor=actor):
        with transaction(db_path) as conn:
            stored = append_event(conn, event, actor, LedgerEventSubtype.MANUAL, due_days)
        logger.info(
            "Ledger event recorded",
            extra_fields={"event_id": stored.id, "type": stored.type.value,
                          "vendor": stored.vendor, "value": str(stored.value)},
        )
    return stored


def ingest_bulk_events(
    events: Sequence[NewLedgerEvent],
    actor: str = SYSTEM_ACTOR,
    db_path: Path = DEFAULT_DB_PATH,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    due_days: int = DEFAULT_DUE_DAYS,
) -> List[LedgerEvent]:
    """Append events in sequential chunks, one atomic commit per chunk.

    Projection runs per event in insertion order. Locked periods are checked
    for the whole batch before the first chunk is written.

    Raises:
        ValueError: If chunk_size is outside 1..MAX_BATCH_SIZE
        PeriodLockedError: If any event targets a locked period
    """
    if not 1 <= chunk_size <= MAX_BATCH_SIZE:
        raise ValueError(f"chunk_size must be between 1 and {MAX_BATCH_SIZE}, got {chunk_size}")
    if not events:
        return []

    with reader(db_path) as conn:
        for period in sorted({e.period for e in events}):
            ensure_period_open(conn, period)

    stored: List[LedgerEvent] = []
    for index, chunk in enumerate(chunked(list(events), chunk_size)):
        with transaction(db_path) as conn:
            for event in chunk:
                stored.append(
                    append_event(conn, event, actor, LedgerEventSubtype.OUTROS, due_days)
                )
        logger.info(
            f"Ledger chunk {index + 1} committed",
            extra_fields={"events": len(chunk), "total_committed": len(stored)},
        )
    return stored


def build_events_from_report(report: ClosingReport) -> List[NewLedgerEvent]:
    """Translate a finalized closing report into ledger events (pure).

    - one VENDA/DEVOLUCAO per fiscal record (FATURADA for invoiced documents)
    - plus its AJUSTE/ESTORNO when the record was reversed as cancelled
    - one VENDA/À VISTA per sale without invoice (origin ``SNF-<idx>``)
    - one AJUSTE/ESTORNO of ``-abs(value)`` on LOJA per cash outflow (origin ``OUT-<idx>``)
    """
    period = report.period
    events: List[NewLedgerEvent] = []

    for record in report.records:
        if awaiting_invoice_decision(record):
            continue
        real_date = record_real_date(record)
        value = booked_value(record)
        vendor = provisional_vendor(record)
        if record.final_vendor == VENDOR_REVERSED:
            vendor = booked_vendor(record)
        extra = {}
        if record.original_reference:
            extra[ORIGINAL_REFERENCE_KEY] = record.original_reference
        events.append(NewLedgerEvent(
            type=(LedgerEventType.DEVOLUCAO if record.document_type == DocumentType.DEVOLUCAO
                  else LedgerEventType.VENDA),
            subtype=(LedgerEventSubtype.FATURADA if record.document_type == DocumentType.FATURADA
                     else LedgerEventSubtype.A_VISTA),
            period=period,
            origin_id=record.number,
            vendor=vendor,
            value=value,
            metadata=EventMetadata(
                description=f"NF {record.number} ({record.document_type.value})",
                client=record.client or None,
                real_date=real_date,
                extra=extra,
            ),
        ))
        if record.final_vendor == VENDOR_REVERSED:
            events.append(NewLedgerEvent(
                type=LedgerEventType.AJUSTE,
                subtype=LedgerEventSubtype.ESTORNO,
                period=period,
                origin_id=record.number,
                vendor=vendor,
                value=-value,
                metadata=EventMetadata(
                    description=f"Estorno NF Cancelada {record.number}",
                    client=record.client or None,
                    real_date=real_date,
                ),
            ))

    for idx, sale in enumerate(report.no_invoice_sales):
        events.append(NewLedgerEvent(
            type=LedgerEventType.VENDA,
            subtype=LedgerEventSubtype.A_VISTA,
            period=period,
            origin_id=f"SNF-{idx}",
            vendor=(sale.vendor or "").strip().upper() or VENDOR_UNDEFINED,
            value=sale.value,
            metadata=EventMetadata(
                description=f"NFC-e / Cupom: {sale.description}",
                client="Consumidor Final",
                real_date=sale.date,
            ),
        ))

    for idx, outflow in enumerate(report.outflows):
        events.append(NewLedgerEvent(
            type=LedgerEventType.AJUSTE,
            subtype=LedgerEventSubtype.ESTORNO,
            period=period,
            origin_id=f"OUT-{idx}",
            vendor=VENDOR_STORE,
            value=-abs(outflow.value),
            metadata=EventMetadata(
                description=f"Saída de Caixa: {outflow.description}",
                real_date=outflow.date,
            ),
        ))

    return events


def ingest_events_from_report(
    report: ClosingReport,
    actor: str = SYSTEM_ACTOR,
    db_path: Path = DEFAULT_DB_PATH,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    due_days: int = DEFAULT_DUE_DAYS,
) -> List[LedgerEvent]:
    """Ingest a report's events. Callers clear the period first to re-ingest."""
    with with_correlation(period=report.period, actor=actor):
        events = build_events_from_report(report)
        stored = ingest_bulk_events(events, actor, db_path, chunk_size, due_days)
        logger.info(
            f"Report {report.period} ingested into ledger",
            extra_fields={"events": len(stored), "records": len(report.records),
                          "no_invoice_sales": len(report.no_invoice_sales),
                          "outflows": len(report.outflows)},
        )
    return stored


def register_closing_adjustment(
    period: str,
    kind: str,
    value,
    description: str,
    vendor: str,
    reference_id: str,
    actor: str = SYSTEM_ACTOR,
    db_path: Path = DEFAULT_DB_PATH,
    conn: Optional[sqlite3.Connection] = None,
) -> LedgerEvent:
    """Record a closing adjustment.

    ``kind`` maps ESTORNO -> AJUSTE/ESTORNO, VENDA -> VENDA/MANUAL and
    AJUSTE -> AJUSTE/MANUAL. When ``conn`` is given the event joins the
    caller's transaction.
    """
    kind = kind.upper()
    if kind not in ("ESTORNO", "VENDA", "AJUSTE"):
        raise ValueError(f"Unknown adjustment kind: {kind}")

    event = NewLedgerEvent(
        type=LedgerEventType.VENDA if kind == "VENDA" else LedgerEventType.AJUSTE,
        subtype=LedgerEventSubtype.ESTORNO if kind == "ESTORNO" else LedgerEventSubtype.MANUAL,
        period=period,
        origin_id=reference_id,
        vendor=vendor,
        value=value,
        metadata=EventMetadata(
            description=f"Ajuste Divergência: {description}",
            real_date=date.today(),
        ),
    )
    if conn is not None:
        return append_event(conn, event, actor)
    return record_event(event, actor, db_path)


# =============================================================================
# Administrative paths
# =============================================================================

def clear_period_data(
    period: str,
    actor: str = SYSTEM_ACTOR,
    db_path: Path = DEFAULT_DB_PATH,
    conn: Optional[sqlite3.Connection] = None,
) -> int:
    """Delete a period's ledger events, reversing their projection effects.

    Administrative reset used before re-ingesting a report.

    Returns:
        Number of events deleted

    Raises:
        PeriodLockedError: If the period is locked
    """
    if conn is None:
        with transaction(db_path) as own_conn:
            return clear_period_data(period, actor, db_path, own_conn)

    ensure_period_open(conn, period)
    reverted = revert_period(conn, period)
    deleted = conn.execute("DELETE FROM ledger_events WHERE period = ?", (period,)).rowcount
    logger.info(
        f"Ledger period {period} cleared",
        extra_fields={"period": period, "events_deleted": deleted,
                      "projection_reverted": reverted, "actor": actor},
    )
    return deleted


def lock_ledger_period(
    period: str,
    actor: str = SYSTEM_ACTOR,
    db_path: Path = DEFAULT_DB_PATH,
    conn: Optional[sqlite3.Connection] = None,
) -> int:
    """Lock a period. One-way: there is no unlock.

    Returns:
        Number of events flagged as locked (0 when already locked)
    """
    if conn is None:
        with transaction(db_path) as own_conn:
            return lock_ledger_period(period, actor, db_path, own_conn)

    if period_locked(conn, period):
        return 0
    conn.execute(
        """
        INSERT INTO ledger_periods (period, is_locked, locked_at, locked_by)
        VALUES (?, 1, ?, ?)
        ON CONFLICT(period) DO UPDATE SET
            is_locked = 1, locked_at = excluded.locked_at, locked_by = excluded.locked_by
        """,
        (period, now_iso(), actor),
    )
    flagged = conn.execute(
        "UPDATE ledger_events SET is_locked = 1 WHERE period = ?", (period,)
    ).rowcount
    logger.info(
        f"Ledger period {period} locked",
        extra_fields={"period": period, "events_locked": flagged, "actor": actor},
    )
    return flagged


# =============================================================================
# Read paths
# =============================================================================

def is_period_locked(period: str, db_path: Path = DEFAULT_DB_PATH) -> bool:
    with reader(db_path) as conn:
        return period_locked(conn, period)


def get_ledger(
    period: str,
    vendor: Optional[str] = None,
    db_path: Path = DEFAULT_DB_PATH,
) -> List[LedgerEvent]:
    """Events of a period in insertion order, optionally for one vendor."""
    query = "SELECT * FROM ledger_events WHERE period = ?"
    params: list = [period]
    if vendor:
        query += " AND vendor = ?"
        params.append(vendor)
    query += " ORDER BY seq"
    with reader(db_path) as conn:
        return [_row_to_event(row) for row in conn.execute(query, params).fetchall()]


def events_for_origin(origin_id: str, db_path: Path = DEFAULT_DB_PATH) -> List[LedgerEvent]:
    with reader(db_path) as conn:
        rows = conn.execute(
            "SELECT * FROM ledger_events WHERE origin_id = ? ORDER BY seq", (origin_id,)
        ).fetchall()
    return [_row_to_event(row) for row in rows]


def sum_by_vendor(events: Sequence[LedgerEvent]) -> Dict[str, Decimal]:
    totals: Dict[str, Decimal] = defaultdict(lambda: Decimal("0.00"))
    for event in events:
        totals[event.vendor] += event.value
    return {vendor: to_money(total) for vendor, total in sorted(totals.items())}


def vendor_totals(period: str, db_path: Path = DEFAULT_DB_PATH) -> Dict[str, Decimal]:
    """Total signed value committed per vendor for a period."""
    return sum_by_vendor(get_ledger(period, db_path=db_path))
