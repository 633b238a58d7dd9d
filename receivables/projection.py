"""Receivables projection: ledger event -> receivable balance.

Rules, applied per appended ledger event inside the ledger transaction:
- VENDA + FATURADA opens a receivable keyed by the origin document, unless one
  already exists (idempotent).
- DEVOLUCAO, CANCELAMENTO and negative AJUSTE (excluding the two legs of a
  vendor transfer) reduce the open balance by ``abs(value)``. A reduction that
  consumes the remaining balance cancels the receivable at exactly zero;
  otherwise the receivable becomes PARCIAL.
- Everything else has no projection effect.

Every effect is recorded in ``receivable_applications`` so that clearing a
period can reverse exactly what its events did.
"""

import sqlite3
from datetime import date, timedelta
from decimal import Decimal
from enum import Enum

from core.models.canonical import to_money
from core.models.ledger import (
    LedgerEvent,
    LedgerEventSubtype,
    LedgerEventType,
    ReceivableEntry,
    ReceivableStatus,
)
from core.observability.logging import get_logger
from receivables import store


logger = get_logger(__name__)

DEFAULT_DUE_DAYS = 28
NO_DOCUMENT = "S/N"
DEFAULT_CLIENT = "Cliente Diverso"
ZERO = Decimal("0.00")

# Key in event metadata ``extra`` pointing a return at the invoice it reduces
ORIGINAL_REFERENCE_KEY = "nfOriginalReferencia"


class ProjectionResult(str, Enum):
    CREATED = "CREATED"
    EXISTING = "EXISTING"
    REDUCED = "REDUCED"
    CANCELED = "CANCELED"
    IGNORED = "IGNORED"
    NO_EFFECT = "NO_EFFECT"


def is_invoiced_sale(event: LedgerEvent) -> bool:
    return event.type == LedgerEventType.VENDA and event.subtype == LedgerEventSubtype.FATURADA


def is_reduction(event: LedgerEvent) -> bool:
    if event.type in (LedgerEventType.DEVOLUCAO, LedgerEventType.CANCELAMENTO):
        return True
    return (
        event.type == LedgerEventType.AJUSTE
        and event.value < 0
        and event.metadata.leg is None
    )


def reduction_target(event: LedgerEvent) -> str:
    """Receivable a reduction applies to: the referenced invoice for returns."""
    reference = event.metadata.extra.get(ORIGINAL_REFERENCE_KEY)
    if event.type == LedgerEventType.DEVOLUCAO and reference:
        return str(reference)
    return event.origin_id


def due_date_for(emission: date, due_days: int = DEFAULT_DUE_DAYS) -> date:
    return emission + timedelta(days=due_days)


def apply_ledger_event(
    conn: sqlite3.Connection,
    event: LedgerEvent,
    due_days: int = DEFAULT_DUE_DAYS,
) -> ProjectionResult:
    """Apply one ledger event to the receivables sub-ledger.

    Args:
        conn: Connection inside the transaction that appended the event
        event: The appended ledger event
        due_days: Days from emission to due date for new receivables

    Returns:
        What the event did to the projection
    """
    if is_invoiced_sale(event):
        return _open_receivable(conn, event, due_days)
    if is_reduction(event):
        return _reduce_receivable(conn, event)
    return ProjectionResult.NO_EFFECT


def _open_receivable(conn: sqlite3.Connection, event: LedgerEvent,
                     due_days: int) -> ProjectionResult:
    receivable_id = event.origin_id
    if not receivable_id or receivable_id == NO_DOCUMENT:
        return ProjectionResult.NO_EFFECT

    if store.load(conn, receivable_id) is not None:
        return ProjectionResult.EXISTING

    value = to_money(event.value)
    if value <= 0:
        logger.warning(
            f"Invoiced sale {receivable_id} has non-positive value; no receivable opened",
            extra_fields={"receivable_id": receivable_id, "value": str(value)},
        )
        return ProjectionResult.IGNORED

    entry = ReceivableEntry(
        id=receivable_id,
        document_number=receivable_id,
        client=event.metadata.client or DEFAULT_CLIENT,
        vendor=event.vendor,
        original_value=value,
        paid_value=ZERO,
        reduced_value=ZERO,
        open_balance=value,
        emission_date=event.event_date,
        due_date=due_date_for(event.event_date, due_days),
        status=ReceivableStatus.ABERTA,
    )
    store.insert(conn, entry)
    store.record_application(conn, event.id, receivable_id, "CREATE", value)
    logger.info(
        f"Receivable {receivable_id} opened",
        extra_fields={"receivable_id": receivable_id, "value": str(value),
                      "due_date": entry.due_date.isoformat()},
    )
    return ProjectionResult.CREATED


def _reduce_receivable(conn: sqlite3.Connection, event: LedgerEvent) -> ProjectionResult:
    receivable_id = reduction_target(event)
    entry = store.load(conn, receivable_id)
    if entry is None:
        return ProjectionResult.NO_EFFECT

    amount = to_money(abs(event.value))
    if entry.open_balance <= 0:
        logger.warning(
            f"Reduction on receivable {receivable_id} ignored: balance already zero",
            extra_fields={"receivable_id": receivable_id, "status": entry.status.value,
                          "amount": str(amount), "event_id": event.id},
        )
        return ProjectionResult.IGNORED

    if amount >= entry.open_balance:
        applied = entry.open_balance
        entry.open_balance = ZERO
        entry.status = ReceivableStatus.CANCELADA
        entry.note = f"Cancelado via Ledger em {date.today().isoformat()}"
        result = ProjectionResult.CANCELED
    else:
        applied = amount
        entry.open_balance = to_money(entry.open_balance - amount)
        entry.status = ReceivableStatus.PARCIAL
        result = ProjectionResult.REDUCED
    entry.reduced_value = to_money(entry.reduced_value + applied)

    store.update(conn, entry)
    store.record_application(conn, event.id, receivable_id, "REDUCE", applied)
    logger.info(
        f"Receivable {receivable_id} reduced",
        extra_fields={"receivable_id": receivable_id, "applied": str(applied),
                      "open_balance": str(entry.open_balance), "status": entry.status.value},
    )
    return result


def _status_after_reversal(entry: ReceivableEntry) -> ReceivableStatus:
    if entry.open_balance == 0:
        return entry.status
    if entry.paid_value > 0 or entry.reduced_value > 0:
        return ReceivableStatus.PARCIAL
    return ReceivableStatus.ABERTA


def revert_period(conn: sqlite3.Connection, period: str) -> int:
    """Undo the projection effects of a period's ledger events, newest first.

    Receivables opened by the period are removed unless they carry
    settlements or effects from other periods.

    Returns:
        Number of applications reverted
    """
    reverted = 0
    for app in store.applications_for_period(conn, period):
        receivable_id = app["receivable_id"]
        amount = Decimal(app["amount"])
        store.delete_application(conn, app["event_id"])
        reverted += 1

        entry = store.load(conn, receivable_id)
        if entry is None:
            continue

        if app["kind"] == "REDUCE":
            entry.open_balance = to_money(entry.open_balance + amount)
            entry.reduced_value = to_money(entry.reduced_value - amount)
            entry.status = _status_after_reversal(entry)
            if entry.status != ReceivableStatus.CANCELADA:
                entry.note = None
            store.update(conn, entry)
        elif not entry.settlements and store.count_applications(conn, receivable_id) == 0:
            store.delete(conn, receivable_id)
        else:
            logger.warning(
                f"Receivable {receivable_id} kept after clearing period {period}",
                extra_fields={"receivable_id": receivable_id,
                              "settlements": len(entry.settlements)},
            )
    return reverted
