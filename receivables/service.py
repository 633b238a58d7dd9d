"""Receivables sub-ledger operations.

Settlements are entered here and fed back into the ledger as PAGAMENTO events
in the same commit; the ledger stays the canonical event log and receivables
the canonical current balance.

Exposes:
- register_settlement(receivable_id, request, actor, ...) -> ReceivableEntry
- get_receivable(receivable_id, ...)                       -> ReceivableEntry
- list_receivables(status, client, ...)                    -> List[ReceivableEntry]
- receivables_summary(start, end, ...)                     -> ReceivablesSummary
- build_cashflow_calendar(start_month, end_month, ...)     -> List[CalendarItem]
"""

import calendar
import uuid
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import List, Optional, Union

from core.audit.events import AuditEventType, AuditLogger, null_audit
from core.config import DEFAULT_DB_PATH
from core.errors import ClosingLedgerError, InvalidSettlementAmount, ReceivableNotFound
from core.models.canonical import is_valid_period, period_of, to_money
from core.models.ledger import (
    AgingBuckets,
    CalendarItem,
    CalendarItemStatus,
    EventMetadata,
    LedgerEventSubtype,
    LedgerEventType,
    NewLedgerEvent,
    OPEN_STATUSES,
    ReceivableEntry,
    ReceivablesSummary,
    ReceivableStatus,
    Settlement,
    SettlementRequest,
)
from core.observability.logging import get_logger, with_correlation
from core.storage.db import reader, transaction
from ledger.service import append_event
from receivables import store


logger = get_logger(__name__)

ZERO = Decimal("0.00")


# =============================================================================
# Settlement
# =============================================================================

def _validate_amount(entry: ReceivableEntry, amount: Decimal) -> Decimal:
    amount = to_money(amount)
    if amount <= 0:
        raise InvalidSettlementAmount(
            f"Settlement amount must be positive, got {amount}",
            {"receivable_id": entry.id, "amount": str(amount)},
        )
    if amount > entry.open_balance:
        raise InvalidSettlementAmount(
            f"Settlement amount {amount} exceeds open balance {entry.open_balance}",
            {"receivable_id": entry.id, "amount": str(amount),
             "open_balance": str(entry.open_balance)},
        )
    return amount


def register_settlement(
    receivable_id: str,
    request: Union[SettlementRequest, dict],
    actor: str,
    db_path: Path = DEFAULT_DB_PATH,
    audit: Optional[AuditLogger] = None,
) -> ReceivableEntry:
    """Register a payment (baixa) against a receivable.

    Validates ``0 < amount <= open_balance``, appends the settlement to the
    history, updates balance and status (PAGA at exactly zero, else PARCIAL)
    and appends a PAGAMENTO ledger event for the same amount, all in one
    commit. The receivable row is updated with a version compare-and-set.

    Raises:
        ReceivableNotFound: If the receivable does not exist
        InvalidSettlementAmount: If the amount is missing, not positive or
            above the open balance
        PeriodLockedError: If the payment date falls in a locked period
    """
    audit = audit or null_audit()
    if not isinstance(request, SettlementRequest):
        try:
            request = SettlementRequest.model_validate(request)
        except ValueError as exc:
            raise InvalidSettlementAmount(
                "Invalid settlement request", {"receivable_id": receivable_id, "errors": str(exc)}
            ) from exc

    with with_correlation(receivable_id=receivable_id, actor=actor,
                          period=period_of(request.payment_date)):
        try:
            with transaction(db_path) as conn:
                entry = store.load(conn, receivable_id)
                if entry is None:
                    raise ReceivableNotFound(
                        f"Receivable {receivable_id} not found", {"receivable_id": receivable_id}
                    )
                amount = _validate_amount(entry, request.amount)

                settlement = Settlement(
                    id=uuid.uuid4().hex[:8].upper(),
                    payment_date=request.payment_date,
                    amount=amount,
                    method=request.method,
                    note=request.note,
                    actor=actor,
                )
                entry.settlements.append(settlement)
                entry.paid_value = to_money(entry.paid_value + amount)
                entry.open_balance = to_money(entry.open_balance - amount)
                entry.status = (
                    ReceivableStatus.PAGA if entry.open_balance == 0 else ReceivableStatus.PARCIAL
                )
                updated = store.update(conn, entry)

                payment = append_event(
                    conn,
                    NewLedgerEvent(
                        type=LedgerEventType.PAGAMENTO,
                        subtype=LedgerEventSubtype.A_VISTA,
                        period=period_of(request.payment_date),
                        origin_id=entry.document_number,
                        vendor=entry.vendor,
                        value=amount,
                        metadata=EventMetadata(
                            description=f"Recebimento NF {entry.document_number} ({settlement.id})",
                            client=entry.client or None,
                            real_date=request.payment_date,
                            extra={"forma_pagamento": request.method},
                        ),
                    ),
                    actor,
                )
        except ClosingLedgerError as exc:
            logger.warning(
                f"Settlement rejected: {exc.message}",
                extra_fields={"error": type(exc).__name__},
            )
            audit.log_warning(
                AuditEventType.SETTLEMENT_REJECTED,
                f"Settlement on {receivable_id} rejected: {exc.message}",
                document_number=receivable_id,
                actor=actor,
                details=exc.to_dict(),
            )
            raise

        logger.info(
            "Settlement registered",
            extra_fields={"amount": str(amount), "method": request.method,
                          "open_balance": str(updated.open_balance),
                          "status": updated.status.value, "ledger_event_id": payment.id},
        )

    audit.log_info(
        AuditEventType.SETTLEMENT_REGISTERED,
        f"Settlement of {amount} on receivable {receivable_id}",
        period=payment.period,
        document_number=receivable_id,
        actor=actor,
        details={"amount": str(amount), "method": request.method,
                 "status": updated.status.value, "ledger_event_id": payment.id},
    )
    return updated


# =============================================================================
# Queries
# =============================================================================

def _with_effective_status(entry: ReceivableEntry, today: date) -> ReceivableEntry:
    return entry.model_copy(update={"status": entry.effective_status(today)})


def get_receivable(
    receivable_id: str,
    today: Optional[date] = None,
    db_path: Path = DEFAULT_DB_PATH,
) -> ReceivableEntry:
    today = today or date.today()
    with reader(db_path) as conn:
        entry = store.load(conn, receivable_id)
    if entry is None:
        raise ReceivableNotFound(
            f"Receivable {receivable_id} not found", {"receivable_id": receivable_id}
        )
    return _with_effective_status(entry, today)


def list_receivables(
    status: Optional[ReceivableStatus] = None,
    client: Optional[str] = None,
    today: Optional[date] = None,
    db_path: Path = DEFAULT_DB_PATH,
) -> List[ReceivableEntry]:
    """Receivables ordered by due date, with VENCIDA derived at read time.

    ``status`` filters on the effective status, so VENCIDA can be requested
    even though it is never stored.
    """
    today = today or date.today()
    with reader(db_path) as conn:
        entries = [_with_effective_status(e, today) for e in store.load_all(conn)]

    if status is not None:
        entries = [e for e in entries if e.status == ReceivableStatus(status)]
    if client:
        term = client.lower()
        entries = [e for e in entries if term in e.client.lower()]
    return entries


def receivables_summary(
    start: date,
    end: date,
    today: Optional[date] = None,
    db_path: Path = DEFAULT_DB_PATH,
) -> ReceivablesSummary:
    """Open totals by horizon, overdue aging, and amounts received in [start, end]."""
    today = today or date.today()
    summary = ReceivablesSummary()
    aging = AgingBuckets()

    with reader(db_path) as conn:
        entries = store.load_all(conn)

    for entry in entries:
        if entry.status in OPEN_STATUSES:
            balance = entry.open_balance
            summary.total_open += balance
            days_until_due = (entry.due_date - today).days

            if days_until_due == 0:
                summary.due_today += balance
            if 0 <= days_until_due <= 7:
                summary.due_7_days += balance
            if 0 <= days_until_due <= 30:
                summary.due_30_days += balance

            if days_until_due < 0:
                summary.total_overdue += balance
                overdue = -days_until_due
                if overdue <= 30:
                    aging.up_to_30 += balance
                elif overdue <= 60:
                    aging.up_to_60 += balance
                elif overdue <= 90:
                    aging.up_to_90 += balance
                else:
                    aging.over_90 += balance

        for settlement in entry.settlements:
            if start <= settlement.payment_date <= end:
                summary.received_in_window += settlement.amount

    summary.aging = aging
    return summary


def _month_bounds(month: str) -> tuple:
    if not is_valid_period(month):
        raise ValueError(f"Month must be YYYY-MM, got {month!r}")
    year, mon = (int(part) for part in month.split("-"))
    return date(year, mon, 1), date(year, mon, calendar.monthrange(year, mon)[1])


def build_cashflow_calendar(
    start_month: str,
    end_month: Optional[str] = None,
    today: Optional[date] = None,
    db_path: Path = DEFAULT_DB_PATH,
) -> List[CalendarItem]:
    """Expected inflows (open receivables by due date) and realized ones
    (settlements by payment date) within a month range, ordered by date."""
    today = today or date.today()
    first, _ = _month_bounds(start_month)
    _, last = _month_bounds(end_month or start_month)

    with reader(db_path) as conn:
        entries = store.load_all(conn)

    items: List[CalendarItem] = []
    for entry in entries:
        if entry.status in OPEN_STATUSES and first <= entry.due_date <= last:
            items.append(CalendarItem(
                id=f"REC-{entry.id}",
                expected_date=entry.due_date,
                value=entry.open_balance,
                client=entry.client,
                receivable_id=entry.id,
                status=(CalendarItemStatus.ATRASADO if entry.due_date < today
                        else CalendarItemStatus.PENDENTE),
            ))
        for settlement in entry.settlements:
            if first <= settlement.payment_date <= last:
                items.append(CalendarItem(
                    id=f"BX-{settlement.id}",
                    expected_date=settlement.payment_date,
                    value=settlement.amount,
                    client=entry.client,
                    receivable_id=entry.id,
                    status=CalendarItemStatus.RECEBIDO,
                ))

    items.sort(key=lambda item: (item.expected_date, item.id))
    return items
