"""Commission calculation from a closing report.

The calculation is a pure function of the report and the vendor directory;
persistence is a full replace of the period's commission rows.

Exposes:
- calculate_commissions(report, directory)          -> List[CommissionLine]
- summarize_report(report)                          -> ReportSummary
- recalculate_commissions_for_period(period, ...)   -> List[CommissionRecord]
- list_commissions(period=None, ...)                -> List[CommissionRecord]
"""

import sqlite3
from collections import OrderedDict
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Optional

from commissions.vendors import VendorDirectory, load_directory
from core.audit.events import AuditEventType, AuditLogger, null_audit
from core.config import DEFAULT_DB_PATH
from core.models.canonical import (
    VENDOR_UNDEFINED,
    ClosingReport,
    DocumentType,
    FiscalStatus,
    to_money,
)
from core.models.ledger import CommissionLine, CommissionRecord, CommissionStatus, ReportSummary
from core.observability.logging import get_logger, with_correlation
from core.storage.db import reader, transaction
from core.storage.reports import get_report
from reconciliation.normalizer import booked_value


logger = get_logger(__name__)

DEFAULT_RATE = Decimal("3.0")
INVOICED_METHOD = "FATURADO"
DEFAULT_METHOD = "DINHEIRO"


# =============================================================================
# Pure calculation
# =============================================================================

def calculate_commissions(
    report: ClosingReport,
    directory: Optional[VendorDirectory] = None,
) -> List[CommissionLine]:
    """Per-vendor gross sales, returns, base and commission for a report.

    Canceled documents are skipped. Negative values and DEVOLUCAO documents
    count as returns (absolute value); everything else is gross sales.
    Sales without an invoice are included.
    """
    directory = directory or VendorDirectory.from_vendors([], DEFAULT_RATE)
    acc: Dict[str, Dict[str, Decimal]] = OrderedDict()

    def bucket(vendor: Optional[str]) -> Dict[str, Decimal]:
        key = directory.key(vendor)
        if key not in acc:
            acc[key] = {"gross": Decimal("0"), "returns": Decimal("0")}
        return acc[key]

    for record in report.records:
        if record.fiscal_status == FiscalStatus.CANCELADA:
            continue
        totals = bucket(record.final_vendor)
        if record.is_return:
            totals["returns"] += abs(record.value)
        else:
            totals["gross"] += record.value

    for sale in report.no_invoice_sales:
        totals = bucket(sale.vendor)
        if sale.value < 0:
            totals["returns"] += abs(sale.value)
        else:
            totals["gross"] += sale.value

    lines = []
    for vendor, totals in acc.items():
        rate = directory.rate(vendor)
        base = totals["gross"] - totals["returns"]
        lines.append(CommissionLine(
            vendor=vendor,
            gross_sales=to_money(totals["gross"]),
            returns=to_money(totals["returns"]),
            base=to_money(base),
            rate=rate,
            commission=to_money(base * rate / Decimal(100)),
        ))
    return lines


def summarize_report(report: ClosingReport) -> ReportSummary:
    """Closing report totals: sales with/without invoice, outflows, returns,
    expected cash balance, and breakdowns per payment method and vendor."""
    with_invoice = Decimal("0")
    without_invoice = Decimal("0")
    outflows = Decimal("0")
    returns = Decimal("0")
    by_method: Dict[str, Decimal] = {}
    by_vendor: Dict[str, Decimal] = {}

    for record in report.records:
        if record.is_return:
            returns += abs(record.value)
        value = booked_value(record)
        with_invoice += value
        vendor = record.final_vendor or VENDOR_UNDEFINED
        by_vendor[vendor] = by_vendor.get(vendor, Decimal("0")) + value
        if record.document_type == DocumentType.FATURADA:
            method = INVOICED_METHOD
        else:
            method = record.payment_method or DEFAULT_METHOD
        by_method[method] = by_method.get(method, Decimal("0")) + value

    for sale in report.no_invoice_sales:
        if sale.value < 0:
            returns += abs(sale.value)
        without_invoice += sale.value
        vendor = sale.vendor or VENDOR_UNDEFINED
        by_vendor[vendor] = by_vendor.get(vendor, Decimal("0")) + sale.value
        method = sale.payment_method or DEFAULT_METHOD
        by_method[method] = by_method.get(method, Decimal("0")) + sale.value

    for outflow in report.outflows:
        outflows += abs(outflow.value)

    total = with_invoice + without_invoice
    return ReportSummary(
        total_sales=to_money(total),
        sales_with_invoice=to_money(with_invoice),
        sales_without_invoice=to_money(without_invoice),
        total_outflows=to_money(outflows),
        total_returns=to_money(returns),
        expected_balance=to_money(total - outflows),
        totals_by_method={k: to_money(v) for k, v in by_method.items()},
        totals_by_vendor={k: to_money(v) for k, v in by_vendor.items()},
    )


# =============================================================================
# Persistence
# =============================================================================

def _row_to_commission(row: sqlite3.Row) -> CommissionRecord:
    return CommissionRecord(
        id=row["id"],
        vendor=row["vendor"],
        period=row["period"],
        gross_sales=Decimal(row["gross_sales"]),
        returns=Decimal(row["returns"]),
        base=Decimal(row["base"]),
        rate=Decimal(row["rate"]),
        value=Decimal(row["value"]),
        status=row["status"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def recalculate_commissions_for_period(
    period: str,
    actor: str = "SYSTEM",
    default_rate: Decimal = DEFAULT_RATE,
    db_path: Path = DEFAULT_DB_PATH,
    audit: Optional[AuditLogger] = None,
) -> List[CommissionRecord]:
    """Recompute a period's commissions from its stored report.

    Full replace: every existing row of the period is deleted and the fresh
    rows (one per vendor, id ``<vendor>_<period>``) inserted in the same
    commit. The vendor's current rate is used and stored on the row.

    Raises:
        ReportNotFound: If the period has no stored report
    """
    audit = audit or null_audit()
    directory = load_directory(default_rate, db_path)

    with with_correlation(period=period, actor=actor):
        with transaction(db_path) as conn:
            report = get_report(conn, period)
            lines = calculate_commissions(report, directory)
            now = datetime.utcnow()

            removed = conn.execute(
                "DELETE FROM commissions WHERE period = ?", (period,)
            ).rowcount

            records = []
            for line in lines:
                record = CommissionRecord(
                    id=f"{line.vendor}_{period}",
                    vendor=line.vendor,
                    period=period,
                    gross_sales=line.gross_sales,
                    returns=line.returns,
                    base=line.base,
                    rate=line.rate,
                    value=line.commission,
                    status=CommissionStatus.PREVISTA,
                    created_at=now,
                    updated_at=now,
                )
                conn.execute(
                    """
                    INSERT INTO commissions
                    (id, vendor, period, gross_sales, returns, base, rate, value,
                     status, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.id, record.vendor, record.period,
                        str(record.gross_sales), str(record.returns), str(record.base),
                        str(record.rate), str(record.value), record.status.value,
                        now.isoformat(), now.isoformat(),
                    ),
                )
                records.append(record)

        total = to_money(sum((r.value for r in records), Decimal("0")))
        logger.info(
            f"Commissions recalculated for {period}",
            extra_fields={"vendors": len(records), "replaced": removed, "total": str(total)},
        )

    audit.log_info(
        AuditEventType.COMMISSIONS_RECALCULATED,
        f"Commissions recalculated for {period}: {len(records)} vendors, total {total}",
        period=period,
        actor=actor,
        details={"vendors": [r.vendor for r in records], "total": str(total),
                 "replaced": removed},
    )
    return sorted(records, key=lambda r: r.value, reverse=True)


def list_commissions(
    period: Optional[str] = None,
    db_path: Path = DEFAULT_DB_PATH,
) -> List[CommissionRecord]:
    """Stored commissions, highest value first."""
    query = "SELECT * FROM commissions"
    params: list = []
    if period:
        query += " WHERE period = ?"
        params.append(period)
    with reader(db_path) as conn:
        records = [_row_to_commission(row) for row in conn.execute(query, params).fetchall()]
    return sorted(records, key=lambda r: r.value, reverse=True)
