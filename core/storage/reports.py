"""Closing report store.

A finalized report is stored as a header (everything but the fiscal records)
plus one row per fiscal record, so that resolving a divergence updates a single
record inside the same transaction as its ledger adjustments. The SHA256 of the
canonical report JSON is kept for integrity verification.

All functions take an open connection; callers own the transaction.
"""

import hashlib
import json
import sqlite3
from pathlib import Path
from typing import List, Optional

from core.errors import FiscalRecordNotFound, ReportNotFound, StorageError
from core.models.canonical import ClosingReport, DivergenceStatus, FiscalRecord
from core.models.refs import DataReference
from core.storage.db import now_iso


def _compute_sha256(data: bytes) -> str:
    """Compute SHA256 hash of bytes."""
    return hashlib.sha256(data).hexdigest()


def _canonical_bytes(report: ClosingReport) -> bytes:
    payload = report.model_dump(mode="json", by_alias=True)
    return json.dumps(payload, sort_keys=True, ensure_ascii=False).encode("utf-8")


def _storage_uri(conn: sqlite3.Connection, period: str) -> str:
    row = conn.execute("PRAGMA database_list").fetchone()
    location = row["file"] if row is not None and row["file"] else ":memory:"
    return f"sqlite:///{Path(location).as_posix()}#closing_reports/{period}"


def put_report(conn: sqlite3.Connection, report: ClosingReport) -> DataReference:
    """Store (or replace) the report snapshot for its period.

    Args:
        conn: Connection inside an open transaction
        report: Finalized closing report

    Returns:
        DataReference with the content hash of the stored snapshot
    """
    now = now_iso()
    data = _canonical_bytes(report)
    header = report.model_dump(mode="json", by_alias=True, exclude={"records"})

    existing = conn.execute(
        "SELECT created_at FROM closing_reports WHERE period = ?", (report.period,)
    ).fetchone()
    created_at = existing["created_at"] if existing else now

    conn.execute(
        """
        INSERT OR REPLACE INTO closing_reports
        (period, header_json, content_hash, size_bytes, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (
            report.period,
            json.dumps(header, ensure_ascii=False),
            _compute_sha256(data),
            len(data),
            created_at,
            now,
        ),
    )
    conn.execute("DELETE FROM fiscal_records WHERE period = ?", (report.period,))
    conn.executemany(
        """
        INSERT INTO fiscal_records
        (period, numero, position, status_divergencia, record_json, updated_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        [
            (
                report.period,
                record.number,
                position,
                record.divergence_status.value,
                record.model_dump_json(by_alias=True),
                now,
            )
            for position, record in enumerate(report.records)
        ],
    )

    return DataReference(
        storage_uri=_storage_uri(conn, report.period),
        content_hash=_compute_sha256(data),
        content_type="application/json",
        size_bytes=len(data),
    )


def get_report(conn: sqlite3.Connection, period: str) -> ClosingReport:
    """Load the current state of a period's report (records included).

    Raises:
        ReportNotFound: If no report is stored for the period
    """
    row = conn.execute(
        "SELECT header_json FROM closing_reports WHERE period = ?", (period,)
    ).fetchone()
    if row is None:
        raise ReportNotFound(f"No closing report for period {period}", {"period": period})

    header = json.loads(row["header_json"])
    header["registros"] = [r.model_dump(by_alias=True) for r in list_records(conn, period)]
    return ClosingReport.model_validate(header)


def get_report_ref(conn: sqlite3.Connection, period: str) -> Optional[DataReference]:
    row = conn.execute(
        "SELECT content_hash, size_bytes, updated_at FROM closing_reports WHERE period = ?",
        (period,),
    ).fetchone()
    if row is None:
        return None
    return DataReference(
        storage_uri=_storage_uri(conn, period),
        content_hash=row["content_hash"],
        size_bytes=row["size_bytes"],
        stored_at=row["updated_at"],
    )


def verify_report(conn: sqlite3.Connection, period: str) -> bool:
    """Check that the stored hash matches the report as originally saved.

    Records mutated by resolutions change the content, so this is only true
    until the first resolution of the period.
    """
    ref = get_report_ref(conn, period)
    if ref is None:
        raise ReportNotFound(f"No closing report for period {period}", {"period": period})
    return _compute_sha256(_canonical_bytes(get_report(conn, period))) == ref.content_hash


def report_exists(conn: sqlite3.Connection, period: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM closing_reports WHERE period = ?", (period,)
    ).fetchone()
    return row is not None


def list_records(
    conn: sqlite3.Connection,
    period: str,
    status: Optional[DivergenceStatus] = None,
) -> List[FiscalRecord]:
    """Fiscal records of a period in report order, optionally by divergence status."""
    query = "SELECT record_json FROM fiscal_records WHERE period = ?"
    params: list = [period]
    if status is not None:
        query += " AND status_divergencia = ?"
        params.append(status.value)
    query += " ORDER BY position"
    return [
        FiscalRecord.model_validate_json(row["record_json"])
        for row in conn.execute(query, params).fetchall()
    ]


def get_record(conn: sqlite3.Connection, period: str, number: str) -> FiscalRecord:
    """Load one fiscal record.

    Raises:
        FiscalRecordNotFound: If the period has no record with that number
    """
    row = conn.execute(
        "SELECT record_json FROM fiscal_records WHERE period = ? AND numero = ?",
        (period, number),
    ).fetchone()
    if row is None:
        raise FiscalRecordNotFound(
            f"Fiscal record {number} not found in period {period}",
            {"period": period, "numero": number},
        )
    return FiscalRecord.model_validate_json(row["record_json"])


def update_record(conn: sqlite3.Connection, period: str, record: FiscalRecord) -> None:
    """Persist a mutated fiscal record."""
    cursor = conn.execute(
        """
        UPDATE fiscal_records
        SET status_divergencia = ?, record_json = ?, updated_at = ?
        WHERE period = ? AND numero = ?
        """,
        (
            record.divergence_status.value,
            record.model_dump_json(by_alias=True),
            now_iso(),
            period,
            record.number,
        ),
    )
    if cursor.rowcount != 1:
        raise StorageError(
            f"Fiscal record {record.number} vanished during update",
            {"period": period, "numero": record.number},
        )
