"""Row mapping and compare-and-set writes for the receivables table.

All functions take an open connection; callers own the transaction.
"""

import json
import sqlite3
from decimal import Decimal
from typing import List, Optional

from core.errors import ConcurrentModificationError
from core.models.ledger import ReceivableEntry, ReceivableStatus, Settlement
from core.storage.db import now_iso


def _row_to_receivable(row: sqlite3.Row) -> ReceivableEntry:
    return ReceivableEntry(
        id=row["id"],
        document_number=row["numero_nf"],
        client=row["client"] or "",
        vendor=row["vendor"],
        original_value=Decimal(row["original_value"]),
        paid_value=Decimal(row["paid_value"]),
        reduced_value=Decimal(row["reduced_value"]),
        open_balance=Decimal(row["open_balance"]),
        emission_date=row["emission_date"],
        due_date=row["due_date"],
        status=ReceivableStatus(row["status"]),
        settlements=[Settlement.model_validate(s) for s in json.loads(row["settlements_json"])],
        note=row["note"],
        version=row["version"],
    )


def _settlements_json(entry: ReceivableEntry) -> str:
    return json.dumps(
        [s.model_dump(mode="json", by_alias=True) for s in entry.settlements],
        ensure_ascii=False,
    )


def load(conn: sqlite3.Connection, receivable_id: str) -> Optional[ReceivableEntry]:
    row = conn.execute("SELECT * FROM receivables WHERE id = ?", (receivable_id,)).fetchone()
    return _row_to_receivable(row) if row else None


def load_all(conn: sqlite3.Connection, status: Optional[str] = None) -> List[ReceivableEntry]:
    query = "SELECT * FROM receivables"
    params: list = []
    if status:
        query += " WHERE status = ?"
        params.append(status)
    query += " ORDER BY due_date ASC, id ASC"
    return [_row_to_receivable(row) for row in conn.execute(query, params).fetchall()]


def insert(conn: sqlite3.Connection, entry: ReceivableEntry) -> None:
    now = now_iso()
    conn.execute(
        """
        INSERT INTO receivables
        (id, numero_nf, client, vendor, original_value, paid_value, reduced_value,
         open_balance, emission_date, due_date, status, settlements_json, note,
         created_at, updated_at, version)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0)
        """,
        (
            entry.id,
            entry.document_number,
            entry.client,
            entry.vendor,
            str(entry.original_value),
            str(entry.paid_value),
            str(entry.reduced_value),
            str(entry.open_balance),
            entry.emission_date.isoformat(),
            entry.due_date.isoformat(),
            entry.status.value,
            _settlements_json(entry),
            entry.note,
            now,
            now,
        ),
    )


def update(conn: sqlite3.Connection, entry: ReceivableEntry) -> ReceivableEntry:
    """Write the entry back if nobody changed it since it was read.

    ``entry.version`` must be the version that was loaded.

    Raises:
        ConcurrentModificationError: If the stored version moved on
    """
    cursor = conn.execute(
        """
        UPDATE receivables
        SET paid_value = ?, reduced_value = ?, open_balance = ?, status = ?,
            settlements_json = ?, note = ?, updated_at = ?, version = version + 1
        WHERE id = ? AND version = ?
        """,
        (
            str(entry.paid_value),
            str(entry.reduced_value),
            str(entry.open_balance),
            entry.status.value,
            _settlements_json(entry),
            entry.note,
            now_iso(),
            entry.id,
            entry.version,
        ),
    )
    if cursor.rowcount != 1:
        raise ConcurrentModificationError(
            f"Receivable {entry.id} was modified concurrently",
            {"receivable_id": entry.id, "expected_version": entry.version},
        )
    return entry.model_copy(update={"version": entry.version + 1})


def delete(conn: sqlite3.Connection, receivable_id: str) -> None:
    conn.execute("DELETE FROM receivables WHERE id = ?", (receivable_id,))


# =============================================================================
# Applied ledger events (for exact reversal on period clear)
# =============================================================================

def record_application(conn: sqlite3.Connection, event_id: str, receivable_id: str,
                       kind: str, amount: Decimal) -> None:
    conn.execute(
        """
        INSERT INTO receivable_applications (event_id, receivable_id, kind, amount, applied_at)
        VALUES (?, ?, ?, ?, ?)
        """,
        (event_id, receivable_id, kind, str(amount), now_iso()),
    )


def applications_for_period(conn: sqlite3.Connection, period: str) -> List[sqlite3.Row]:
    """Applications made by the period's ledger events, newest first."""
    return conn.execute(
        """
        SELECT a.* FROM receivable_applications a
        JOIN ledger_events e ON e.id = a.event_id
        WHERE e.period = ?
        ORDER BY e.seq DESC
        """,
        (period,),
    ).fetchall()


def count_applications(conn: sqlite3.Connection, receivable_id: str) -> int:
    row = conn.execute(
        "SELECT COUNT(*) AS n FROM receivable_applications WHERE receivable_id = ?",
        (receivable_id,),
    ).fetchone()
    return row["n"]


def delete_application(conn: sqlite3.Connection, event_id: str) -> None:
    conn.execute("DELETE FROM receivable_applications WHERE event_id = ?", (event_id,))
