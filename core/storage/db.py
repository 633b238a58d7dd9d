"""SQLite persistence for the closing ledger.

This module handles:
- Schema initialization for every table the services use
- Connection factory and the transaction context manager
- Translation of sqlite3 failures into the storage error taxonomy

Every logical operation (a resolution with its ledger legs, a settlement with
its PAGAMENTO event, one ingestion chunk) runs inside one ``transaction()``,
opened with ``BEGIN IMMEDIATE`` so concurrent writers are serialized.
"""

import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterable, Iterator, List, Sequence, TypeVar

from core.config import DEFAULT_DB_PATH
from core.errors import QuotaExceeded, StorageError


T = TypeVar("T")

# sqlite3 messages that mean "try again later / no room" rather than a bug
_CAPACITY_MARKERS = ("database is locked", "database or disk is full", "database is busy")


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS closing_reports (
        period TEXT PRIMARY KEY,
        header_json TEXT NOT NULL,
        content_hash TEXT NOT NULL,
        size_bytes INTEGER NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS fiscal_records (
        period TEXT NOT NULL,
        numero TEXT NOT NULL,
        position INTEGER NOT NULL,
        status_divergencia TEXT NOT NULL,
        record_json TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (period, numero)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ledger_events (
        id TEXT PRIMARY KEY,
        seq INTEGER NOT NULL,
        period TEXT NOT NULL,
        event_date TEXT NOT NULL,
        type TEXT NOT NULL,
        subtype TEXT,
        origin_id TEXT NOT NULL,
        vendor TEXT NOT NULL,
        value TEXT NOT NULL,
        description TEXT,
        client TEXT,
        metadata_json TEXT NOT NULL,
        created_at TEXT NOT NULL,
        created_by TEXT NOT NULL,
        is_locked INTEGER NOT NULL DEFAULT 0
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_ledger_period ON ledger_events(period, seq)",
    "CREATE INDEX IF NOT EXISTS idx_ledger_origin ON ledger_events(origin_id)",
    """
    CREATE TABLE IF NOT EXISTS ledger_periods (
        period TEXT PRIMARY KEY,
        is_locked INTEGER NOT NULL DEFAULT 0,
        locked_at TEXT,
        locked_by TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS receivables (
        id TEXT PRIMARY KEY,
        numero_nf TEXT NOT NULL,
        client TEXT,
        vendor TEXT NOT NULL,
        original_value TEXT NOT NULL,
        paid_value TEXT NOT NULL,
        reduced_value TEXT NOT NULL,
        open_balance TEXT NOT NULL,
        emission_date TEXT NOT NULL,
        due_date TEXT NOT NULL,
        status TEXT NOT NULL,
        settlements_json TEXT NOT NULL,
        note TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        version INTEGER NOT NULL DEFAULT 0
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_receivables_due ON receivables(status, due_date)",
    """
    CREATE TABLE IF NOT EXISTS receivable_applications (
        event_id TEXT PRIMARY KEY,
        receivable_id TEXT NOT NULL,
        kind TEXT NOT NULL,
        amount TEXT NOT NULL,
        applied_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS resolution_records (
        id TEXT PRIMARY KEY,
        period TEXT NOT NULL,
        divergence_id TEXT NOT NULL,
        divergence_type TEXT NOT NULL,
        action TEXT NOT NULL,
        actor TEXT NOT NULL,
        note TEXT,
        ledger_event_ids TEXT NOT NULL,
        timestamp TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_resolution_period ON resolution_records(period)",
    """
    CREATE TABLE IF NOT EXISTS commissions (
        id TEXT PRIMARY KEY,
        vendor TEXT NOT NULL,
        period TEXT NOT NULL,
        gross_sales TEXT NOT NULL,
        returns TEXT NOT NULL,
        base TEXT NOT NULL,
        rate TEXT NOT NULL,
        value TEXT NOT NULL,
        status TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_commissions_period ON commissions(period)",
    """
    CREATE TABLE IF NOT EXISTS vendors (
        id TEXT PRIMARY KEY,
        code TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        commission_rate TEXT NOT NULL,
        active INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS closings (
        period TEXT PRIMARY KEY,
        closing_json TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_events (
        event_id TEXT PRIMARY KEY,
        timestamp TEXT NOT NULL,
        event_type TEXT NOT NULL,
        period TEXT,
        event_json TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_audit_type ON audit_events(event_type, timestamp)",
]


def now_iso() -> str:
    return datetime.utcnow().isoformat()


def _translate(exc: sqlite3.Error) -> StorageError:
    message = str(exc)
    if any(marker in message.lower() for marker in _CAPACITY_MARKERS):
        return QuotaExceeded(f"Storage unavailable: {message}")
    return StorageError(f"Storage failure: {message}")


def init_db(db_path: Path = DEFAULT_DB_PATH) -> None:
    """Create all closing ledger tables (idempotent).

    Args:
        db_path: Path to SQLite database file
    """
    conn = sqlite3.connect(db_path)
    try:
        cursor = conn.cursor()
        for statement in SCHEMA:
            cursor.execute(statement)
        conn.commit()
    except sqlite3.Error as exc:
        raise _translate(exc) from exc
    finally:
        conn.close()


def connect(db_path: Path = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Open a connection in autocommit mode; transactions are explicit."""
    try:
        conn = sqlite3.connect(db_path, isolation_level=None, timeout=5.0)
    except sqlite3.Error as exc:
        raise _translate(exc) from exc
    conn.row_factory = sqlite3.Row
    return conn


@contextmanager
def transaction(db_path: Path = DEFAULT_DB_PATH) -> Iterator[sqlite3.Connection]:
    """Run a block as a single atomic commit.

    Domain errors raised inside the block roll back and propagate unchanged;
    sqlite3 errors roll back and are re-raised as ``StorageError`` (or
    ``QuotaExceeded``) with the original exception chained.
    """
    conn = connect(db_path)
    try:
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as exc:
            raise _translate(exc) from exc
        try:
            yield conn
            conn.execute("COMMIT")
        except sqlite3.Error as exc:
            conn.execute("ROLLBACK")
            raise _translate(exc) from exc
        except BaseException:
            conn.execute("ROLLBACK")
            raise
    finally:
        conn.close()


@contextmanager
def reader(db_path: Path = DEFAULT_DB_PATH) -> Iterator[sqlite3.Connection]:
    """Read-only access with the same error translation as ``transaction``."""
    conn = connect(db_path)
    try:
        yield conn
    except sqlite3.Error as exc:
        raise _translate(exc) from exc
    finally:
        conn.close()


def chunked(items: Sequence[T], size: int) -> Iterable[List[T]]:
    """Split items into consecutive lists of at most ``size`` elements."""
    if size < 1:
        raise ValueError("Chunk size must be positive")
    for start in range(0, len(items), size):
        yield list(items[start:start + size])
