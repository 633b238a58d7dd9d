"""Vendor registry (sales people and their current commission rate).

Vendors are addressed by a one-letter code (as recorded by the point of sale)
or by name. Commission aggregation resolves codes to names so both spellings
land on the same key.
"""

import sqlite3
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Optional

from core.config import DEFAULT_DB_PATH
from core.models.canonical import VENDOR_UNDEFINED, Vendor
from core.observability.logging import get_logger
from core.storage.db import now_iso, reader, transaction


logger = get_logger(__name__)


DEFAULT_VENDORS = [
    ("E", "ENEIAS", Decimal("4.5")),
    ("C", "CARLOS", Decimal("4.5")),
    ("T", "TARCISIO", Decimal("3.0")),
    ("B", "BRAGA", Decimal("3.0")),
]


def _row_to_vendor(row: sqlite3.Row) -> Vendor:
    return Vendor(
        id=row["id"],
        code=row["code"],
        name=row["name"],
        commission_rate=Decimal(row["commission_rate"]),
        active=bool(row["active"]),
        created_at=row["created_at"],
    )


def upsert_vendor(
    code: str,
    name: str,
    commission_rate,
    active: bool = True,
    db_path: Path = DEFAULT_DB_PATH,
) -> Vendor:
    """Create or update a vendor keyed by code."""
    code = code.strip().upper()
    vendor = Vendor(
        id=code,
        code=code,
        name=name.strip().upper(),
        commission_rate=commission_rate,
        active=active,
    )
    if vendor.commission_rate < 0:
        raise ValueError("Commission rate cannot be negative")

    with transaction(db_path) as conn:
        conn.execute(
            """
            INSERT INTO vendors (id, code, name, commission_rate, active, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(code) DO UPDATE SET
                name = excluded.name,
                commission_rate = excluded.commission_rate,
                active = excluded.active
            """,
            (vendor.id, vendor.code, vendor.name, str(vendor.commission_rate),
             int(vendor.active), now_iso()),
        )
        row = conn.execute("SELECT * FROM vendors WHERE code = ?", (code,)).fetchone()
    logger.info(
        f"Vendor {code} saved",
        extra_fields={"name": vendor.name, "rate": str(vendor.commission_rate)},
    )
    return _row_to_vendor(row)


def seed_default_vendors(db_path: Path = DEFAULT_DB_PATH) -> int:
    """Insert the default vendors that are missing. Returns how many were added."""
    added = 0
    with transaction(db_path) as conn:
        for code, name, rate in DEFAULT_VENDORS:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO vendors (id, code, name, commission_rate, active, created_at)
                VALUES (?, ?, ?, ?, 1, ?)
                """,
                (code, code, name, str(rate), now_iso()),
            )
            added += cursor.rowcount
    return added


def list_vendors(active_only: bool = False, db_path: Path = DEFAULT_DB_PATH) -> List[Vendor]:
    query = "SELECT * FROM vendors"
    if active_only:
        query += " WHERE active = 1"
    query += " ORDER BY name"
    with reader(db_path) as conn:
        return [_row_to_vendor(row) for row in conn.execute(query).fetchall()]


@dataclass(frozen=True)
class VendorDirectory:
    """Lookup of vendor names and rates by code or name."""
    names: Dict[str, str]
    rates: Dict[str, Decimal]
    default_rate: Decimal

    @classmethod
    def from_vendors(cls, vendors: List[Vendor], default_rate: Decimal) -> "VendorDirectory":
        names: Dict[str, str] = {}
        rates: Dict[str, Decimal] = {}
        for vendor in vendors:
            names[vendor.code.upper()] = vendor.name.upper()
            names[vendor.name.upper()] = vendor.name.upper()
            rates[vendor.name.upper()] = vendor.commission_rate
        return cls(names=names, rates=rates, default_rate=default_rate)

    def key(self, vendor: Optional[str]) -> str:
        """Aggregation key for a vendor code/name; INDEFINIDO when absent."""
        if not vendor or not vendor.strip():
            return VENDOR_UNDEFINED
        cleaned = vendor.strip().upper()
        return self.names.get(cleaned, cleaned)

    def rate(self, key: str) -> Decimal:
        return self.rates.get(key, self.default_rate)


def load_directory(default_rate: Decimal, db_path: Path = DEFAULT_DB_PATH) -> VendorDirectory:
    return VendorDirectory.from_vendors(list_vendors(db_path=db_path), default_rate)
