"""Core storage - SQLite schema, transactions and the closing report store."""

from core.storage.db import (
    init_db,
    connect,
    transaction,
    reader,
    chunked,
    now_iso,
)
from core.storage.reports import (
    put_report,
    get_report,
    get_report_ref,
    verify_report,
    report_exists,
    list_records,
    get_record,
    update_record,
)

__all__ = [
    "init_db",
    "connect",
    "transaction",
    "reader",
    "chunked",
    "now_iso",
    "put_report",
    "get_report",
    "get_report_ref",
    "verify_report",
    "report_exists",
    "list_records",
    "get_record",
    "update_record",
]
