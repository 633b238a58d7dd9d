"""Ledger endpoints.

Report intake (save + re-ingest), manual events, period lock and reads.
"""

from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query

from api.dependencies import get_actor, get_audit, get_settings
from core.audit.events import AuditEventType, AuditLogger
from core.config import Settings
from core.models.canonical import ClosingReport, to_money
from core.models.ledger import LedgerEvent, NewLedgerEvent
from core.models.refs import DataReference
from ledger.service import get_ledger, lock_ledger_period, record_event, vendor_totals
from reconciliation.service import save_report


router = APIRouter()


@router.get("/{period}", response_model=List[LedgerEvent])
def list_events(
    period: str,
    vendor: Optional[str] = Query(None, description="Only events of this vendor"),
    settings: Settings = Depends(get_settings),
) -> List[LedgerEvent]:
    return get_ledger(period, vendor, db_path=settings.db_path)


@router.get("/{period}/vendors")
def list_vendor_totals(period: str, settings: Settings = Depends(get_settings)) -> Dict[str, str]:
    """Signed total per vendor for the period."""
    return {vendor: str(total)
            for vendor, total in vendor_totals(period, db_path=settings.db_path).items()}


@router.post("/reports", response_model=DataReference, status_code=201)
def upload_report(
    report: ClosingReport,
    actor: str = Depends(get_actor),
    settings: Settings = Depends(get_settings),
    audit: AuditLogger = Depends(get_audit),
) -> DataReference:
    """Store a closing report and re-ingest its period into the ledger."""
    return save_report(
        report,
        actor=actor,
        db_path=settings.db_path,
        chunk_size=settings.ledger_chunk_size,
        due_days=settings.receivable_due_days,
        audit=audit,
    )


@router.post("/events", response_model=LedgerEvent, status_code=201)
def create_event(
    event: NewLedgerEvent,
    actor: str = Depends(get_actor),
    settings: Settings = Depends(get_settings),
    audit: AuditLogger = Depends(get_audit),
) -> LedgerEvent:
    """Append one manual ledger event."""
    created = record_event(event, actor, db_path=settings.db_path,
                           due_days=settings.receivable_due_days)
    audit.log_info(
        AuditEventType.LEDGER_EVENT_RECORDED,
        f"Ledger event {created.id} recorded",
        period=created.period,
        document_number=created.origin_id,
        actor=actor,
        details={"type": created.type.value, "value": str(to_money(created.value)),
                 "vendor": created.vendor},
    )
    return created


@router.post("/{period}/lock")
def lock_period(
    period: str,
    actor: str = Depends(get_actor),
    settings: Settings = Depends(get_settings),
    audit: AuditLogger = Depends(get_audit),
) -> Dict[str, int]:
    locked = lock_ledger_period(period, actor, db_path=settings.db_path)
    audit.log_info(
        AuditEventType.PERIOD_LOCKED,
        f"Ledger period {period} locked",
        period=period,
        actor=actor,
        details={"events_locked": locked},
    )
    return {"events_locked": locked}
