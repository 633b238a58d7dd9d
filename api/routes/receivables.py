"""Receivables endpoints.

Listing with read-time overdue status, summary, cash-flow calendar and
settlement registration.
"""

from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, Query

from api.dependencies import get_actor, get_audit, get_settings
from core.audit.events import AuditLogger
from core.config import Settings
from core.models.ledger import (
    CalendarItem,
    ReceivableEntry,
    ReceivablesSummary,
    ReceivableStatus,
)
from receivables.service import (
    build_cashflow_calendar,
    get_receivable,
    list_receivables,
    receivables_summary,
    register_settlement,
)


router = APIRouter()

SETTLEMENT_EXAMPLE = {
    "data_pagamento": "2024-06-05",
    "valor_pago": "1000.00",
    "forma_pagamento": "PIX",
}


@router.get("", response_model=List[ReceivableEntry])
def list_entries(
    status: Optional[ReceivableStatus] = Query(None),
    client: Optional[str] = Query(None, description="Substring of the client name"),
    settings: Settings = Depends(get_settings),
) -> List[ReceivableEntry]:
    return list_receivables(status, client, db_path=settings.db_path)


@router.get("/summary", response_model=ReceivablesSummary)
def get_summary(
    start: date = Query(..., description="First day of the received-amount window"),
    end: date = Query(..., description="Last day of the received-amount window"),
    settings: Settings = Depends(get_settings),
) -> ReceivablesSummary:
    return receivables_summary(start, end, db_path=settings.db_path)


@router.get("/calendar", response_model=List[CalendarItem])
def get_calendar(
    start_month: str = Query(..., description="YYYY-MM"),
    end_month: Optional[str] = Query(None, description="YYYY-MM, defaults to start_month"),
    settings: Settings = Depends(get_settings),
) -> List[CalendarItem]:
    return build_cashflow_calendar(start_month, end_month, db_path=settings.db_path)


@router.get("/{receivable_id}", response_model=ReceivableEntry)
def get_entry(receivable_id: str, settings: Settings = Depends(get_settings)) -> ReceivableEntry:
    return get_receivable(receivable_id, db_path=settings.db_path)


@router.post("/{receivable_id}/settlements", response_model=ReceivableEntry)
def settle(
    receivable_id: str,
    request: Dict[str, Any] = Body(
        ...,
        description="data_pagamento, valor_pago (positive, at most the open balance) and "
                    "forma_pagamento",
        examples=[SETTLEMENT_EXAMPLE],
    ),
    actor: str = Depends(get_actor),
    settings: Settings = Depends(get_settings),
    audit: AuditLogger = Depends(get_audit),
) -> ReceivableEntry:
    """Register a payment. The body is validated by the service so a missing
    or malformed amount is reported as InvalidSettlementAmount."""
    return register_settlement(receivable_id, request, actor,
                               db_path=settings.db_path, audit=audit)
