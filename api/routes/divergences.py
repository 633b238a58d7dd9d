"""Divergence endpoints.

Lists pending divergences of a period and applies operator resolutions.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from api.dependencies import get_actor, get_audit, get_settings
from core.audit.events import AuditLogger
from core.config import Settings
from core.models.canonical import FiscalRecord
from core.models.ledger import LedgerEvent, ResolutionRecord
from reconciliation.engine import allowed_actions
from reconciliation.service import apply_resolution, list_divergences, list_resolutions


router = APIRouter()


class PendingDivergence(BaseModel):
    """A divergent record with the actions the operator may choose."""
    record: FiscalRecord
    divergence_type: str
    allowed_actions: List[str]


class ResolveRequest(BaseModel):
    """Operator decision on a divergence."""
    action: str = Field(..., description="Resolution action, e.g. USE_XML")
    comment: str = Field("", description="Free-text observation for the audit trail")
    vendor_code: Optional[str] = Field(None, description="Vendor for MANUAL")
    reference: Optional[str] = Field(None, description="Original document for MANUAL_REF")


class ResolveResponse(BaseModel):
    record: FiscalRecord
    resolution: ResolutionRecord
    ledger_events: List[LedgerEvent]


@router.get("/{period}", response_model=List[PendingDivergence])
def get_pending(period: str, settings: Settings = Depends(get_settings)) -> List[PendingDivergence]:
    return [
        PendingDivergence(
            record=record,
            divergence_type=record.primary_divergence.value,
            allowed_actions=sorted(a.value for a in allowed_actions(record.primary_divergence)),
        )
        for record in list_divergences(period, db_path=settings.db_path)
    ]


@router.post("/{period}/{document_number}/resolve", response_model=ResolveResponse)
def resolve_divergence(
    period: str,
    document_number: str,
    request: ResolveRequest,
    actor: str = Depends(get_actor),
    settings: Settings = Depends(get_settings),
    audit: AuditLogger = Depends(get_audit),
) -> ResolveResponse:
    result = apply_resolution(
        period,
        document_number,
        request.action,
        actor,
        comment=request.comment,
        vendor_code=request.vendor_code,
        reference=request.reference,
        db_path=settings.db_path,
        due_days=settings.receivable_due_days,
        audit=audit,
    )
    return ResolveResponse(
        record=result.record,
        resolution=result.resolution,
        ledger_events=result.ledger_events,
    )


@router.get("/{period}/resolutions", response_model=List[ResolutionRecord])
def get_resolutions(
    period: str,
    document_number: Optional[str] = Query(None),
    settings: Settings = Depends(get_settings),
) -> List[ResolutionRecord]:
    return list_resolutions(period, document_number, db_path=settings.db_path)
