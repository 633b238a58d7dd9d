"""Commission and vendor registry endpoints."""

from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from api.dependencies import get_actor, get_audit, get_settings
from commissions.calculator import list_commissions, recalculate_commissions_for_period
from commissions.vendors import list_vendors, upsert_vendor
from core.audit.events import AuditEventType, AuditLogger
from core.config import Settings
from core.models.canonical import Vendor
from core.models.ledger import CommissionRecord


router = APIRouter()


class VendorUpdateRequest(BaseModel):
    name: str = Field(..., min_length=1)
    commission_rate: Decimal = Field(..., ge=0)
    active: bool = True


@router.get("", response_model=List[CommissionRecord])
def get_commissions(
    period: Optional[str] = Query(None, description="YYYY-MM; all periods when omitted"),
    settings: Settings = Depends(get_settings),
) -> List[CommissionRecord]:
    return list_commissions(period, db_path=settings.db_path)


@router.post("/{period}/recalculate", response_model=List[CommissionRecord])
def recalculate(
    period: str,
    actor: str = Depends(get_actor),
    settings: Settings = Depends(get_settings),
    audit: AuditLogger = Depends(get_audit),
) -> List[CommissionRecord]:
    """Full replace of the period's commissions from its stored report."""
    return recalculate_commissions_for_period(
        period,
        actor=actor,
        default_rate=settings.default_commission_rate,
        db_path=settings.db_path,
        audit=audit,
    )


@router.get("/vendors", response_model=List[Vendor])
def get_vendors(
    active_only: bool = Query(False),
    settings: Settings = Depends(get_settings),
) -> List[Vendor]:
    return list_vendors(active_only, db_path=settings.db_path)


@router.put("/vendors/{code}", response_model=Vendor)
def put_vendor(
    code: str,
    request: VendorUpdateRequest,
    actor: str = Depends(get_actor),
    settings: Settings = Depends(get_settings),
    audit: AuditLogger = Depends(get_audit),
) -> Vendor:
    if not code.strip():
        raise HTTPException(status_code=422, detail="Vendor code is required")
    vendor = upsert_vendor(code, request.name, request.commission_rate, request.active,
                           db_path=settings.db_path)
    audit.log_info(
        AuditEventType.VENDOR_UPDATED,
        f"Vendor {vendor.code} updated",
        actor=actor,
        details={"name": vendor.name, "commission_rate": str(vendor.commission_rate),
                 "active": vendor.active},
    )
    return vendor
