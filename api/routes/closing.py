"""Monthly closing endpoints."""

from typing import List

from fastapi import APIRouter, Depends

from api.dependencies import get_actor, get_audit, get_settings
from closing.service import (
    close_period,
    get_or_open_closing,
    list_closed_periods,
    mark_step,
    preview_closing,
    run_checklist,
)
from core.audit.events import AuditLogger
from core.config import Settings
from core.models.ledger import ChecklistItem, ClosingPeriod, ClosingPreview, ClosingStep


router = APIRouter()


@router.get("", response_model=List[ClosingPeriod])
def get_closed(settings: Settings = Depends(get_settings)) -> List[ClosingPeriod]:
    """Closed periods, most recent first."""
    return list_closed_periods(db_path=settings.db_path)


@router.get("/{period}", response_model=ClosingPeriod)
def get_closing(
    period: str,
    actor: str = Depends(get_actor),
    settings: Settings = Depends(get_settings),
) -> ClosingPeriod:
    return get_or_open_closing(period, actor, db_path=settings.db_path)


@router.post("/{period}/steps/{step}", response_model=ClosingPeriod)
def complete_step(
    period: str,
    step: ClosingStep,
    done: bool = True,
    actor: str = Depends(get_actor),
    settings: Settings = Depends(get_settings),
    audit: AuditLogger = Depends(get_audit),
) -> ClosingPeriod:
    return mark_step(period, step, done, actor, db_path=settings.db_path, audit=audit)


@router.get("/{period}/checklist", response_model=List[ChecklistItem])
def get_checklist(period: str, settings: Settings = Depends(get_settings)) -> List[ChecklistItem]:
    return run_checklist(period, db_path=settings.db_path)


@router.get("/{period}/preview", response_model=ClosingPreview)
def get_preview(period: str, settings: Settings = Depends(get_settings)) -> ClosingPreview:
    return preview_closing(period, settings.default_commission_rate, db_path=settings.db_path)


@router.post("/{period}/close", response_model=ClosingPeriod)
def close(
    period: str,
    actor: str = Depends(get_actor),
    settings: Settings = Depends(get_settings),
    audit: AuditLogger = Depends(get_audit),
) -> ClosingPeriod:
    return close_period(period, actor, settings.default_commission_rate,
                        db_path=settings.db_path, audit=audit)
