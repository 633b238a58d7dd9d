"""Monthly closing activities.

Temporal activities wrapping report ingestion, commission recalculation,
the pre-close checklist and the period close. Each one commits through the
service layer, so a retried attempt converges to the same stored state.
"""

from dataclasses import dataclass, field, replace
from decimal import Decimal
from pathlib import Path
from typing import List, Optional

from temporalio import activity

from closing.service import close_period, mark_step, run_checklist
from commissions.calculator import recalculate_commissions_for_period
from core.audit.events import AuditLogger, SQLiteAuditBackend
from core.config import Settings, load_settings
from core.models.canonical import ClosingReport, to_money
from core.models.ledger import ChecklistStatus, ClosingStep
from reconciliation.service import list_divergences, save_report


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class SaveReportInput:
    """Input for save_report_activity.

    Attributes:
        report: Serialized ClosingReport (field names or Portuguese aliases)
        actor: Operator identifier for the audit trail
        db_path: Override for the SQLite file (defaults to settings)
    """
    report: dict
    actor: str = "SYSTEM"
    db_path: Optional[str] = None


@dataclass
class SaveReportOutput:
    period: str
    content_hash: str
    records: int
    pending_divergences: int


@dataclass
class PeriodInput:
    """Input for activities that act on a whole period."""
    period: str
    actor: str = "SYSTEM"
    db_path: Optional[str] = None


@dataclass
class CommissionsOutput:
    period: str
    vendors: int
    total: str


@dataclass
class ChecklistOutput:
    period: str
    blocked: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass
class ClosePeriodOutput:
    period: str
    status: str
    gross_sales: str
    net: str
    total_commission: str


# =============================================================================
# Helpers
# =============================================================================

def _settings(db_path: Optional[str]) -> Settings:
    settings = load_settings()
    if db_path:
        settings = replace(settings, db_path=Path(db_path))
    return settings


def _audit(settings: Settings) -> AuditLogger:
    return AuditLogger([SQLiteAuditBackend(settings.db_path)])


# =============================================================================
# Activity Definitions
# =============================================================================

@activity.defn
async def save_report_activity(input: SaveReportInput) -> SaveReportOutput:
    """Store a closing report and (re-)ingest it into the ledger.

    Marks the IMPORT closing step once the report is stored.
    """
    settings = _settings(input.db_path)
    report = ClosingReport.model_validate(input.report)
    activity.logger.info(f"Saving report {report.period} ({len(report.records)} records)")

    ref = save_report(
        report,
        actor=input.actor,
        db_path=settings.db_path,
        chunk_size=settings.ledger_chunk_size,
        due_days=settings.receivable_due_days,
        audit=_audit(settings),
    )
    mark_step(report.period, ClosingStep.IMPORT, actor=input.actor, db_path=settings.db_path)

    pending = len(list_divergences(report.period, db_path=settings.db_path))
    activity.logger.info(f"Report {report.period} stored: {ref.content_hash[:12]}")
    return SaveReportOutput(
        period=report.period,
        content_hash=ref.content_hash,
        records=len(report.records),
        pending_divergences=pending,
    )


@activity.defn
async def recalculate_commissions_activity(input: PeriodInput) -> CommissionsOutput:
    """Full replace of the period's commissions; marks the COMMISSIONS step."""
    settings = _settings(input.db_path)
    activity.logger.info(f"Recalculating commissions for {input.period}")

    records = recalculate_commissions_for_period(
        input.period,
        actor=input.actor,
        default_rate=settings.default_commission_rate,
        db_path=settings.db_path,
        audit=_audit(settings),
    )
    mark_step(input.period, ClosingStep.COMMISSIONS, actor=input.actor, db_path=settings.db_path)

    total = to_money(sum((r.value for r in records), Decimal("0")))
    return CommissionsOutput(period=input.period, vendors=len(records), total=str(total))


@activity.defn
async def run_checklist_activity(input: PeriodInput) -> ChecklistOutput:
    settings = _settings(input.db_path)
    items = run_checklist(input.period, db_path=settings.db_path)
    output = ChecklistOutput(period=input.period)
    for item in items:
        if item.status == ChecklistStatus.BLOCKED:
            output.blocked.append(f"{item.key}: {item.message}")
        elif item.status == ChecklistStatus.WARNING:
            output.warnings.append(f"{item.key}: {item.message}")
    activity.logger.info(
        f"Checklist for {input.period}: {len(output.blocked)} blocked, {len(output.warnings)} warnings"
    )
    return output


@activity.defn
async def close_period_activity(input: PeriodInput) -> ClosePeriodOutput:
    """Close and lock the period. Idempotent once closed."""
    settings = _settings(input.db_path)
    activity.logger.info(f"Closing period {input.period}")

    closing = close_period(
        input.period,
        input.actor,
        default_rate=settings.default_commission_rate,
        db_path=settings.db_path,
        audit=_audit(settings),
    )
    preview = closing.preview
    return ClosePeriodOutput(
        period=closing.period,
        status=closing.status.value,
        gross_sales=str(preview.gross_sales) if preview else "0.00",
        net=str(preview.net) if preview else "0.00",
        total_commission=str(preview.total_commission) if preview else "0.00",
    )
