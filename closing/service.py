"""Monthly closing lifecycle.

A closing walks a period through import, divergence resolution, ledger
review, commissions and receivables checks, then locks it. Closing is
one-directional: once FECHADO the ledger period is locked and there is no
reopen path.

Exposes:
- get_or_open_closing(period, ...)    -> ClosingPeriod
- mark_step(period, step, ...)        -> ClosingPeriod
- run_checklist(period, ...)          -> List[ChecklistItem]
- preview_closing(period, ...)        -> ClosingPreview
- close_period(period, actor, ...)    -> ClosingPeriod
- list_closed_periods(...)            -> List[ClosingPeriod]
"""

import sqlite3
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import List, Optional

from commissions.calculator import DEFAULT_RATE, calculate_commissions, summarize_report
from commissions.vendors import VendorDirectory, load_directory
from core.audit.events import AuditEventType, AuditLogger, null_audit
from core.config import DEFAULT_DB_PATH
from core.errors import PendingDivergencesError
from core.models.canonical import ClosingReport, DivergenceStatus, to_money
from core.models.ledger import (
    ChecklistItem,
    ChecklistStatus,
    ClosingPeriod,
    ClosingPreview,
    ClosingStatus,
    ClosingStep,
    ClosingTimelineEvent,
)
from core.observability.logging import get_logger, with_correlation
from core.storage.db import now_iso, reader, transaction
from core.storage.reports import get_report, list_records, report_exists
from ledger.service import lock_ledger_period


logger = get_logger(__name__)


STEP_LABELS = {
    ClosingStep.IMPORT: "Importação do Movimento e Notas Fiscais",
    ClosingStep.DIVERGENCES: "Divergências Resolvidas",
    ClosingStep.LEDGER: "Conferência do Ledger",
    ClosingStep.COMMISSIONS: "Cálculo de Comissões Realizado",
    ClosingStep.RECEIVABLES: "Conferência de Recebíveis",
    ClosingStep.REVIEW: "Validação Gerencial",
}

STEP_EVENTS = {
    ClosingStep.IMPORT: "IMPORT",
    ClosingStep.COMMISSIONS: "COMMISSION",
    ClosingStep.REVIEW: "VALIDATION",
}

NO_SALES_ALERT = "Relatório sem vendas registradas."


# =============================================================================
# Persistence helpers
# =============================================================================

def _load(conn: sqlite3.Connection, period: str) -> Optional[ClosingPeriod]:
    row = conn.execute(
        "SELECT closing_json FROM closings WHERE period = ?", (period,)
    ).fetchone()
    if row is None:
        return None
    return ClosingPeriod.model_validate_json(row["closing_json"])


def _save(conn: sqlite3.Connection, closing: ClosingPeriod) -> None:
    conn.execute(
        """
        INSERT INTO closings (period, closing_json, updated_at) VALUES (?, ?, ?)
        ON CONFLICT(period) DO UPDATE SET
            closing_json = excluded.closing_json, updated_at = excluded.updated_at
        """,
        (closing.period, closing.model_dump_json(), now_iso()),
    )


def _open(conn: sqlite3.Connection, period: str, actor: str) -> ClosingPeriod:
    closing = _load(conn, period)
    if closing is not None:
        return closing
    now = datetime.utcnow()
    closing = ClosingPeriod(
        period=period,
        created_at=now,
        timeline=[ClosingTimelineEvent(
            timestamp=now,
            event="IMPORT",
            description=f"Abertura do período {period}",
            actor=actor,
        )],
    )
    _save(conn, closing)
    logger.info(f"Closing opened for {period}", extra_fields={"period": period})
    return closing


# =============================================================================
# Lifecycle
# =============================================================================

def get_or_open_closing(
    period: str,
    actor: str = "SYSTEM",
    db_path: Path = DEFAULT_DB_PATH,
) -> ClosingPeriod:
    """Return the period's closing, creating it EM_ANDAMENTO on first access."""
    with transaction(db_path) as conn:
        return _open(conn, period, actor)


def mark_step(
    period: str,
    step: ClosingStep,
    done: bool = True,
    actor: str = "SYSTEM",
    db_path: Path = DEFAULT_DB_PATH,
    audit: Optional[AuditLogger] = None,
) -> ClosingPeriod:
    """Set a step flag. First completion appends a timeline entry; a closed
    period is returned unchanged."""
    audit = audit or null_audit()
    step = ClosingStep(step)

    with transaction(db_path) as conn:
        closing = _open(conn, period, actor)
        if closing.is_closed or closing.steps.get(step) == done:
            return closing

        closing.steps[step] = done
        if done:
            closing.timeline.append(ClosingTimelineEvent(
                timestamp=datetime.utcnow(),
                event=STEP_EVENTS.get(step, "CONCILIATION"),
                description=f"Etapa concluída: {STEP_LABELS[step]}",
                actor=actor,
            ))
        _save(conn, closing)

    if done:
        audit.log_info(
            AuditEventType.CLOSING_STEP_COMPLETED,
            f"Closing step {step.value} completed for {period}",
            period=period,
            actor=actor,
            details={"step": step.value},
        )
    return closing


def run_checklist(period: str, db_path: Path = DEFAULT_DB_PATH) -> List[ChecklistItem]:
    """Pre-close checks. Any BLOCKED item prevents closing."""
    with reader(db_path) as conn:
        closing = _load(conn, period)
        imported = report_exists(conn, period)
        pending = len(list_records(conn, period, DivergenceStatus.DIVERGENCIA)) if imported else 0

    commissions_done = bool(closing and closing.steps.get(ClosingStep.COMMISSIONS))

    return [
        ChecklistItem(
            key="IMPORT",
            label="Importação de Arquivos",
            status=ChecklistStatus.OK if imported else ChecklistStatus.BLOCKED,
            message=("Arquivos importados com sucesso." if imported
                     else "É necessário importar Movimento e XMLs."),
        ),
        ChecklistItem(
            key="DIVERGENCE",
            label="Resolução de Divergências",
            status=ChecklistStatus.BLOCKED if pending else ChecklistStatus.OK,
            message=(f"Existem {pending} divergências pendentes no relatório." if pending
                     else "Todas as divergências resolvidas."),
        ),
        ChecklistItem(
            key="COMMISSION",
            label="Cálculo de Comissões",
            status=ChecklistStatus.OK if commissions_done else ChecklistStatus.WARNING,
            message=("Comissões calculadas." if commissions_done
                     else "Recomendado recalcular comissões."),
        ),
    ]


def build_preview(report: ClosingReport, directory: VendorDirectory) -> ClosingPreview:
    summary = summarize_report(report)
    lines = calculate_commissions(report, directory)
    return ClosingPreview(
        period=report.period,
        generated_at=datetime.utcnow(),
        days_imported=len({r.emission_date for r in report.records}),
        gross_sales=summary.total_sales,
        returns=summary.total_returns,
        expenses=summary.total_outflows,
        net=summary.expected_balance,
        total_commission=to_money(sum((line.commission for line in lines), Decimal("0"))),
        vendors=lines,
        blocking_alerts=[NO_SALES_ALERT] if summary.total_sales == 0 else [],
    )


def preview_closing(
    period: str,
    default_rate: Decimal = DEFAULT_RATE,
    db_path: Path = DEFAULT_DB_PATH,
) -> ClosingPreview:
    """Simulate the closing totals from the stored report.

    Raises:
        ReportNotFound: If the period has no stored report
    """
    directory = load_directory(default_rate, db_path)
    with reader(db_path) as conn:
        report = get_report(conn, period)
    return build_preview(report, directory)


def close_period(
    period: str,
    actor: str,
    default_rate: Decimal = DEFAULT_RATE,
    db_path: Path = DEFAULT_DB_PATH,
    audit: Optional[AuditLogger] = None,
) -> ClosingPeriod:
    """Close and lock a period.

    Rejects while divergences are pending. Locks the ledger period, stores
    the preview as the consolidated summary and appends a CLOSE event, all in
    one commit. Closing an already closed period returns it unchanged.

    Raises:
        ReportNotFound: If the period has no stored report
        PendingDivergencesError: If records are still DIVERGENCIA
    """
    audit = audit or null_audit()
    directory = load_directory(default_rate, db_path)

    with with_correlation(period=period, actor=actor):
        with transaction(db_path) as conn:
            closing = _open(conn, period, actor)
            if closing.is_closed:
                logger.info(f"Period {period} already closed")
                return closing

            report = get_report(conn, period)
            pending = len(report.pending_divergences())
            if pending:
                logger.warning(
                    f"Closing of {period} refused",
                    extra_fields={"pending_divergences": pending},
                )
                raise PendingDivergencesError(period, pending)

            preview = build_preview(report, directory)
            locked = lock_ledger_period(period, actor, db_path, conn)

            now = datetime.utcnow()
            closing.status = ClosingStatus.FECHADO
            closing.preview = preview
            closing.closed_at = now
            closing.closed_by = actor
            closing.timeline.append(ClosingTimelineEvent(
                timestamp=now,
                event="CLOSE",
                description="Fechamento Mensal Concluído e Bloqueado",
                actor=actor,
            ))
            _save(conn, closing)

        logger.info(
            f"Period {period} closed",
            extra_fields={"events_locked": locked, "net": str(preview.net),
                          "total_commission": str(preview.total_commission)},
        )

    audit.log_info(
        AuditEventType.PERIOD_LOCKED,
        f"Ledger period {period} locked",
        period=period,
        actor=actor,
        details={"events_locked": locked},
    )
    audit.log_info(
        AuditEventType.PERIOD_CLOSED,
        f"Period {period} closed",
        period=period,
        actor=actor,
        details={"gross_sales": str(preview.gross_sales), "net": str(preview.net),
                 "total_commission": str(preview.total_commission)},
    )
    return closing


def list_closed_periods(db_path: Path = DEFAULT_DB_PATH) -> List[ClosingPeriod]:
    """Closed periods, most recent first."""
    with reader(db_path) as conn:
        rows = conn.execute("SELECT closing_json FROM closings ORDER BY period DESC").fetchall()
    closings = [ClosingPeriod.model_validate_json(row["closing_json"]) for row in rows]
    return [c for c in closings if c.is_closed]
