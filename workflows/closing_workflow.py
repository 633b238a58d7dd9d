"""Monthly Closing Workflow.

Orchestrates one closing run for a period:
SAVE_REPORT → RECALCULATE_COMMISSIONS → CHECKLIST → CLOSE

The report is optional: when omitted the stored report of the period is used
as is. The run stops before CLOSE (status NEEDS_REVIEW) when the checklist
has blocking items, e.g. divergences still pending.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import List, Optional

from temporalio import workflow
from temporalio.common import RetryPolicy

with workflow.unsafe.imports_passed_through():
    from activities.closing import (
        save_report_activity,
        recalculate_commissions_activity,
        run_checklist_activity,
        close_period_activity,
        SaveReportInput,
        PeriodInput,
    )


TASK_QUEUE_DEFAULT = "closing-default"

# Domain errors that will not heal on retry
NON_RETRYABLE_ERRORS = [
    "InvalidActionForDivergence",
    "InvalidSettlementAmount",
    "ReceivableNotFound",
    "FiscalRecordNotFound",
    "ReportNotFound",
    "DivergenceAlreadyResolved",
    "PeriodLockedError",
    "PendingDivergencesError",
    "ValidationError",
]


class ClosingRunStatus(str, Enum):
    CLOSED = "CLOSED"
    NEEDS_REVIEW = "NEEDS_REVIEW"


@dataclass
class MonthlyClosingInput:
    """Input for MonthlyClosingWorkflow.

    Attributes:
        period: Period to close (YYYY-MM)
        actor: Operator who started the run
        report: Serialized ClosingReport to (re-)ingest first, optional
        close: Set False to stop after the checklist (dry run)
        db_path: Override for the SQLite file
    """
    period: str
    actor: str = "SYSTEM"
    report: Optional[dict] = None
    close: bool = True
    db_path: Optional[str] = None


@dataclass
class MonthlyClosingOutput:
    period: str
    status: str
    commission_total: str = "0.00"
    net: Optional[str] = None
    blocked: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@workflow.defn
class MonthlyClosingWorkflow:
    """Workflow for closing a month.

    1. Save and ingest the report (when given)
    2. Recalculate commissions (full replace)
    3. Run the pre-close checklist
    4. Close and lock the period
    """

    @workflow.run
    async def run(self, input: MonthlyClosingInput) -> MonthlyClosingOutput:
        workflow.logger.info(f"Starting monthly closing for {input.period}")

        activity_options = {
            "start_to_close_timeout": timedelta(minutes=2),
            "retry_policy": RetryPolicy(
                maximum_attempts=5,
                initial_interval=timedelta(seconds=1),
                maximum_interval=timedelta(seconds=30),
                backoff_coefficient=2.0,
                non_retryable_error_types=NON_RETRYABLE_ERRORS,
            ),
        }
        period_input = PeriodInput(period=input.period, actor=input.actor, db_path=input.db_path)

        if input.report is not None:
            saved = await workflow.execute_activity(
                save_report_activity,
                SaveReportInput(report=input.report, actor=input.actor, db_path=input.db_path),
                **activity_options,
            )
            workflow.logger.info(
                f"Report stored: {saved.records} records, {saved.pending_divergences} pending"
            )

        commissions = await workflow.execute_activity(
            recalculate_commissions_activity,
            period_input,
            **activity_options,
        )
        workflow.logger.info(f"Commissions: {commissions.vendors} vendors, total {commissions.total}")

        checklist = await workflow.execute_activity(
            run_checklist_activity,
            period_input,
            **activity_options,
        )

        result = MonthlyClosingOutput(
            period=input.period,
            status=ClosingRunStatus.NEEDS_REVIEW.value,
            commission_total=commissions.total,
            blocked=checklist.blocked,
            warnings=checklist.warnings,
        )

        if checklist.blocked:
            workflow.logger.warning(f"Closing blocked: {checklist.blocked}")
            return result
        if not input.close:
            return result

        closed = await workflow.execute_activity(
            close_period_activity,
            period_input,
            **activity_options,
        )
        result.status = ClosingRunStatus.CLOSED.value
        result.net = closed.net
        workflow.logger.info(f"Period {input.period} closed")
        return result
