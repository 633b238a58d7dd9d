"""Activity definitions module."""

from activities.closing import (
    save_report_activity,
    recalculate_commissions_activity,
    run_checklist_activity,
    close_period_activity,
    SaveReportInput,
    SaveReportOutput,
    PeriodInput,
    CommissionsOutput,
    ChecklistOutput,
    ClosePeriodOutput,
)

__all__ = [
    "save_report_activity",
    "recalculate_commissions_activity",
    "run_checklist_activity",
    "close_period_activity",
    "SaveReportInput",
    "SaveReportOutput",
    "PeriodInput",
    "CommissionsOutput",
    "ChecklistOutput",
    "ClosePeriodOutput",
]
