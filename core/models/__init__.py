"""Core data models - closing report, ledger and projection types.

This package contains the canonical data models shared by reconciliation,
ledger, receivables, commissions and closing. They are independent of how
they are persisted.
"""

from core.models.canonical import (
    # Base
    CanonicalBase,
    DecimalValue,
    DateValue,
    PeriodValue,
    to_money,
    is_valid_period,
    period_of,
    VENDOR_UNDEFINED,
    VENDOR_STORE,
    VENDOR_REVERSED,

    # Report
    FiscalStatus,
    DocumentType,
    DivergenceStatus,
    DivergenceType,
    FiscalRecord,
    NoInvoiceSale,
    CashOutflow,
    ClosingReport,
    Vendor,
)

from core.models.ledger import (
    # Ledger
    LedgerEventType,
    LedgerEventSubtype,
    AdjustmentLeg,
    EventMetadata,
    NewLedgerEvent,
    LedgerEvent,

    # Receivables
    ReceivableStatus,
    Settlement,
    SettlementRequest,
    ReceivableEntry,
    AgingBuckets,
    ReceivablesSummary,
    CalendarItemStatus,
    CalendarItem,

    # Commissions
    CommissionStatus,
    CommissionLine,
    ReportSummary,
    CommissionRecord,

    # Resolution / closing
    ResolutionRecord,
    ClosingStatus,
    ClosingStep,
    ClosingTimelineEvent,
    ChecklistStatus,
    ChecklistItem,
    ClosingPreview,
    ClosingPeriod,
)

from core.models.refs import (
    DataReference,
    AuditEvent,
    AuditSeverity,
)

__all__ = [
    # Base
    "CanonicalBase",
    "DecimalValue",
    "DateValue",
    "PeriodValue",
    "to_money",
    "is_valid_period",
    "period_of",
    "VENDOR_UNDEFINED",
    "VENDOR_STORE",
    "VENDOR_REVERSED",

    # Report
    "FiscalStatus",
    "DocumentType",
    "DivergenceStatus",
    "DivergenceType",
    "FiscalRecord",
    "NoInvoiceSale",
    "CashOutflow",
    "ClosingReport",
    "Vendor",

    # Ledger
    "LedgerEventType",
    "LedgerEventSubtype",
    "AdjustmentLeg",
    "EventMetadata",
    "NewLedgerEvent",
    "LedgerEvent",

    # Receivables
    "ReceivableStatus",
    "Settlement",
    "SettlementRequest",
    "ReceivableEntry",
    "AgingBuckets",
    "ReceivablesSummary",
    "CalendarItemStatus",
    "CalendarItem",

    # Commissions
    "CommissionStatus",
    "CommissionLine",
    "ReportSummary",
    "CommissionRecord",

    # Resolution / closing
    "ResolutionRecord",
    "ClosingStatus",
    "ClosingStep",
    "ClosingTimelineEvent",
    "ChecklistStatus",
    "ChecklistItem",
    "ClosingPreview",
    "ClosingPeriod",

    # References
    "DataReference",
    "AuditEvent",
    "AuditSeverity",
]
