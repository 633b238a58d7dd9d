"""Error taxonomy for the closing ledger.

Every failure surfaced to callers is one of these types. Validation errors are
raised before any write; storage errors wrap the original exception as
``__cause__`` so the root failure is never lost.
"""

from typing import Any, Dict, Optional


class ClosingLedgerError(Exception):
    """Base exception for all closing ledger errors."""

    status_code: int = 400
    retryable: bool = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "details": self.details,
            "retryable": self.retryable,
        }


class InvalidActionForDivergence(ClosingLedgerError):
    """Chosen action is not allowed for the divergence type (or lacks its payload)."""
    status_code = 422


class InvalidSettlementAmount(ClosingLedgerError):
    """Settlement amount is missing, not positive, or above the open balance."""
    status_code = 422


class ReceivableNotFound(ClosingLedgerError):
    """No receivable exists for the requested id (404)."""
    status_code = 404


class FiscalRecordNotFound(ClosingLedgerError):
    """No fiscal record with that number exists in the period (404)."""
    status_code = 404


class ReportNotFound(ClosingLedgerError):
    """No closing report stored for the period (404)."""
    status_code = 404


class DivergenceAlreadyResolved(ClosingLedgerError):
    """Record is already OK; reopening is not supported."""
    status_code = 409


class PeriodLockedError(ClosingLedgerError):
    """Write attempted against a locked period."""
    status_code = 409

    def __init__(self, period: str):
        super().__init__(
            f"Period {period} is locked; no further ledger writes are allowed",
            {"period": period},
        )
        self.period = period


class PendingDivergencesError(ClosingLedgerError):
    """Closing requested while records are still divergent."""
    status_code = 409

    def __init__(self, period: str, pending: int):
        super().__init__(
            f"There are {pending} pending divergences; period {period} cannot be closed",
            {"period": period, "pending": pending},
        )
        self.pending = pending


class ConcurrentModificationError(ClosingLedgerError):
    """Compare-and-set on a receivable lost a race with another writer."""
    status_code = 409
    retryable = True


class StorageError(ClosingLedgerError):
    """Persistence failure. Always chained to the original exception."""
    status_code = 503
    retryable = True


class QuotaExceeded(StorageError):
    """Storage layer refused the write for capacity reasons (busy/full)."""
    pass
