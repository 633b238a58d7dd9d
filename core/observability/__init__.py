"""
Observability Module for the Closing Ledger

Provides structured logging with correlation IDs (period, document,
receivable, actor, workflow) shared by services, activities and the API.
"""

from core.observability.logging import (
    configure_logging,
    get_logger,
    CorrelationContext,
    get_correlation_context,
    with_correlation,
)

__all__ = [
    "configure_logging",
    "get_logger",
    "CorrelationContext",
    "get_correlation_context",
    "with_correlation",
]
