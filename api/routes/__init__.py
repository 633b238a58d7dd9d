"""API Routes Package."""

from api.routes import health, ledger, divergences, receivables, commissions, closing

__all__ = [
    "health",
    "ledger",
    "divergences",
    "receivables",
    "commissions",
    "closing",
]
