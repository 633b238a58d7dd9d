"""Core module - closing reconciliation and ledger building blocks.

This module contains the canonical data models, configuration, error taxonomy,
storage, audit, and observability components shared by the reconciliation,
ledger, receivables, commission, and closing packages.

Persistence details live in /core/storage/. Business rules live in their own
top-level packages and depend only on this module.
"""

__version__ = "1.0.0"
