"""Receivables module - accounts-receivable projection of the ledger."""
