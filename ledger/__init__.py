"""Ledger module - append-only monetary event log."""
