"""Commissions module - vendor registry and commission calculation."""
