"""Reconciliation module - divergence classification and resolution."""
