"""Workflow definitions module."""

from workflows.closing_workflow import MonthlyClosingWorkflow, MonthlyClosingInput

__all__ = ["MonthlyClosingWorkflow", "MonthlyClosingInput"]
