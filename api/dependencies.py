"""Request-scoped dependencies shared by the routers."""

from fastapi import Header, Request

from core.audit.events import AuditLogger
from core.config import Settings


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_audit(request: Request) -> AuditLogger:
    return request.app.state.audit


def get_actor(x_actor: str = Header(default="SYSTEM")) -> str:
    """Operator identifier for the audit trail (authentication is upstream)."""
    return x_actor.strip() or "SYSTEM"
