"""Health check endpoints."""

from datetime import datetime
from typing import Dict

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from api.dependencies import get_settings
from core import __version__
from core.config import Settings
from core.errors import StorageError
from core.storage.db import reader


router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    timestamp: str
    version: str
    services: Dict[str, str]
    features: Dict[str, bool]


@router.get("/health", response_model=HealthResponse)
def health_check(settings: Settings = Depends(get_settings)) -> HealthResponse:
    """Health check endpoint. Reports the storage as down instead of failing."""
    try:
        with reader(settings.db_path) as conn:
            conn.execute("SELECT 1 FROM ledger_events LIMIT 1").fetchall()
        storage = "up"
    except StorageError:
        storage = "down"

    return HealthResponse(
        status="healthy" if storage == "up" else "degraded",
        timestamp=datetime.utcnow().isoformat(),
        version=__version__,
        services={"api": "up", "storage": storage},
        features=settings.flags.to_dict(),
    )


@router.get("/ready")
async def readiness_check() -> Dict[str, str]:
    """Readiness check."""
    return {"status": "ready"}


@router.get("/live")
async def liveness_check() -> Dict[str, str]:
    """Liveness check."""
    return {"status": "alive"}
