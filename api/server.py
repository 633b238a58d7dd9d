"""FastAPI server for the closing ledger.

Main entry point for the API server.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.routes import (
    health,
    ledger,
    divergences,
    receivables,
    commissions,
    closing,
)
from commissions.vendors import seed_default_vendors
from core import __version__
from core.audit.events import AuditLogger, SQLiteAuditBackend
from core.config import Settings, load_settings
from core.errors import ClosingLedgerError
from core.observability.logging import configure_logging, get_logger
from core.storage.db import init_db


logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    settings: Settings = app.state.settings
    init_db(settings.db_path)
    seeded = seed_default_vendors(settings.db_path)
    logger.info(
        "Closing ledger API starting up",
        extra_fields={"db_path": str(settings.db_path), "vendors_seeded": seeded},
    )

    yield

    logger.info("Closing ledger API shutting down")


async def closing_error_handler(request: Request, exc: ClosingLedgerError) -> JSONResponse:
    """Map the error taxonomy onto HTTP responses."""
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.url.path}: {exc.message}",
                     exc_info=exc.__cause__ or exc)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    """Malformed periods, months or amounts in path/query parameters."""
    return JSONResponse(
        status_code=422,
        content={"error": type(exc).__name__, "message": str(exc), "retryable": False},
    )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or load_settings()
    configure_logging(settings.log_level, json_format=settings.log_json)

    app = FastAPI(
        title="Closing Ledger API",
        description="Monthly closing reconciliation, ledger, receivables and commissions",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    app.state.settings = settings
    app.state.audit = AuditLogger([SQLiteAuditBackend(settings.db_path)])

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(ClosingLedgerError, closing_error_handler)
    app.add_exception_handler(ValueError, value_error_handler)

    # Include routers
    app.include_router(health.router, tags=["Health"])
    app.include_router(ledger.router, prefix="/ledger", tags=["Ledger"])
    app.include_router(divergences.router, prefix="/divergences", tags=["Divergences"])
    app.include_router(receivables.router, prefix="/receivables", tags=["Receivables"])
    app.include_router(commissions.router, prefix="/commissions", tags=["Commissions"])
    app.include_router(closing.router, prefix="/closing", tags=["Closing"])

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("api.server:create_app", factory=True, host="0.0.0.0", port=8000, reload=True)
