# === MODULE PURPOSE ===
# FastAPI application for the position ledger.
# Provides the REST API and maps ledger errors to HTTP status codes.

# === DEPENDENCIES ===
# - ledger.service: PositionService for all position use cases
# - sync.reconciler: Optional ReconciliationEngine for exchange sync

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from src.ledger import NotFoundError, StateConflictError, ValidationError
from src.web.routes import create_router

if TYPE_CHECKING:
    from src.ledger import PositionService
    from src.sync import ReconciliationEngine

logger = logging.getLogger(__name__)


def create_app(
    service: PositionService,
    sync_engine: ReconciliationEngine | None = None,
    auto_start_sync: bool = False,
) -> FastAPI:
    """
    Create FastAPI application.

    Args:
        service: Position service backing every ledger endpoint.
        sync_engine: Reconciliation engine. None disables the sync endpoints.
        auto_start_sync: Start the sync scheduler at startup instead of on the
            owner's first request.

    Returns:
        Configured FastAPI app.
    """
    app = FastAPI(
        title="Position Ledger",
        description="Trading journal with exchange position sync",
        version="1.0.0",
    )

    # Store references for routes
    app.state.position_service = service
    app.state.sync_engine = sync_engine

    app.include_router(create_router())

    # ==================== Error Mapping ====================

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content={"detail": exc.message})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"detail": exc.message})

    @app.exception_handler(StateConflictError)
    async def state_conflict_handler(request: Request, exc: StateConflictError):
        return JSONResponse(status_code=409, content={"detail": exc.message})

    # ==================== Lifecycle ====================

    @app.on_event("startup")
    async def startup():
        logger.info("Ledger API started")
        if sync_engine and auto_start_sync:
            sync_engine.start()

    @app.on_event("shutdown")
    async def shutdown():
        if sync_engine:
            await sync_engine.stop()
        logger.info("Ledger API stopped")

    return app
