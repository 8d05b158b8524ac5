# === MODULE PURPOSE ===
# API routes for the position ledger and exchange sync.

# === ENDPOINTS ===
# GET    /api/status                      - Health check (JSON)
# GET    /api/positions                   - List positions, newest first (?status=active|closed)
# GET    /api/positions/summary           - Realized performance over closed positions
# GET    /api/positions/{id}              - Position with derived metrics
# POST   /api/positions/active            - Open an active position
# POST   /api/positions/closed            - Record an already closed trade
# PATCH  /api/positions/{id}              - Edit a position (absent fields untouched)
# POST   /api/positions/{id}/add-size     - Append an entry
# POST   /api/positions/{id}/sell         - Partial or full close
# DELETE /api/positions/{id}              - Delete a position
#
# === SYNC ENDPOINTS ===
# POST /api/integrations/sync         - Run one reconciliation pass (owner only)
# GET  /api/integrations/sync/status  - Scheduler state and last run stats

# === AUTH ===
# Identity comes from the X-User-Id header set by the upstream auth proxy.
# Ledger errors are mapped to HTTP codes by the handlers in app.py.

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Literal

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import BaseModel, Field

from src.ledger import (
    AddSizeRequest,
    EditRequest,
    OpenPositionRequest,
    PositionService,
    PositionStatus,
    SellRequest,
    position_view,
    sell_amount_from_fields,
)

if TYPE_CHECKING:
    from src.sync import ReconciliationEngine

logger = logging.getLogger(__name__)


# ==================== Request Models ====================


class OpenActiveBody(BaseModel):
    """Request body for opening an active position."""

    coin: str = Field(min_length=1)
    side: Literal["long", "short"]
    entry_price: float = Field(gt=0, allow_inf_nan=False)
    amount_invested_usd: float = Field(gt=0, allow_inf_nan=False)
    leverage: float | None = Field(default=None, ge=1, allow_inf_nan=False)
    stop_loss_price: float | None = Field(default=None, gt=0, allow_inf_nan=False)
    take_profit_price: float | None = Field(default=None, gt=0, allow_inf_nan=False)
    entry_date: datetime | None = None
    comment: str | None = Field(default=None, max_length=1000)


class RecordClosedBody(OpenActiveBody):
    """Request body for recording a trade that is already closed."""

    exit_price: float = Field(gt=0, allow_inf_nan=False)
    exit_date: datetime | None = None


class AddSizeBody(BaseModel):
    """Request body for adding an entry to an active position."""

    entry_price: float = Field(gt=0, allow_inf_nan=False)
    amount_invested_usd: float = Field(gt=0, allow_inf_nan=False)
    leverage: float | None = Field(default=None, ge=1, allow_inf_nan=False)
    entry_date: datetime | None = None


class SellBody(BaseModel):
    """Request body for selling. Exactly one amount field must be set."""

    close_price: float = Field(gt=0, allow_inf_nan=False)
    close_date: datetime | None = None
    amount_coin: float | None = Field(default=None, gt=0, allow_inf_nan=False)
    amount_usd: float | None = Field(default=None, gt=0, allow_inf_nan=False)
    percentage: float | None = Field(default=None, gt=0, le=100, allow_inf_nan=False)


class EditBody(BaseModel):
    """
    Request body for editing a position.

    Only fields present in the JSON are applied; an explicit null clears
    comment, stop_loss_price, take_profit_price or leverage.
    """

    comment: str | None = Field(default=None, max_length=1000)
    stop_loss_price: float | None = Field(default=None, gt=0, allow_inf_nan=False)
    take_profit_price: float | None = Field(default=None, gt=0, allow_inf_nan=False)
    coin: str | None = Field(default=None, min_length=1)
    side: Literal["long", "short"] | None = None
    entry_price: float | None = Field(default=None, gt=0, allow_inf_nan=False)
    amount_invested_usd: float | None = Field(default=None, gt=0, allow_inf_nan=False)
    leverage: float | None = Field(default=None, ge=1, allow_inf_nan=False)
    entry_date: datetime | None = None
    exit_price: float | None = Field(default=None, gt=0, allow_inf_nan=False)
    exit_date: datetime | None = None


def _as_utc(value: datetime | None) -> datetime | None:
    """Naive timestamps from clients are taken as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _open_request(body: OpenActiveBody) -> OpenPositionRequest:
    return OpenPositionRequest(
        coin=body.coin,
        side=body.side,
        entry_price=body.entry_price,
        amount_invested_usd=body.amount_invested_usd,
        leverage=body.leverage,
        entry_date=_as_utc(body.entry_date),
        stop_loss_price=body.stop_loss_price,
        take_profit_price=body.take_profit_price,
        comment=body.comment,
    )


def _edit_request(body: EditBody) -> EditRequest:
    payload = body.model_dump(exclude_unset=True)
    for key in ("entry_date", "exit_date"):
        if key in payload:
            payload[key] = _as_utc(payload[key])
    return EditRequest.from_payload(payload)


def create_router() -> APIRouter:
    """Create API router with all ledger and sync endpoints."""
    router = APIRouter()

    def get_service(request: Request) -> PositionService:
        """Get position service from app state."""
        return request.app.state.position_service

    def get_sync_engine(request: Request) -> ReconciliationEngine | None:
        """Get reconciliation engine from app state (None when sync is disabled)."""
        return getattr(request.app.state, "sync_engine", None)

    async def get_user_id(
        request: Request,
        x_user_id: str | None = Header(default=None),
    ) -> str:
        """Authenticated user id; starts the sync scheduler when its owner shows up."""
        if not x_user_id:
            raise HTTPException(status_code=401, detail="Not authenticated")

        engine = get_sync_engine(request)
        if engine and engine.user_id == x_user_id and not engine.is_running():
            logger.info(f"Sync owner {x_user_id} seen, starting {engine.exchange} scheduler")
            engine.start()

        return x_user_id

    # ==================== Status ====================

    @router.get("/api/status")
    async def api_status(request: Request) -> dict:
        """Health check endpoint."""
        engine = get_sync_engine(request)
        return {
            "status": "ok",
            "sync_enabled": engine is not None,
            "sync_running": engine.is_running() if engine else False,
        }

    # ==================== Position Queries ====================

    @router.get("/api/positions")
    async def api_positions(
        request: Request,
        status: Literal["active", "closed"] | None = None,
        user_id: str = Depends(get_user_id),
    ) -> dict:
        """List the user's positions, newest first."""
        service = get_service(request)
        positions = await service.list_positions(
            user_id, PositionStatus(status) if status else None
        )
        return {
            "positions": [position_view(p) for p in positions],
            "count": len(positions),
        }

    @router.get("/api/positions/summary")
    async def api_positions_summary(
        request: Request,
        user_id: str = Depends(get_user_id),
    ) -> dict:
        """Realized performance across closed positions."""
        summary = await get_service(request).get_summary(user_id)
        return summary.to_dict()

    @router.get("/api/positions/{position_id}")
    async def api_position_detail(
        request: Request,
        position_id: str,
        user_id: str = Depends(get_user_id),
    ) -> dict:
        """Get one position with its derived metrics."""
        position = await get_service(request).get_position(user_id, position_id)
        return position_view(position)

    # ==================== Position Mutations ====================

    @router.post("/api/positions/active", status_code=201)
    async def api_open_active(
        request: Request,
        body: OpenActiveBody,
        user_id: str = Depends(get_user_id),
    ) -> dict:
        """Open an active position with its first entry."""
        position = await get_service(request).open_active(user_id, _open_request(body))
        return position_view(position)

    @router.post("/api/positions/closed", status_code=201)
    async def api_record_closed(
        request: Request,
        body: RecordClosedBody,
        user_id: str = Depends(get_user_id),
    ) -> dict:
        """Record a single-entry trade that is already closed."""
        position = await get_service(request).record_closed(
            user_id,
            _open_request(body),
            exit_price=body.exit_price,
            exit_date=_as_utc(body.exit_date),
        )
        return position_view(position)

    @router.patch("/api/positions/{position_id}")
    async def api_edit_position(
        request: Request,
        position_id: str,
        body: EditBody,
        user_id: str = Depends(get_user_id),
    ) -> dict:
        """Edit annotations, or entry/exit details of a single-entry closed position."""
        position = await get_service(request).edit(user_id, position_id, _edit_request(body))
        return position_view(position)

    @router.post("/api/positions/{position_id}/add-size")
    async def api_add_size(
        request: Request,
        position_id: str,
        body: AddSizeBody,
        user_id: str = Depends(get_user_id),
    ) -> dict:
        """Append an entry to an active position."""
        position = await get_service(request).add_size(
            user_id,
            position_id,
            AddSizeRequest(
                entry_price=body.entry_price,
                amount_invested_usd=body.amount_invested_usd,
                leverage=body.leverage,
                entry_date=_as_utc(body.entry_date),
            ),
        )
        return position_view(position)

    @router.post("/api/positions/{position_id}/sell")
    async def api_sell(
        request: Request,
        position_id: str,
        body: SellBody,
        user_id: str = Depends(get_user_id),
    ) -> dict:
        """Close part or all of an active position."""
        amount = sell_amount_from_fields(
            amount_coin=body.amount_coin,
            amount_usd=body.amount_usd,
            percentage=body.percentage,
        )
        position = await get_service(request).sell(
            user_id,
            position_id,
            SellRequest(
                close_price=body.close_price,
                amount=amount,
                close_date=_as_utc(body.close_date),
            ),
        )
        return position_view(position)

    @router.delete("/api/positions/{position_id}")
    async def api_delete_position(
        request: Request,
        position_id: str,
        user_id: str = Depends(get_user_id),
    ) -> dict:
        """Delete a position."""
        await get_service(request).delete(user_id, position_id)
        return {"success": True, "id": position_id}

    # ==================== Sync API ====================

    @router.post("/api/integrations/sync")
    async def api_sync(
        request: Request,
        user_id: str = Depends(get_user_id),
    ) -> dict:
        """Run one reconciliation pass now."""
        engine = get_sync_engine(request)
        if not engine:
            raise HTTPException(status_code=503, detail="Exchange sync is disabled")
        if user_id != engine.user_id:
            raise HTTPException(status_code=403, detail="Forbidden")

        stats = await engine.sync_once()
        return {"ok": not stats.failed, "stats": stats.to_dict()}

    @router.get("/api/integrations/sync/status")
    async def api_sync_status(
        request: Request,
        user_id: str = Depends(get_user_id),
    ) -> dict:
        """Scheduler state and last run stats."""
        engine = get_sync_engine(request)
        if not engine:
            return {"enabled": False}
        if user_id != engine.user_id:
            raise HTTPException(status_code=403, detail="Forbidden")
        return {"enabled": True, **engine.to_dict()}

    return router
