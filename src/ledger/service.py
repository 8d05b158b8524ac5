# === MODULE PURPOSE ===
# Entry point for all ledger use cases.
# Loads one position, applies an operation, writes it back atomically.

# === KEY CONCEPTS ===
# - Read-modify-write per position; the store rejects stale versions
# - On ConcurrentUpdateError the operation is re-applied to a fresh read,
#   so two racing sells are validated one after the other
# - The caller's user_id is trusted as given (identity is external)

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, TypeVar

from src.ledger.aggregation import PositionMetrics, aggregate
from src.ledger.errors import ConcurrentUpdateError, NotFoundError, StateConflictError
from src.ledger.models import Position, PositionStatus
from src.ledger.operations import (
    AddSizeRequest,
    EditRequest,
    OpenPositionRequest,
    SellRequest,
    add_size,
    edit_position,
    open_active_position,
    open_closed_position,
    sell,
)
from src.ledger.repository import PositionStore
from src.ledger.summary import PortfolioSummary, summarize

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3


def position_view(position: Position) -> dict:
    """Position as a dict with its derived metrics attached."""
    metrics = aggregate(position.side, position.entries, position.closes)
    data = position.to_dict()
    data.pop("user_id", None)
    data["metrics"] = metrics.to_dict()
    return data


class PositionService:
    """
    Ledger use cases on top of a PositionStore.

    Usage:
        service = PositionService(MemoryPositionStore())

        position = await service.open_active(
            user_id,
            OpenPositionRequest(coin="BTC", side="long", entry_price=100, amount_invested_usd=1000),
        )
        await service.sell(user_id, position.id, SellRequest(120, SellByPercentage(50)))
        summary = await service.get_summary(user_id)
    """

    def __init__(self, store: PositionStore, max_retries: int = DEFAULT_MAX_RETRIES):
        self._store = store
        self._max_retries = max_retries

    @property
    def store(self) -> PositionStore:
        return self._store

    # ==================== Queries ====================

    async def list_positions(
        self,
        user_id: str,
        status: PositionStatus | str | None = None,
    ) -> list[Position]:
        if isinstance(status, str):
            status = PositionStatus(status)
        return await self._store.list_positions(user_id, status)

    async def get_position(self, user_id: str, position_id: str) -> Position:
        position = await self._store.get(user_id, position_id)
        if position is None:
            raise NotFoundError(position_id)
        return position

    async def get_metrics(self, user_id: str, position_id: str) -> PositionMetrics:
        position = await self.get_position(user_id, position_id)
        return aggregate(position.side, position.entries, position.closes)

    async def get_summary(self, user_id: str) -> PortfolioSummary:
        closed = await self._store.list_positions(user_id, PositionStatus.CLOSED)
        return summarize(closed)

    # ==================== Creation ====================

    async def open_active(self, user_id: str, request: OpenPositionRequest) -> Position:
        position = await self._store.create(open_active_position(user_id, request))
        logger.info(
            f"Opened {position.side.value} {position.coin} position {position.id} "
            f"for user {user_id}"
        )
        return position

    async def record_closed(
        self,
        user_id: str,
        request: OpenPositionRequest,
        exit_price: float,
        exit_date: datetime | None = None,
    ) -> Position:
        position = await self._store.create(
            open_closed_position(user_id, request, exit_price, exit_date)
        )
        logger.info(
            f"Recorded closed {position.side.value} {position.coin} position {position.id}: "
            f"P&L = {position.closes[0].pnl_usd:,.2f}"
        )
        return position

    # ==================== Mutations ====================

    async def add_size(self, user_id: str, position_id: str, request: AddSizeRequest) -> Position:
        return await self._mutate(user_id, position_id, lambda p: add_size(p, request))

    async def sell(self, user_id: str, position_id: str, request: SellRequest) -> Position:
        def apply(position: Position) -> None:
            close = sell(position, request)
            logger.info(
                f"Sold {close.close_coin_amount:.8f} {position.coin} @ {close.close_price} "
                f"on {position.id}: P&L = {close.pnl_usd:,.2f} ({close.pnl_percent:+.2f}%)"
            )
            if position.is_closed:
                logger.info(f"Position {position.id} closed")

        return await self._mutate(user_id, position_id, apply)

    async def edit(self, user_id: str, position_id: str, request: EditRequest) -> Position:
        return await self._mutate(user_id, position_id, lambda p: edit_position(p, request))

    async def delete(self, user_id: str, position_id: str) -> None:
        if not await self._store.delete(user_id, position_id):
            raise NotFoundError(position_id)
        logger.info(f"Deleted position {position_id} for user {user_id}")

    async def _mutate(
        self,
        user_id: str,
        position_id: str,
        operation: Callable[[Position], T],
    ) -> Position:
        """
        Apply operation to a fresh copy of the position and persist it.

        Raises:
            NotFoundError: Position missing for this user.
            StateConflictError: Operation rejected, or retries exhausted.
            ValidationError: Operation rejected its input.
        """
        for attempt in range(self._max_retries + 1):
            position = await self.get_position(user_id, position_id)
            operation(position)
            try:
                return await self._store.update(position)
            except ConcurrentUpdateError:
                logger.warning(
                    f"Concurrent update on position {position_id} "
                    f"(attempt {attempt + 1}/{self._max_retries + 1}), retrying"
                )

        raise StateConflictError(
            f"Position {position_id} is being modified concurrently, please retry"
        )
