# === MODULE PURPOSE ===
# Data models for the position ledger.
# A Position is the aggregate root holding ordered entry and close events.

# === KEY CONCEPTS ===
# - Entry: one capital deployment (margin x leverage at a price)
# - Close: one realization, storing its P&L at the time it executed
# - Position: side + status + entries + closes, optionally linked to an exchange
# - version: bumped by the store on every write, used for optimistic locking

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

# Floating tolerance for coin amounts
EPSILON = 1e-8

MANUAL_SOURCE = "manual"


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def _parse_dt(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _format_dt(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class PositionSide(str, Enum):
    """Direction of a position."""

    LONG = "long"
    SHORT = "short"


class PositionStatus(str, Enum):
    """Lifecycle status. Transitions only active -> closed."""

    ACTIVE = "active"
    CLOSED = "closed"


class ProductType(str, Enum):
    """Exchange product a synced position was read from."""

    SPOT = "spot"
    PERPETUAL = "perpetual"


@dataclass
class Entry:
    """One capital-deployment leg."""

    entry_price: float
    amount_invested_usd: float
    entry_date: datetime
    leverage: float | None = None  # None means unleveraged (1x)

    @property
    def effective_leverage(self) -> float:
        return self.leverage if self.leverage is not None else 1.0

    @property
    def notional_usd(self) -> float:
        return self.amount_invested_usd * self.effective_leverage

    @property
    def coin_amount(self) -> float:
        return self.notional_usd / self.entry_price

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for persistence."""
        return {
            "entry_price": self.entry_price,
            "amount_invested_usd": self.amount_invested_usd,
            "leverage": self.leverage,
            "entry_date": _format_dt(self.entry_date),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Entry":
        """Create from dictionary."""
        return cls(
            entry_price=float(data["entry_price"]),
            amount_invested_usd=float(data["amount_invested_usd"]),
            leverage=float(data["leverage"]) if data.get("leverage") is not None else None,
            entry_date=_parse_dt(data["entry_date"]),
        )


@dataclass
class Close:
    """One realization leg (partial or full)."""

    close_price: float
    close_coin_amount: float
    close_usd_amount: float
    close_date: datetime
    pnl_usd: float
    pnl_percent: float

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for persistence."""
        return {
            "close_price": self.close_price,
            "close_coin_amount": self.close_coin_amount,
            "close_usd_amount": self.close_usd_amount,
            "close_date": _format_dt(self.close_date),
            "pnl_usd": self.pnl_usd,
            "pnl_percent": self.pnl_percent,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Close":
        """Create from dictionary."""
        return cls(
            close_price=float(data["close_price"]),
            close_coin_amount=float(data["close_coin_amount"]),
            close_usd_amount=float(data["close_usd_amount"]),
            close_date=_parse_dt(data["close_date"]),
            pnl_usd=float(data["pnl_usd"]),
            pnl_percent=float(data["pnl_percent"]),
        )


@dataclass
class Position:
    """
    Aggregate root of the ledger.

    State Machine:
        ACTIVE -> ACTIVE (add size, partial sell, edit)
        ACTIVE -> CLOSED (sell exhausting open coin)
        CLOSED -> CLOSED (edit; entry/exit fields only for single-leg positions)
    """

    user_id: str
    side: PositionSide
    coin: str
    status: PositionStatus = PositionStatus.ACTIVE
    entries: list[Entry] = field(default_factory=list)
    closes: list[Close] = field(default_factory=list)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    comment: str | None = None
    stop_loss_price: float | None = None
    take_profit_price: float | None = None

    # Exchange linkage (set only for synced positions)
    source: str = MANUAL_SOURCE
    exchange: str | None = None
    exchange_account_id: str | None = None
    exchange_position_id: str | None = None
    exchange_product_type: ProductType | None = None
    last_synced_at: datetime | None = None

    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    version: int = 0

    @property
    def is_active(self) -> bool:
        return self.status == PositionStatus.ACTIVE

    @property
    def is_closed(self) -> bool:
        return self.status == PositionStatus.CLOSED

    @property
    def is_single_leg(self) -> bool:
        """Exactly one entry and one close."""
        return len(self.entries) == 1 and len(self.closes) == 1

    @property
    def is_exchange_linked(self) -> bool:
        return self.exchange is not None and self.exchange_position_id is not None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for persistence and API output."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "side": self.side.value,
            "status": self.status.value,
            "coin": self.coin,
            "comment": self.comment,
            "stop_loss_price": self.stop_loss_price,
            "take_profit_price": self.take_profit_price,
            "entries": [e.to_dict() for e in self.entries],
            "closes": [c.to_dict() for c in self.closes],
            "source": self.source,
            "exchange": self.exchange,
            "exchange_account_id": self.exchange_account_id,
            "exchange_position_id": self.exchange_position_id,
            "exchange_product_type": (
                self.exchange_product_type.value if self.exchange_product_type else None
            ),
            "last_synced_at": _format_dt(self.last_synced_at),
            "created_at": _format_dt(self.created_at),
            "updated_at": _format_dt(self.updated_at),
            "version": self.version,
        }
