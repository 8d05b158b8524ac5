# === MODULE PURPOSE ===
# Mutation operations on a single Position.
# Each operation validates everything first, then applies its change, so a
# rejected request never leaves a half-mutated position behind.

# === KEY CONCEPTS ===
# - Open active / record closed: construct a new Position
# - Add size: append an Entry (active only)
# - Sell: append a Close for a coin/USD/percentage amount, clamped to open coin
# - Edit: comment/SL/TP always; entry/exit fields only on single-leg closed positions
# - EditRequest uses UNSET for "not provided" and None for "clear"

# === DEPENDENCIES ===
# - aggregation: cost basis and open coin for every derived Close

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, fields, replace
from datetime import datetime
from typing import Any, Union

from src.ledger.aggregation import aggregate, compute_pnl, pnl_percent
from src.ledger.errors import StateConflictError, ValidationError
from src.ledger.models import (
    EPSILON,
    Close,
    Entry,
    Position,
    PositionSide,
    PositionStatus,
    utc_now,
)

logger = logging.getLogger(__name__)

MAX_COMMENT_LENGTH = 1000


class _Unset:
    """Marker for an edit field that was not provided."""

    _instance: "_Unset | None" = None

    def __new__(cls) -> "_Unset":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


# ==================== Requests ====================


@dataclass
class OpenPositionRequest:
    """Parameters for opening a position with its first entry."""

    coin: str
    side: PositionSide | str
    entry_price: float
    amount_invested_usd: float
    leverage: float | None = None
    entry_date: datetime | None = None
    stop_loss_price: float | None = None
    take_profit_price: float | None = None
    comment: str | None = None


@dataclass
class AddSizeRequest:
    """Parameters for appending an entry to an active position."""

    entry_price: float
    amount_invested_usd: float
    leverage: float | None = None
    entry_date: datetime | None = None


@dataclass(frozen=True)
class SellByCoin:
    """Sell a quantity of the base asset."""

    amount: float


@dataclass(frozen=True)
class SellByUsd:
    """Sell the quantity worth amount_usd at the close price."""

    amount_usd: float


@dataclass(frozen=True)
class SellByPercentage:
    """Sell a percentage (0, 100] of the current open coin."""

    percentage: float


SellAmount = Union[SellByCoin, SellByUsd, SellByPercentage]


def sell_amount_from_fields(
    amount_coin: float | None = None,
    amount_usd: float | None = None,
    percentage: float | None = None,
) -> SellAmount:
    """
    Build a SellAmount from three optional fields.

    Raises:
        ValidationError: If zero or more than one field is provided.
    """
    provided = [
        name
        for name, value in (
            ("amount_coin", amount_coin),
            ("amount_usd", amount_usd),
            ("percentage", percentage),
        )
        if value is not None
    ]
    if len(provided) != 1:
        raise ValidationError("Provide exactly one of amount_coin, amount_usd, or percentage")

    if amount_coin is not None:
        return SellByCoin(amount_coin)
    if amount_usd is not None:
        return SellByUsd(amount_usd)
    return SellByPercentage(percentage)


@dataclass
class SellRequest:
    """Parameters for closing part or all of an active position."""

    close_price: float
    amount: SellAmount
    close_date: datetime | None = None


@dataclass
class EditRequest:
    """
    Partial update of a position.

    A field left at UNSET is not touched. None clears the field where clearing
    makes sense (comment, stop_loss_price, take_profit_price, leverage).
    """

    comment: Any = UNSET
    stop_loss_price: Any = UNSET
    take_profit_price: Any = UNSET
    coin: Any = UNSET
    side: Any = UNSET
    entry_price: Any = UNSET
    amount_invested_usd: Any = UNSET
    leverage: Any = UNSET
    entry_date: Any = UNSET
    exit_price: Any = UNSET
    exit_date: Any = UNSET

    ENTRY_EXIT_FIELDS = (
        "coin",
        "side",
        "entry_price",
        "amount_invested_usd",
        "leverage",
        "entry_date",
        "exit_price",
        "exit_date",
    )

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "EditRequest":
        """Create from a dict whose keys are exactly the provided fields."""
        known = {f.name for f in fields(cls)}
        unknown = set(payload) - known
        if unknown:
            raise ValidationError(f"Unknown edit fields: {', '.join(sorted(unknown))}")
        return cls(**payload)

    def is_provided(self, name: str) -> bool:
        return getattr(self, name) is not UNSET

    @property
    def touches_entry_exit(self) -> bool:
        return any(self.is_provided(name) for name in self.ENTRY_EXIT_FIELDS)


# ==================== Validation helpers ====================


def _require_positive(name: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{name} must be a number")
    if not math.isfinite(value) or value <= 0:
        raise ValidationError(f"{name} must be greater than zero")
    return float(value)


def _optional_positive(name: str, value: Any) -> float | None:
    if value is None:
        return None
    return _require_positive(name, value)


def _validate_leverage(value: Any) -> float | None:
    if value is None:
        return None
    leverage = _require_positive("leverage", value)
    if leverage < 1:
        raise ValidationError("leverage must be at least 1")
    return leverage


def _normalize_coin(coin: Any) -> str:
    if not isinstance(coin, str) or not coin.strip():
        raise ValidationError("coin must be a non-empty symbol")
    return coin.strip().upper()


def _parse_side(side: Any) -> PositionSide:
    try:
        return PositionSide(side)
    except ValueError:
        raise ValidationError(f"side must be 'long' or 'short', got {side!r}") from None


def _validate_comment(comment: Any) -> str | None:
    if comment is None:
        return None
    if not isinstance(comment, str):
        raise ValidationError("comment must be a string")
    if len(comment) > MAX_COMMENT_LENGTH:
        raise ValidationError(f"comment must be at most {MAX_COMMENT_LENGTH} characters")
    return comment


def _build_entry(
    entry_price: Any,
    amount_invested_usd: Any,
    leverage: Any,
    entry_date: datetime | None,
) -> Entry:
    return Entry(
        entry_price=_require_positive("entry_price", entry_price),
        amount_invested_usd=_require_positive("amount_invested_usd", amount_invested_usd),
        leverage=_validate_leverage(leverage),
        entry_date=entry_date or utc_now(),
    )


def _full_close(
    side: PositionSide,
    entries: list[Entry],
    exit_price: float,
    exit_date: datetime,
) -> Close:
    """Close covering the whole entry size of a single-leg position."""
    metrics = aggregate(side, entries, [])
    if not metrics.total_entry_coin > 0 or metrics.avg_entry_price is None:
        raise ValidationError("Position must have entry size greater than zero")

    coin_amount = metrics.total_entry_coin
    pnl = compute_pnl(side, metrics.avg_entry_price, exit_price, coin_amount)
    return Close(
        close_price=exit_price,
        close_coin_amount=coin_amount,
        close_usd_amount=coin_amount * exit_price,
        close_date=exit_date,
        pnl_usd=pnl,
        pnl_percent=pnl_percent(pnl, metrics.total_margin_usd),
    )


# ==================== Operations ====================


def open_active_position(user_id: str, request: OpenPositionRequest) -> Position:
    """
    Construct an active position with a single entry.

    Raises:
        ValidationError: If any field is out of range.
    """
    entry = _build_entry(
        request.entry_price,
        request.amount_invested_usd,
        request.leverage,
        request.entry_date,
    )
    return Position(
        user_id=user_id,
        side=_parse_side(request.side),
        coin=_normalize_coin(request.coin),
        status=PositionStatus.ACTIVE,
        entries=[entry],
        closes=[],
        comment=_validate_comment(request.comment),
        stop_loss_price=_optional_positive("stop_loss_price", request.stop_loss_price),
        take_profit_price=_optional_positive("take_profit_price", request.take_profit_price),
    )


def open_closed_position(
    user_id: str,
    request: OpenPositionRequest,
    exit_price: float,
    exit_date: datetime | None = None,
) -> Position:
    """
    Construct an already-closed position: one entry plus one full close.

    The entry date defaults to the exit date when not given. created_at stays
    the time of recording, so back-dated trades still list as newest.

    Raises:
        ValidationError: If any field is out of range or the entry size is zero.
    """
    exit_price = _require_positive("exit_price", exit_price)
    exit_date = exit_date or utc_now()
    side = _parse_side(request.side)

    entry = _build_entry(
        request.entry_price,
        request.amount_invested_usd,
        request.leverage,
        request.entry_date or exit_date,
    )
    close = _full_close(side, [entry], exit_price, exit_date)

    return Position(
        user_id=user_id,
        side=side,
        coin=_normalize_coin(request.coin),
        status=PositionStatus.CLOSED,
        entries=[entry],
        closes=[close],
        comment=_validate_comment(request.comment),
        stop_loss_price=_optional_positive("stop_loss_price", request.stop_loss_price),
        take_profit_price=_optional_positive("take_profit_price", request.take_profit_price),
    )


def add_size(position: Position, request: AddSizeRequest) -> Entry:
    """
    Append a new entry to an active position.

    Returns:
        The appended Entry.

    Raises:
        StateConflictError: If the position is closed.
        ValidationError: If any field is out of range.
    """
    if not position.is_active:
        raise StateConflictError("Cannot add size to closed position")

    entry = _build_entry(
        request.entry_price,
        request.amount_invested_usd,
        request.leverage,
        request.entry_date,
    )
    position.entries.append(entry)
    return entry


def resolve_close_coin(amount: SellAmount, close_price: float, open_coin: float) -> float:
    """
    Translate a SellAmount into a coin quantity, before clamping.

    Raises:
        ValidationError: If the implied quantity is not positive.
    """
    if isinstance(amount, SellByCoin):
        coin = amount.amount
    elif isinstance(amount, SellByUsd):
        coin = amount.amount_usd / close_price
    elif isinstance(amount, SellByPercentage):
        if amount.percentage > 100:
            raise ValidationError("percentage must be at most 100")
        coin = amount.percentage / 100 * open_coin
    else:
        raise ValidationError(f"Unsupported sell amount: {amount!r}")

    if not math.isfinite(coin) or coin <= 0:
        raise ValidationError("Sell amount must be greater than zero")
    return coin


def sell(position: Position, request: SellRequest) -> Close:
    """
    Close part or all of an active position.

    The requested quantity is clamped to the open coin, so overselling is
    impossible. P&L is realized against the average entry price at this moment.

    Returns:
        The appended Close.

    Raises:
        StateConflictError: If the position is closed or has nothing open.
        ValidationError: If the amount or price is invalid.
    """
    if not position.is_active:
        raise StateConflictError("Position already closed")

    close_price = _require_positive("close_price", request.close_price)

    before = aggregate(position.side, position.entries, position.closes)
    if before.avg_entry_price is None or before.total_entry_coin <= 0 or before.open_coin <= 0:
        raise StateConflictError("No open position to sell")

    close_coin = resolve_close_coin(request.amount, close_price, before.open_coin)
    if close_coin > before.open_coin:
        logger.debug(
            f"Clamping sell of {close_coin} {position.coin} to open amount {before.open_coin}"
        )
        close_coin = before.open_coin

    margin_for_portion = before.total_margin_usd * (close_coin / before.total_entry_coin)
    pnl = compute_pnl(position.side, before.avg_entry_price, close_price, close_coin)

    close = Close(
        close_price=close_price,
        close_coin_amount=close_coin,
        close_usd_amount=close_coin * close_price,
        close_date=request.close_date or utc_now(),
        pnl_usd=pnl,
        pnl_percent=pnl_percent(pnl, margin_for_portion),
    )
    position.closes.append(close)

    if before.open_coin - close_coin <= EPSILON:
        position.status = PositionStatus.CLOSED

    return close


def edit_position(position: Position, request: EditRequest) -> None:
    """
    Apply a partial edit.

    Comment, stop loss and take profit are editable in any status. Entry/exit
    fields require a closed position with exactly one entry and one close; the
    close is then recomputed from the edited entry and exit.

    Raises:
        StateConflictError: Entry/exit edit on an active or multi-leg position.
        ValidationError: Out-of-range values, unresolvable exit price, or zero
            entry size after the edit.
    """
    comment = (
        _validate_comment(request.comment) if request.is_provided("comment") else position.comment
    )
    stop_loss = (
        _optional_positive("stop_loss_price", request.stop_loss_price)
        if request.is_provided("stop_loss_price")
        else position.stop_loss_price
    )
    take_profit = (
        _optional_positive("take_profit_price", request.take_profit_price)
        if request.is_provided("take_profit_price")
        else position.take_profit_price
    )

    new_coin = position.coin
    new_side = position.side
    new_entry: Entry | None = None
    new_close: Close | None = None

    if request.touches_entry_exit:
        if not position.is_closed:
            raise StateConflictError("Only closed positions can edit entry/exit details")
        if not position.is_single_leg:
            raise StateConflictError(
                "Editing entry/exit details is only supported for single-entry closed positions"
            )

        entry = position.entries[0]
        prior_close = position.closes[0]

        if request.is_provided("coin"):
            new_coin = _normalize_coin(request.coin)
        if request.is_provided("side"):
            new_side = _parse_side(request.side)

        new_entry = replace(entry)
        if request.is_provided("entry_price"):
            new_entry.entry_price = _require_positive("entry_price", request.entry_price)
        if request.is_provided("amount_invested_usd"):
            new_entry.amount_invested_usd = _require_positive(
                "amount_invested_usd", request.amount_invested_usd
            )
        if request.is_provided("leverage"):
            new_entry.leverage = _validate_leverage(request.leverage)
        if request.is_provided("entry_date") and request.entry_date is not None:
            new_entry.entry_date = request.entry_date

        exit_price = request.exit_price if request.is_provided("exit_price") else None
        if exit_price is None:
            exit_price = prior_close.close_price
        if exit_price is None:
            raise ValidationError("Exit price is required for closed positions")
        exit_price = _require_positive("exit_price", exit_price)

        exit_date = request.exit_date if request.is_provided("exit_date") else None
        exit_date = exit_date or prior_close.close_date or utc_now()

        new_close = _full_close(new_side, [new_entry], exit_price, exit_date)

    position.comment = comment
    position.stop_loss_price = stop_loss
    position.take_profit_price = take_profit
    if new_entry is not None and new_close is not None:
        position.coin = new_coin
        position.side = new_side
        position.entries = [new_entry]
        position.closes = [new_close]
