# === MODULE PURPOSE ===
# Derived metrics for a position, computed from its entry and close events.
# Pure functions: no I/O, no mutation of the inputs.

# === KEY CONCEPTS ===
# - Weighted-average cost basis over all entries (order independent)
# - Realized P&L is the sum of each close's stored pnl_usd, never recomputed,
#   so a close keeps the cost basis it was realized against
# - Optional metrics are None when their denominator is zero

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Iterable

from src.ledger.models import Close, Entry, PositionSide


@dataclass(frozen=True)
class PositionMetrics:
    """Aggregated view of a position's entries and closes."""

    total_margin_usd: float
    total_notional_usd: float
    total_entry_coin: float
    total_closed_coin: float
    open_coin: float
    realized_pnl_usd: float
    avg_entry_price: float | None = None
    effective_leverage: float | None = None
    open_notional_usd: float | None = None
    open_margin_usd: float | None = None
    debt_usd: float | None = None
    realized_pnl_percent: float | None = None
    liquidation_price: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def aggregate(
    side: PositionSide | str,
    entries: Iterable[Entry],
    closes: Iterable[Close],
) -> PositionMetrics:
    """
    Compute derived metrics for one position.

    Args:
        side: Position side, decides the direction of the liquidation price.
        entries: Entry legs.
        closes: Close legs.

    Returns:
        PositionMetrics. Calling twice with the same inputs yields equal results.
    """
    side = PositionSide(side)

    total_margin = 0.0
    total_notional = 0.0
    total_entry_coin = 0.0
    for entry in entries:
        notional = entry.amount_invested_usd * entry.effective_leverage
        total_margin += entry.amount_invested_usd
        total_notional += notional
        total_entry_coin += notional / entry.entry_price

    total_closed_coin = 0.0
    realized_pnl = 0.0
    for close in closes:
        total_closed_coin += close.close_coin_amount
        realized_pnl += close.pnl_usd

    open_coin = max(total_entry_coin - total_closed_coin, 0.0)

    avg_entry_price = total_notional / total_entry_coin if total_entry_coin > 0 else None
    effective_leverage = total_notional / total_margin if total_margin > 0 else None

    open_notional = None
    if avg_entry_price is not None and open_coin > 0:
        open_notional = open_coin * avg_entry_price

    open_margin = None
    if open_notional is not None and effective_leverage is not None and effective_leverage > 0:
        open_margin = open_notional / effective_leverage

    debt = None
    if open_notional is not None and open_margin is not None:
        debt = open_notional - open_margin

    realized_pnl_percent = realized_pnl / total_margin * 100 if total_margin > 0 else None

    liquidation_price = None
    if effective_leverage is not None and effective_leverage > 1 and avg_entry_price is not None:
        if side == PositionSide.LONG:
            liquidation_price = avg_entry_price * (1 - 1 / effective_leverage)
        else:
            liquidation_price = avg_entry_price * (1 + 1 / effective_leverage)

    return PositionMetrics(
        total_margin_usd=total_margin,
        total_notional_usd=total_notional,
        total_entry_coin=total_entry_coin,
        total_closed_coin=total_closed_coin,
        open_coin=open_coin,
        realized_pnl_usd=realized_pnl,
        avg_entry_price=avg_entry_price,
        effective_leverage=effective_leverage,
        open_notional_usd=open_notional,
        open_margin_usd=open_margin,
        debt_usd=debt,
        realized_pnl_percent=realized_pnl_percent,
        liquidation_price=liquidation_price,
    )


def compute_pnl(
    side: PositionSide | str,
    avg_entry_price: float,
    exit_price: float,
    coin_amount: float,
) -> float:
    """P&L of closing coin_amount at exit_price against the average entry."""
    if PositionSide(side) == PositionSide.LONG:
        return (exit_price - avg_entry_price) * coin_amount
    return (avg_entry_price - exit_price) * coin_amount


def pnl_percent(pnl_usd: float, margin_usd: float) -> float:
    """P&L relative to the margin it was earned on; 0 when margin is 0."""
    return pnl_usd / margin_usd * 100 if margin_usd > 0 else 0.0
