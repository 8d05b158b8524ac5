# === MODULE PURPOSE ===
# Portfolio-level statistics over a user's closed positions.

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Iterable

from src.ledger.aggregation import aggregate
from src.ledger.models import Position


@dataclass(frozen=True)
class PortfolioSummary:
    """Realized performance across closed positions."""

    total_pnl_usd: float
    total_pnl_percent: float | None
    total_invested_usd: float
    total_trades: int
    win_rate: float | None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def summarize(positions: Iterable[Position]) -> PortfolioSummary:
    """
    Fold realized P&L and margin over closed positions.

    Active positions in the input are ignored. A position counts as a win when
    its realized P&L is strictly positive.
    """
    total_pnl = 0.0
    total_invested = 0.0
    total_trades = 0
    winning_trades = 0

    for position in positions:
        if not position.is_closed:
            continue
        metrics = aggregate(position.side, position.entries, position.closes)
        total_pnl += metrics.realized_pnl_usd
        total_invested += metrics.total_margin_usd
        total_trades += 1
        if metrics.realized_pnl_usd > 0:
            winning_trades += 1

    return PortfolioSummary(
        total_pnl_usd=total_pnl,
        total_pnl_percent=total_pnl / total_invested * 100 if total_invested > 0 else None,
        total_invested_usd=total_invested,
        total_trades=total_trades,
        win_rate=winning_trades / total_trades * 100 if total_trades > 0 else None,
    )
