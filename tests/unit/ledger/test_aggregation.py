# === MODULE PURPOSE ===
# Tests for the aggregation function.
# Verifies weighted-average cost basis, open/closed coin and liquidation price.

from datetime import datetime, timezone

import pytest

from src.ledger.aggregation import aggregate, compute_pnl, pnl_percent
from src.ledger.models import Close, Entry, PositionSide

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _entry(price: float, invested: float, leverage: float | None = None) -> Entry:
    return Entry(entry_price=price, amount_invested_usd=invested, leverage=leverage, entry_date=T0)


def _close(coin: float, price: float, pnl: float) -> Close:
    return Close(
        close_price=price,
        close_coin_amount=coin,
        close_usd_amount=coin * price,
        close_date=T0,
        pnl_usd=pnl,
        pnl_percent=0.0,
    )


class TestAggregate:
    """Tests for aggregate()."""

    def test_single_leveraged_entry(self):
        """Test $1000 at 5x on price 100 gives 50 coin and liquidation at 80."""
        metrics = aggregate(PositionSide.LONG, [_entry(100, 1000, 5)], [])

        assert metrics.total_margin_usd == pytest.approx(1000)
        assert metrics.total_notional_usd == pytest.approx(5000)
        assert metrics.total_entry_coin == pytest.approx(50)
        assert metrics.open_coin == pytest.approx(50)
        assert metrics.avg_entry_price == pytest.approx(100)
        assert metrics.effective_leverage == pytest.approx(5)
        assert metrics.open_notional_usd == pytest.approx(5000)
        assert metrics.open_margin_usd == pytest.approx(1000)
        assert metrics.debt_usd == pytest.approx(4000)
        assert metrics.liquidation_price == pytest.approx(80)
        assert metrics.realized_pnl_usd == 0
        assert metrics.realized_pnl_percent == 0

    def test_short_liquidation_above_entry(self):
        """Test short liquidation price is avg_entry * (1 + 1/leverage)."""
        metrics = aggregate(PositionSide.SHORT, [_entry(100, 1000, 4)], [])
        assert metrics.liquidation_price == pytest.approx(125)

    def test_unleveraged_has_no_liquidation(self):
        """Test leverage of 1 (or missing) yields no liquidation price."""
        metrics = aggregate("long", [_entry(200, 1000)], [])
        assert metrics.effective_leverage == pytest.approx(1)
        assert metrics.total_entry_coin == pytest.approx(5)
        assert metrics.liquidation_price is None
        assert metrics.debt_usd == pytest.approx(0)

    def test_weighted_average_entry(self):
        """Test avg entry is notional-weighted across entries."""
        entries = [_entry(100, 1000), _entry(200, 1000)]
        metrics = aggregate(PositionSide.LONG, entries, [])

        # 10 coin @100 + 5 coin @200 = 2000 / 15
        assert metrics.total_entry_coin == pytest.approx(15)
        assert metrics.avg_entry_price == pytest.approx(2000 / 15)

    def test_mixed_leverage(self):
        """Test effective leverage is total notional over total margin."""
        entries = [_entry(100, 1000, 10), _entry(100, 1000)]
        metrics = aggregate(PositionSide.LONG, entries, [])

        assert metrics.total_notional_usd == pytest.approx(11000)
        assert metrics.effective_leverage == pytest.approx(5.5)

    def test_entry_order_does_not_matter(self):
        """Test permuting entries leaves every metric unchanged."""
        entries = [_entry(100, 1000, 5), _entry(80, 500, 2), _entry(120, 300)]
        forward = aggregate(PositionSide.LONG, entries, [])
        backward = aggregate(PositionSide.LONG, list(reversed(entries)), [])

        assert forward.avg_entry_price == pytest.approx(backward.avg_entry_price)
        assert forward.total_entry_coin == pytest.approx(backward.total_entry_coin)
        assert forward.liquidation_price == pytest.approx(backward.liquidation_price)

    def test_deterministic(self):
        """Test calling twice with the same input gives equal results."""
        entries = [_entry(100, 1000, 5)]
        closes = [_close(10, 110, 100)]
        assert aggregate("long", entries, closes) == aggregate("long", entries, closes)

    def test_closes_reduce_open_coin_and_sum_pnl(self):
        """Test closes reduce open coin and realized P&L sums stored values."""
        entries = [_entry(100, 1000, 5)]
        closes = [_close(25, 120, 500), _close(5, 90, -50)]
        metrics = aggregate(PositionSide.LONG, entries, closes)

        assert metrics.total_closed_coin == pytest.approx(30)
        assert metrics.open_coin == pytest.approx(20)
        assert metrics.open_notional_usd == pytest.approx(2000)
        assert metrics.open_margin_usd == pytest.approx(400)
        assert metrics.realized_pnl_usd == pytest.approx(450)
        assert metrics.realized_pnl_percent == pytest.approx(45)

    def test_fully_closed_has_no_open_metrics(self):
        """Test open notional/margin/debt are None once nothing is open."""
        metrics = aggregate("long", [_entry(100, 1000)], [_close(10, 110, 100)])

        assert metrics.open_coin == 0
        assert metrics.open_notional_usd is None
        assert metrics.open_margin_usd is None
        assert metrics.debt_usd is None

    def test_overclosed_open_coin_floors_at_zero(self):
        """Test open coin never goes negative."""
        metrics = aggregate("long", [_entry(100, 1000)], [_close(11, 110, 110)])
        assert metrics.open_coin == 0

    def test_no_entries(self):
        """Test empty input yields zero totals and None ratios."""
        metrics = aggregate("short", [], [])

        assert metrics.total_margin_usd == 0
        assert metrics.total_entry_coin == 0
        assert metrics.avg_entry_price is None
        assert metrics.effective_leverage is None
        assert metrics.realized_pnl_percent is None
        assert metrics.liquidation_price is None


class TestPnlHelpers:
    """Tests for compute_pnl() and pnl_percent()."""

    def test_long_pnl(self):
        assert compute_pnl("long", 100, 120, 25) == pytest.approx(500)

    def test_short_pnl(self):
        assert compute_pnl(PositionSide.SHORT, 100, 90, 25) == pytest.approx(250)

    def test_pnl_percent_zero_margin(self):
        """Test pnl_percent returns 0 rather than dividing by zero."""
        assert pnl_percent(100, 0) == 0
        assert pnl_percent(500, 500) == pytest.approx(100)
