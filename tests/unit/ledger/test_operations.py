# === MODULE PURPOSE ===
# Tests for ledger mutation operations.
# Verifies open/add size/sell/edit semantics, clamping and rejections.

from datetime import datetime, timedelta, timezone

import pytest

from src.ledger.aggregation import aggregate
from src.ledger.errors import StateConflictError, ValidationError
from src.ledger.models import PositionSide, PositionStatus
from src.ledger.operations import (
    UNSET,
    AddSizeRequest,
    EditRequest,
    OpenPositionRequest,
    SellByCoin,
    SellByPercentage,
    SellByUsd,
    SellRequest,
    add_size,
    edit_position,
    open_active_position,
    open_closed_position,
    sell,
    sell_amount_from_fields,
)

USER_ID = "user-1"
T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def _long_position():
    return open_active_position(
        USER_ID,
        OpenPositionRequest(
            coin="btc",
            side="long",
            entry_price=100,
            amount_invested_usd=1000,
            leverage=5,
            entry_date=T0,
        ),
    )


def _closed_position(side: str = "long"):
    return open_closed_position(
        USER_ID,
        OpenPositionRequest(
            coin="eth",
            side=side,
            entry_price=100,
            amount_invested_usd=1000,
            entry_date=T0,
        ),
        exit_price=110,
        exit_date=T0 + timedelta(days=1),
    )


class TestOpenPosition:
    """Tests for open_active_position() and open_closed_position()."""

    def test_open_active(self):
        """Test active position gets one entry, no closes, normalized coin."""
        position = _long_position()

        assert position.status == PositionStatus.ACTIVE
        assert position.side == PositionSide.LONG
        assert position.coin == "BTC"
        assert len(position.entries) == 1
        assert position.closes == []
        assert position.source == "manual"
        assert position.user_id == USER_ID

    @pytest.mark.parametrize(
        "overrides",
        [
            {"entry_price": 0},
            {"entry_price": -5},
            {"amount_invested_usd": 0},
            {"leverage": 0},
            {"leverage": 0.5},
            {"stop_loss_price": -1},
            {"coin": "  "},
            {"side": "sideways"},
            {"comment": "x" * 1001},
        ],
    )
    def test_open_active_rejects_invalid_input(self, overrides):
        """Test out-of-range fields raise ValidationError."""
        fields = {
            "coin": "BTC",
            "side": "long",
            "entry_price": 100,
            "amount_invested_usd": 1000,
        }
        fields.update(overrides)
        with pytest.raises(ValidationError):
            open_active_position(USER_ID, OpenPositionRequest(**fields))

    def test_open_closed(self):
        """Test closed position has one full close priced at the exit."""
        before = datetime.now(timezone.utc)
        position = _closed_position()

        assert position.status == PositionStatus.CLOSED
        assert len(position.closes) == 1
        close = position.closes[0]
        assert close.close_coin_amount == pytest.approx(10)
        assert close.close_usd_amount == pytest.approx(1100)
        assert close.pnl_usd == pytest.approx(100)
        assert close.pnl_percent == pytest.approx(10)
        assert close.close_date == T0 + timedelta(days=1)
        assert position.created_at >= before

    def test_open_closed_short(self):
        """Test short closed above entry realizes a loss."""
        position = _closed_position(side="short")
        assert position.closes[0].pnl_usd == pytest.approx(-100)

    def test_open_closed_entry_date_defaults_to_exit_date(self):
        """Test missing entry date takes the exit date."""
        exit_date = T0 + timedelta(hours=3)
        position = open_closed_position(
            USER_ID,
            OpenPositionRequest(coin="SOL", side="long", entry_price=10, amount_invested_usd=100),
            exit_price=12,
            exit_date=exit_date,
        )
        assert position.entries[0].entry_date == exit_date

    def test_open_closed_rejects_bad_exit_price(self):
        with pytest.raises(ValidationError):
            open_closed_position(
                USER_ID,
                OpenPositionRequest(coin="SOL", side="long", entry_price=10, amount_invested_usd=100),
                exit_price=0,
            )


class TestAddSize:
    """Tests for add_size()."""

    def test_add_size_appends_entry(self):
        """Test new entry moves the average entry price."""
        position = _long_position()
        add_size(position, AddSizeRequest(entry_price=50, amount_invested_usd=1000, leverage=5))

        metrics = aggregate(position.side, position.entries, position.closes)
        assert len(position.entries) == 2
        assert metrics.total_entry_coin == pytest.approx(150)
        assert metrics.avg_entry_price == pytest.approx(10000 / 150)

    def test_add_size_to_closed_rejected(self):
        position = _closed_position()
        with pytest.raises(StateConflictError, match="closed"):
            add_size(position, AddSizeRequest(entry_price=100, amount_invested_usd=100))
        assert len(position.entries) == 1

    def test_add_size_rejects_invalid_input(self):
        position = _long_position()
        with pytest.raises(ValidationError):
            add_size(position, AddSizeRequest(entry_price=100, amount_invested_usd=-1))
        assert len(position.entries) == 1


class TestSell:
    """Tests for sell()."""

    def test_partial_sell_by_percentage(self):
        """Test selling 50% at 120 realizes 500 (100% of the portion margin)."""
        position = _long_position()
        close = sell(position, SellRequest(close_price=120, amount=SellByPercentage(50)))

        assert close.close_coin_amount == pytest.approx(25)
        assert close.close_usd_amount == pytest.approx(3000)
        assert close.pnl_usd == pytest.approx(500)
        assert close.pnl_percent == pytest.approx(100)
        assert position.status == PositionStatus.ACTIVE

        metrics = aggregate(position.side, position.entries, position.closes)
        assert metrics.open_coin == pytest.approx(25)

    def test_sell_rest_closes_position(self):
        """Test selling the remaining 25 at 90 closes with total P&L 250."""
        position = _long_position()
        sell(position, SellRequest(close_price=120, amount=SellByPercentage(50)))
        close = sell(position, SellRequest(close_price=90, amount=SellByCoin(25)))

        assert close.pnl_usd == pytest.approx(-250)
        assert position.status == PositionStatus.CLOSED

        metrics = aggregate(position.side, position.entries, position.closes)
        assert metrics.realized_pnl_usd == pytest.approx(250)
        assert metrics.open_coin == pytest.approx(0)

    def test_sell_by_usd(self):
        """Test USD amount is converted at the close price."""
        position = _long_position()
        close = sell(position, SellRequest(close_price=125, amount=SellByUsd(1250)))
        assert close.close_coin_amount == pytest.approx(10)

    def test_oversell_is_clamped(self):
        """Test selling more than open coin closes exactly the open amount."""
        position = _long_position()
        close = sell(position, SellRequest(close_price=110, amount=SellByCoin(1000)))

        assert close.close_coin_amount == pytest.approx(50)
        assert position.status == PositionStatus.CLOSED

    def test_short_sell_pnl(self):
        """Test short realizes profit when price drops."""
        position = open_active_position(
            USER_ID,
            OpenPositionRequest(coin="BTC", side="short", entry_price=100, amount_invested_usd=1000),
        )
        close = sell(position, SellRequest(close_price=80, amount=SellByPercentage(100)))

        assert close.pnl_usd == pytest.approx(200)
        assert close.pnl_percent == pytest.approx(20)
        assert position.status == PositionStatus.CLOSED

    def test_sell_closed_position_rejected(self):
        position = _closed_position()
        with pytest.raises(StateConflictError, match="already closed"):
            sell(position, SellRequest(close_price=100, amount=SellByPercentage(10)))

    def test_sell_with_no_entries_rejected(self):
        position = _long_position()
        position.entries = []
        with pytest.raises(StateConflictError, match="No open position"):
            sell(position, SellRequest(close_price=100, amount=SellByPercentage(10)))

    @pytest.mark.parametrize(
        "amount",
        [SellByPercentage(0), SellByPercentage(101), SellByCoin(-1), SellByUsd(0)],
    )
    def test_invalid_amount_rejected(self, amount):
        """Test invalid amounts raise ValidationError and leave closes untouched."""
        position = _long_position()
        with pytest.raises(ValidationError):
            sell(position, SellRequest(close_price=100, amount=amount))
        assert position.closes == []

    def test_invalid_close_price_rejected(self):
        position = _long_position()
        with pytest.raises(ValidationError):
            sell(position, SellRequest(close_price=0, amount=SellByPercentage(50)))

    def test_close_keeps_cost_basis_after_add_size(self):
        """Test earlier closes keep their stored P&L after a later entry."""
        position = _long_position()
        first = sell(position, SellRequest(close_price=120, amount=SellByPercentage(50)))
        add_size(position, AddSizeRequest(entry_price=200, amount_invested_usd=1000, leverage=5))

        metrics = aggregate(position.side, position.entries, position.closes)
        assert position.closes[0].pnl_usd == pytest.approx(first.pnl_usd)
        assert metrics.realized_pnl_usd == pytest.approx(500)


class TestSellAmountFromFields:
    """Tests for sell_amount_from_fields()."""

    def test_single_field(self):
        assert sell_amount_from_fields(amount_coin=1.5) == SellByCoin(1.5)
        assert sell_amount_from_fields(amount_usd=100) == SellByUsd(100)
        assert sell_amount_from_fields(percentage=25) == SellByPercentage(25)

    @pytest.mark.parametrize(
        "kwargs",
        [{}, {"amount_coin": 1, "percentage": 50}, {"amount_coin": 1, "amount_usd": 2, "percentage": 3}],
    )
    def test_requires_exactly_one(self, kwargs):
        with pytest.raises(ValidationError, match="exactly one"):
            sell_amount_from_fields(**kwargs)


class TestEditPosition:
    """Tests for edit_position()."""

    def test_absent_fields_untouched(self):
        """Test fields left at UNSET keep their values."""
        position = _long_position()
        position.stop_loss_price = 90
        edit_position(position, EditRequest(comment="breakout"))

        assert position.comment == "breakout"
        assert position.stop_loss_price == 90

    def test_explicit_null_clears(self):
        """Test None clears an optional field."""
        position = _long_position()
        position.stop_loss_price = 90
        position.take_profit_price = 150
        edit_position(position, EditRequest(stop_loss_price=None))

        assert position.stop_loss_price is None
        assert position.take_profit_price == 150

    def test_annotations_editable_on_closed(self):
        position = _closed_position()
        edit_position(position, EditRequest(comment="took profit", take_profit_price=115))
        assert position.comment == "took profit"
        assert position.take_profit_price == 115

    def test_entry_exit_edit_on_active_rejected(self):
        position = _long_position()
        with pytest.raises(StateConflictError, match="Only closed positions"):
            edit_position(position, EditRequest(entry_price=90))
        assert position.entries[0].entry_price == 100

    def test_entry_exit_edit_on_multi_leg_rejected(self):
        """Test closed positions with several closes cannot edit entry/exit."""
        position = _long_position()
        sell(position, SellRequest(close_price=120, amount=SellByPercentage(50)))
        sell(position, SellRequest(close_price=90, amount=SellByPercentage(100)))
        assert position.status == PositionStatus.CLOSED

        with pytest.raises(StateConflictError, match="single-entry"):
            edit_position(position, EditRequest(exit_price=130))

    def test_exit_price_edit_recomputes_close(self):
        """Test editing the exit price rebuilds the single close."""
        position = _closed_position()
        edit_position(position, EditRequest(exit_price=120))

        close = position.closes[0]
        assert close.close_price == 120
        assert close.pnl_usd == pytest.approx(200)
        assert close.close_date == T0 + timedelta(days=1)
        assert position.status == PositionStatus.CLOSED

    def test_side_and_size_edit(self):
        """Test changing side and size recomputes P&L for the new shape."""
        position = _closed_position()
        edit_position(
            position,
            EditRequest(side="short", amount_invested_usd=500, leverage=2, coin="sol"),
        )

        assert position.side == PositionSide.SHORT
        assert position.coin == "SOL"
        close = position.closes[0]
        assert close.close_coin_amount == pytest.approx(10)
        assert close.pnl_usd == pytest.approx(-100)
        assert close.pnl_percent == pytest.approx(-20)

    def test_clear_leverage(self):
        """Test null leverage falls back to 1x."""
        position = _closed_position()
        edit_position(position, EditRequest(leverage=3))
        edit_position(position, EditRequest(leverage=None))

        assert position.entries[0].leverage is None
        assert position.closes[0].close_coin_amount == pytest.approx(10)

    def test_invalid_edit_is_atomic(self):
        """Test a rejected edit leaves every field unchanged."""
        position = _closed_position()
        with pytest.raises(ValidationError):
            edit_position(position, EditRequest(comment="new", entry_price=-1))

        assert position.comment is None
        assert position.entries[0].entry_price == 100

    def test_null_exit_price_falls_back_to_prior(self):
        position = _closed_position()
        edit_position(position, EditRequest(exit_price=None, entry_price=105))
        assert position.closes[0].close_price == 110

    @pytest.mark.parametrize("exit_price", [float("inf"), float("nan"), 0, -5])
    def test_invalid_exit_price_edit_rejected(self, exit_price):
        """Test a non-finite or non-positive exit price leaves the close untouched."""
        position = _closed_position()
        with pytest.raises(ValidationError, match="exit_price"):
            edit_position(position, EditRequest(exit_price=exit_price))

        close = position.closes[0]
        assert close.close_price == 110
        assert close.pnl_usd == pytest.approx(100)

    def test_from_payload_rejects_unknown_fields(self):
        with pytest.raises(ValidationError, match="Unknown"):
            EditRequest.from_payload({"status": "active"})

    def test_from_payload_marks_only_given_fields(self):
        request = EditRequest.from_payload({"comment": None})
        assert request.is_provided("comment")
        assert request.stop_loss_price is UNSET
        assert not request.touches_entry_exit
