"""
Tests for persisted records and exchange payload parsing.
"""
from decimal import Decimal

import pytest

from gridworker.core.errors import InvariantViolation, MalformedResponse
from gridworker.exchange.models import LiveOrder, OrderStatus, Position, Product, Ticker
from gridworker.state.models import BotConfig, BotState, BotStatus, Direction, ExecutionMode, GridMode, LevelSlot


class TestBotConfig:
    def test_from_dict_normalises(self):
        cfg = BotConfig.from_dict({
            "bot_id": "x", "owner": "alice@example.com", "symbol": " btcusd ",
            "lower": 100, "upper": "110.5", "levels": "4", "quantity": "0.5",
            "mode": "GEOMETRIC", "execution": "paper",
        })
        assert cfg.symbol == "BTCUSD"
        assert cfg.upper == Decimal("110.5")
        assert cfg.levels == 4
        assert cfg.mode == GridMode.GEOMETRIC
        assert cfg.execution == ExecutionMode.PAPER
        assert cfg.exchange == "delta_india"
        assert cfg.leverage == Decimal("1")
        assert cfg.tick_size is None
        assert BotConfig.from_dict(cfg.to_dict()) == cfg

    @pytest.mark.parametrize("raw", [
        {"lower": "abc", "upper": "1", "quantity": "1", "levels": 2},
        {"lower": "1", "upper": "2", "quantity": "1", "levels": 2, "mode": "spiral"},
        {"lower": "1", "upper": "2", "quantity": "1", "levels": "many"},
    ])
    def test_from_dict_rejects_garbage(self, raw):
        with pytest.raises(InvariantViolation):
            BotConfig.from_dict(raw)

    @pytest.mark.parametrize("field,value", [
        ("lower", "NaN"), ("upper", "Infinity"), ("quantity", "-inf"), ("leverage", "sNaN"),
    ])
    def test_from_dict_rejects_non_finite(self, field, value):
        raw = {"bot_id": "x", "lower": "1", "upper": "2", "quantity": "1", "levels": 2, field: value}
        with pytest.raises(InvariantViolation):
            BotConfig.from_dict(raw)

    def test_exchange_normalised_and_checked(self):
        raw = {"bot_id": "x", "lower": "1", "upper": "2", "quantity": "1", "levels": 2}
        assert BotConfig.from_dict({**raw, "exchange": "DELTA_GLOBAL"}).exchange == "delta_global"
        assert BotConfig.from_dict({**raw, "exchange": ""}).exchange == "delta_india"
        with pytest.raises(InvariantViolation):
            BotConfig.from_dict({**raw, "exchange": "binance"})

    def test_risk_fields_round_trip(self, make_config):
        cfg = make_config(direction=Direction.SHORT, max_positions=3, stop_out_of_range=True,
                          drawdown_stop_pct=Decimal("12.5"))
        assert BotConfig.from_dict(cfg.to_dict()) == cfg
        assert cfg.grid_hash() != make_config().grid_hash()
        assert make_config(max_positions=3).grid_hash() == make_config().grid_hash()
        with pytest.raises(InvariantViolation):
            make_config(max_positions=-1).validate()

    def test_grid_hash_tracks_ladder_fields_only(self, make_config):
        base = make_config()
        assert base.grid_hash() == make_config(name="renamed", leverage=Decimal("2")).grid_hash()
        assert base.grid_hash() != make_config(levels=4).grid_hash()
        assert base.grid_hash() != make_config(tick_size=Decimal("0.5")).grid_hash()


class TestBotState:
    def test_round_trip(self):
        state = BotState(status=BotStatus.STOPPING, product_id=27, stop_reason="emergency",
                         slots={2: LevelSlot("sell", "9", Decimal("0.6"))}, error_streak=2)
        assert BotState.from_dict(state.to_dict()) == state
        assert BotState.from_dict(None) == BotState()

    def test_start_equity_round_trip(self):
        state = BotState(status=BotStatus.RUNNING, product_id=27, start_equity=Decimal("10000.5"))
        assert BotState.from_dict(state.to_dict()).start_equity == Decimal("10000.5")

    def test_terminal(self):
        assert BotStatus.STOPPED.terminal and BotStatus.ERRORED.terminal
        assert not BotStatus.STOPPING.terminal


class TestPayloads:
    def test_product(self):
        p = Product.from_payload({"id": 27, "symbol": "btcusd", "tick_size": "0.5", "contract_value": "0.001"})
        assert p.symbol == "BTCUSD"
        with pytest.raises(MalformedResponse):
            Product.from_payload({"id": 27, "symbol": "BTCUSD", "tick_size": "0"})
        assert p.min_order_size == Decimal("1")
        sized = Product.from_payload({"id": 3, "symbol": "ETHUSD", "tick_size": "0.05",
                                     "product_specs": {"min_order_size": "5"}})
        assert sized.min_order_size == Decimal("5")

    def test_ticker_reference_price(self):
        assert Ticker.from_payload({"symbol": "BTCUSD", "mark_price": "101", "close": 100}).reference_price == \
            Decimal("101")
        assert Ticker.from_payload({"symbol": "BTCUSD", "close": 100}).reference_price == Decimal("100")

    def test_order_side_validated(self):
        with pytest.raises(MalformedResponse):
            LiveOrder.from_payload({"id": 1, "product_id": 27, "side": "hold", "limit_price": 1, "size": 1})

    def test_order_status(self):
        closed = OrderStatus.from_payload({"id": 5, "state": "closed", "size": 2, "unfilled_size": 0})
        assert closed.fully_filled
        cancelled = OrderStatus.from_payload({"id": 5, "state": "cancelled", "size": 2, "unfilled_size": 1})
        assert not cancelled.fully_filled and cancelled.filled_size == Decimal("1")
        assert OrderStatus.from_payload({"id": 5, "state": "pending", "size": 2}).is_open

    def test_empty_position(self):
        assert Position.from_payload({}, 27).size == Decimal("0")
