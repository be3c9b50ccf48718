from __future__ import annotations

import pytest

from tradedesk.models.account_models import EngineMode, resolve_engine_mode
from tradedesk.models.trade_models import (
    DurationType,
    StoppedTrade,
    Trade,
    TradeType,
    market_profit,
    price_change_percent,
    profit_percent,
)
from tradedesk.services.trading.pnl import project


def _trade(**kw) -> Trade:
    values = dict(
        id="t1",
        user_id="u1",
        trade_type=TradeType.BUY,
        initial_amount=100.0,
        profit_multiplier=1.0,
        entry_price=94500.0,
        trading_pair="BTC/USDT",
        market_type="crypto",
    )
    values.update(kw)
    return Trade(**values)


class TestMarketProfit:
    def test_buy_gains_when_price_rises(self):
        assert market_profit(TradeType.BUY, 100.0, 94500.0, 96390.0) == pytest.approx(2.0)

    def test_sell_is_inverted(self):
        assert market_profit("sell", 100.0, 94500.0, 96390.0) == pytest.approx(-2.0)
        assert market_profit("SELL", 100.0, 2.0, 1.5) == pytest.approx(25.0)

    def test_missing_prices_give_zero(self):
        assert market_profit("buy", 100.0, None, 1.0) == 0.0
        assert market_profit("buy", 100.0, 0.0, 1.0) == 0.0
        assert market_profit("buy", 100.0, 1.0, None) == 0.0

    def test_percent_and_change(self):
        assert profit_percent(2.0, 100.0) == 2.0
        assert profit_percent(1.0, 3.0) == 33.33
        assert profit_percent(1.0, 0.0) == 0.0
        assert price_change_percent(100.0, 110.0) == pytest.approx(10.0)

    def test_projection(self):
        p = project(_trade(trade_type=TradeType.SELL), 93555.0)
        assert p.profit == pytest.approx(1.0)
        assert p.percent == 1.0
        assert p.equity == pytest.approx(101.0)


class TestTradeModel:
    def test_display_fields(self):
        trade = _trade(current_profit=2.0)
        assert trade.profit_percent == 2.0
        assert trade.equity == 102.0
        assert trade.as_dict()["profit_percent"] == "2.00"

    def test_from_row_parses_backend_values(self):
        trade = Trade.from_row(
            {
                "id": "abc",
                "user_id": "u1",
                "trade_type": "SELL",
                "initial_amount": "50",
                "entry_price": 1.085,
                "status": "liquidated",
                "duration_type": "24h",
                "expires_at": "2025-01-02T00:00:00Z",
            }
        )
        assert trade.trade_type is TradeType.SELL
        assert trade.initial_amount == 50.0
        assert trade.status.is_terminal
        assert trade.duration_type is DurationType.ONE_DAY
        assert trade.expires_at.isoformat() == "2025-01-02T00:00:00+00:00"

    def test_stopped_trade_transaction_text(self):
        win = StoppedTrade("t1", "BTC/USDT", "buy", 100.0, 2.0)
        loss = StoppedTrade("t2", None, "sell", 100.0, -3.5)
        assert win.transaction_type == "trade_profit"
        assert win.description() == "Trade stopped: BUY BTC/USDT - Profit: $2.00"
        assert loss.transaction_type == "trade_loss"
        assert loss.description() == "Trade stopped: SELL market - Profit: $-3.50"

    def test_duration_expiry(self):
        from datetime import datetime, timezone

        start = datetime(2025, 1, 1, tzinfo=timezone.utc)
        assert DurationType.SIX_HOURS.expires_at(start).hour == 6
        assert DurationType.UNLIMITED.expires_at(start) is None


@pytest.mark.parametrize(
    "override, global_setting, expected",
    [
        ("general", "rising", EngineMode.GENERAL),
        ("rising", "general", EngineMode.RISING),
        ("default", "general", EngineMode.GENERAL),
        (None, '"general"', EngineMode.GENERAL),
        (None, None, EngineMode.RISING),
        ("default", "default", EngineMode.RISING),
        ("bogus", None, EngineMode.RISING),
    ],
)
def test_engine_mode_resolution(override, global_setting, expected):
    assert resolve_engine_mode(override, global_setting) is expected
