from __future__ import annotations

import asyncio

import pytest

from tradedesk.models.account_models import EngineMode
from tradedesk.models.trade_models import DurationType, OpenTradeRequest, TradeType
from tradedesk.services.errors import OperationRejected, ValidationFailure
from tradedesk.services.trading.trade_client import TradeMonitor

from conftest import make_trade_client


def btc_request(amount: float = 100.0, **kw) -> OpenTradeRequest:
    values = dict(
        trade_type=TradeType.BUY,
        amount=amount,
        trading_pair="BTC/USDT",
        market_type="crypto",
        balance_source="usdt_balance",
    )
    values.update(kw)
    return OpenTradeRequest(**values)


class TestTradeLifecycle:
    def test_buy_btc_rises_two_percent_then_close(self, trades, market, clock, backend, user_id):
        async def scenario():
            opened = await trades.open_trade(btc_request())
            after_open = trades.balances.snapshot.usdt_balance

            market.prices["bitcoin"] = 96390.0
            clock.advance(31)
            active = await trades.sync_profits()

            stopped = await trades.close_trade(opened.trade_id)
            return opened, after_open, active, stopped

        opened, after_open, active, stopped = asyncio.run(scenario())

        assert opened.success and opened.entry_price == 94500.0
        assert opened.engine == "general"
        assert after_open == 400.0

        (trade,) = active
        assert trade.current_price == 96390.0
        assert trade.current_profit == pytest.approx(2.0)
        assert trade.as_dict()["profit_percent"] == "2.00"

        assert stopped.profit == pytest.approx(2.0)
        assert trades.balances.snapshot.usdt_balance == pytest.approx(502.0)
        assert len(trades.book) == 0
        (tx,) = asyncio.run(backend.select("transactions", {"user_id": user_id}))
        assert tx["type"] == "trade_profit"
        assert tx["description"] == "Trade stopped: BUY BTC/USDT - Profit: $2.00"

    def test_entry_price_is_forced_fresh(self, trades, prices, market, backend):
        async def scenario():
            await prices.get_price("BTC/USDT", "crypto")
            market.prices["bitcoin"] = 95000.0
            return await trades.open_trade(btc_request())

        result = asyncio.run(scenario())
        assert result.entry_price == 95000.0
        (asset,) = asyncio.run(backend.select("tradeable_assets", {"symbol": "BTC"}))
        assert asset["current_price"] == 95000.0

    def test_stop_all_writes_one_transaction_per_trade(self, trades, backend, user_id):
        async def scenario():
            await trades.open_trade(btc_request(50.0))
            await trades.open_trade(btc_request(50.0, trade_type=TradeType.SELL, duration_type=DurationType.ONE_DAY))
            return await trades.stop_all()

        result = asyncio.run(scenario())
        assert result.trades_stopped == 2
        assert len(result.trade_details) == 2
        txs = asyncio.run(backend.select("transactions", {"user_id": user_id}))
        assert len(txs) == 2
        assert {t["type"] for t in txs} == {"trade_profit"}
        assert trades.balances.snapshot.usdt_balance == 500.0
        assert len(trades.book) == 0

    def test_stop_all_with_nothing_open(self, trades):
        result = asyncio.run(trades.stop_all())
        assert result.success and result.trades_stopped == 0

    def test_history_lists_newest_first(self, trades, clock):
        async def scenario():
            first = await trades.open_trade(btc_request(10.0))
            clock.advance(5)
            second = await trades.open_trade(btc_request(20.0))
            await trades.close_trade(first.trade_id)
            return first, second, await trades.trade_history()

        first, second, history = asyncio.run(scenario())
        assert [t.id for t in history] == [second.trade_id, first.trade_id]
        assert history[1].status.value == "stopped"

    def test_general_engine_ignores_selected_signal(self, backend, prices, market, clock, user_id):
        signal_id = backend.create_signal("Pro Signal", 150.0, profit_multiplier=1.5)
        purchase_id = backend.create_purchased_signal(user_id, signal_id)
        client = make_trade_client(backend, prices, clock, user_id)

        async def scenario():
            await client.open_trade(btc_request(purchased_signal_id=purchase_id))
            opened = client.book.trades
            market.prices["bitcoin"] = 96390.0
            clock.advance(31)
            return opened, await client.sync_profits()

        (opened,), (synced,) = asyncio.run(scenario())
        assert opened.signal_name == ""
        assert opened.signal_id is None
        assert opened.profit_multiplier == 1.0
        assert synced.current_profit == pytest.approx(2.0)

    def test_signal_name_is_merged_into_rising_trades(self, backend, prices, market, clock, user_id):
        backend.set_user_engine(user_id, "rising")
        signal_id = backend.create_signal("Pro Signal", 150.0, profit_multiplier=1.5)
        purchase_id = backend.create_purchased_signal(user_id, signal_id)
        client = make_trade_client(backend, prices, clock, user_id)

        async def scenario():
            result = await client.open_trade(btc_request(purchased_signal_id=purchase_id))
            opened = client.book.trades
            market.prices["bitcoin"] = 96390.0
            clock.advance(31)
            return result, opened, await client.sync_profits()

        result, (opened,), (synced,) = asyncio.run(scenario())
        assert result.engine == "rising"
        assert opened.signal_name == "Pro Signal"
        assert opened.profit_multiplier == 1.5
        assert synced.current_profit == pytest.approx(3.0)


class TestOpenTradeValidation:
    @pytest.mark.parametrize(
        "request_kw, message",
        [
            ({"amount": 0.0}, "Please enter a valid amount"),
            ({"amount": 500.5}, "Insufficient USDT Balance"),
            ({"balance_source": ""}, "Please select a balance source"),
            ({"trading_pair": ""}, "Please select a trading asset"),
        ],
    )
    def test_rejected_before_any_backend_call(self, trades, backend, market, request_kw, message):
        kw = dict(request_kw)
        amount = kw.pop("amount", 100.0)
        with pytest.raises(ValidationFailure) as err:
            asyncio.run(trades.open_trade(btc_request(amount, **kw)))
        assert err.value.message == message
        assert asyncio.run(backend.select("trades")) == []
        assert market.price_calls == []

    def test_requires_signed_in_user(self, backend, prices, clock):
        client = make_trade_client(backend, prices, clock, None)
        with pytest.raises(ValidationFailure, match="Please sign in to trade"):
            asyncio.run(client.open_trade(btc_request()))

    def test_rising_engine_requires_signal_selection(self, trades, backend, user_id):
        backend.set_user_engine(user_id, "rising")
        with pytest.raises(ValidationFailure, match="Please select a signal to trade with"):
            asyncio.run(trades.open_trade(btc_request()))

    def test_server_rejection_keeps_local_state(self, trades, backend, user_id):
        async def scenario():
            await trades.refresh_balances()
            await backend.update("profiles", {"is_frozen": True}, {"id": user_id})
            await trades.open_trade(btc_request())

        with pytest.raises(OperationRejected, match="Account is frozen"):
            asyncio.run(scenario())
        assert trades.balances.snapshot.usdt_balance == 500.0
        assert len(trades.book) == 0

    def test_closing_unknown_trade(self, trades):
        with pytest.raises(ValidationFailure):
            asyncio.run(trades.close_trade("nope"))


def test_trade_monitor_keeps_profits_live(trades, market, clock):
    async def scenario():
        await trades.open_trade(btc_request())
        market.prices["bitcoin"] = 96390.0
        clock.advance(31)
        async with TradeMonitor(trades, interval_sec=0.01) as monitor:
            assert monitor.running
            await asyncio.sleep(0.05)
        return monitor.running, trades.book.trades

    running, (trade,) = asyncio.run(scenario())
    assert not running
    assert trade.current_profit == pytest.approx(2.0)


def test_trade_monitor_follows_pushed_changes_until_stopped(trades, backend, user_id):
    async def scenario():
        await trades.open_trade(btc_request())
        (trade,) = trades.book.trades
        monitor = TradeMonitor(trades, interval_sec=60)
        await monitor.start()
        await asyncio.sleep(0.05)

        await backend.update("trades", {"current_profit": 7.5}, {"id": trade.id})
        pushed = trades.book.get(trade.id).current_profit
        await backend.insert("user_trading_engines", {"user_id": user_id, "engine_type": "rising"})
        engine = trades.engine

        await monitor.stop()
        await backend.update("trades", {"current_profit": 9.0}, {"id": trade.id})
        return pushed, engine, trades.book.get(trade.id).current_profit

    pushed, engine, after_stop = asyncio.run(scenario())
    assert pushed == 7.5
    assert engine is EngineMode.RISING
    assert after_stop == 7.5
