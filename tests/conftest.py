from __future__ import annotations

import asyncio
from typing import Dict, List, Optional

import pytest

from tradedesk.infrastructure.market.coingecko_client import MarketDataError
from tradedesk.infrastructure.storage.sqlite_backend import SQLiteBackend
from tradedesk.models.account_models import GLOBAL_ENGINE_KEY
from tradedesk.models.market_models import Candle
from tradedesk.services.account.balance_store import BalanceStore
from tradedesk.services.market.price_source import PriceSource
from tradedesk.services.trading.price_sync import PriceSync
from tradedesk.services.trading.trade_client import TradeClient

START_EPOCH = 1_760_000_000.0


class FakeClock:
    def __init__(self, now: float = START_EPOCH) -> None:
        self.now = now

    def time(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeMarketClient:
    """In-memory stand-in for the CoinGecko client."""

    def __init__(self) -> None:
        self.prices: Dict[str, float] = {}
        self.ohlc: Dict[str, List[Candle]] = {}
        self.fail = False
        self.price_calls: List[str] = []
        self.ohlc_calls: List[str] = []
        self.ohlc_delay = 0.0

    async def fetch_price(self, api_id: str, *, timeout: float) -> float:
        self.price_calls.append(api_id)
        if self.fail:
            raise MarketDataError("provider unavailable")
        if api_id not in self.prices:
            raise MarketDataError(f"no usd price for {api_id}")
        return self.prices[api_id]

    async def fetch_ohlc(self, api_id: str, days: int, *, timeout: float) -> List[Candle]:
        self.ohlc_calls.append(api_id)
        if self.ohlc_delay:
            await asyncio.sleep(self.ohlc_delay)
        if self.fail:
            raise MarketDataError("provider unavailable")
        return list(self.ohlc.get(api_id, []))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def market() -> FakeMarketClient:
    client = FakeMarketClient()
    client.prices["bitcoin"] = 94500.0
    return client


@pytest.fixture
def backend(tmp_path, clock):
    db = SQLiteBackend(tmp_path / "desk.db", clock=clock)
    yield db
    asyncio.run(db.close())


@pytest.fixture
def user_id(backend) -> str:
    """A user holding 500 USDT, trading BTC/USDT under the general engine."""
    uid = backend.create_profile("user-1", email="trader@example.com", usdt_balance=500.0, base_balance=500.0)
    backend.set_asset_price("BTC", 94500.0, name="Bitcoin", api_id="bitcoin")
    backend.set_setting(GLOBAL_ENGINE_KEY, "general")
    return uid


@pytest.fixture
def prices(market, clock) -> PriceSource:
    return PriceSource(market, clock=clock)


def make_trade_client(backend, prices, clock, user_id: Optional[str], store: Optional[BalanceStore] = None) -> TradeClient:
    return TradeClient(backend, user_id, PriceSync(backend, prices), balances=store, clock=clock)


@pytest.fixture
def trades(backend, prices, clock, user_id) -> TradeClient:
    return make_trade_client(backend, prices, clock, user_id)
