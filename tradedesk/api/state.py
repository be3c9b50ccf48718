# tradedesk/api/state.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from tradedesk.infrastructure.backend.base import Backend
from tradedesk.infrastructure.backend.factory import build_backend
from tradedesk.infrastructure.market.coingecko_client import CoinGeckoClient, MarketDataClient
from tradedesk.infrastructure.utils.config import TradeDeskConfig
from tradedesk.infrastructure.utils.timeutils import Clock, SystemClock
from tradedesk.services.account.account_client import AccountClient
from tradedesk.services.account.admin_client import AdminClient
from tradedesk.services.account.balance_store import BalanceStore
from tradedesk.services.market.candle_synthesizer import CandleSynthesizer
from tradedesk.services.market.price_source import PriceHistory, PriceSource
from tradedesk.services.monitoring.metrics import MetricsSnapshot
from tradedesk.services.trading.engine_mode import EngineModeResolver
from tradedesk.services.trading.price_sync import PriceSync
from tradedesk.services.trading.trade_client import TradeClient


@dataclass
class AppState:
    config: TradeDeskConfig
    backend: Backend
    prices: PriceSource
    candles: CandleSynthesizer
    trades: TradeClient
    account: AccountClient
    admin: AdminClient
    engines: EngineModeResolver
    metrics: MetricsSnapshot
    market_client: Optional[MarketDataClient] = None

    async def close(self) -> None:
        await self.account.stop()
        await self.backend.close()
        close = getattr(self.market_client, "close", None)
        if close is not None:
            await close()


def build_state(
    config: TradeDeskConfig,
    *,
    backend: Optional[Backend] = None,
    market_client: Optional[MarketDataClient] = None,
    clock: Optional[Clock] = None,
) -> AppState:
    """Wire the process-lifetime services once; everything downstream gets them injected."""
    clock = clock or SystemClock()
    backend = backend or build_backend(config, clock=clock)
    if market_client is None:
        market_client = CoinGeckoClient(config.market.coingecko_base_url)

    history = PriceHistory(config.market.history_size)
    prices = PriceSource(
        market_client,
        clock=clock,
        history=history,
        ttl_sec=config.market.price_ttl_sec,
        timeout_sec=config.market.price_timeout_sec,
    )
    candles = CandleSynthesizer(
        market_client,
        prices,
        history,
        clock=clock,
        ttl_sec=config.market.candle_ttl_sec,
        timeout_sec=config.market.ohlc_timeout_sec,
        default_count=config.market.default_candle_count,
    )
    engines = EngineModeResolver(backend)
    store = BalanceStore()
    metrics = MetricsSnapshot(backend=config.backend.kind, user_id=config.user_id)
    store.on_change(metrics.on_balances)

    trades = TradeClient(
        backend,
        config.user_id,
        PriceSync(backend, prices),
        balances=store,
        engine_resolver=engines,
        clock=clock,
    )
    trades.book.on_change(metrics.on_trades)
    account = AccountClient(backend, config.user_id, store=store, clock=clock)
    return AppState(
        config=config,
        backend=backend,
        prices=prices,
        candles=candles,
        trades=trades,
        account=account,
        admin=AdminClient(backend, config.user_id),
        engines=engines,
        metrics=metrics,
        market_client=market_client,
    )


_state: Optional[AppState] = None


def set_state(state: Optional[AppState]) -> None:
    global _state
    _state = state


def get_state() -> AppState:
    if _state is None:
        raise RuntimeError("API state not initialized. Call set_state() or start via the api command.")
    return _state
