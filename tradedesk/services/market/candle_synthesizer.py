"""Candlestick series for the trading chart.

Crypto pairs with a CoinGecko id get real OHLC data. Everything else (forex,
or a failed fetch) gets a synthesized series: built from the rolling price
history once it holds enough samples, otherwise a smooth trend/noise curve
that ends at the current price.
"""

from __future__ import annotations

import asyncio
import math
from typing import List, Optional, Protocol, Sequence

from tradedesk.infrastructure.logging.logging import get_logger
from tradedesk.infrastructure.market.coingecko_client import MarketDataClient, MarketDataError
from tradedesk.infrastructure.utils.timeutils import Clock, SystemClock
from tradedesk.models.market_models import Candle
from tradedesk.services.market import catalog
from tradedesk.services.market.price_source import PriceHistory
from tradedesk.services.market.ttl_cache import TTLCache

log = get_logger("candles")

DEFAULT_CANDLE_COUNT = 30
MIN_HISTORY_SAMPLES = 5
FALLBACK_PRICE = 100.0
SYNTH_VOLATILITY_RATIO = 0.002


class SpotPrices(Protocol):
    async def get_price(self, pair: str, market_type: str, *, fresh: bool = False) -> float:
        ...


def aligned_times(now: float, interval: int, count: int) -> List[int]:
    last_open = int(now) - (int(now) % interval)
    return [last_open - (count - 1 - i) * interval for i in range(count)]


def flat_candles(now: float, interval: int, count: int = DEFAULT_CANDLE_COUNT) -> List[Candle]:
    return [
        Candle(time=t, open=FALLBACK_PRICE, high=FALLBACK_PRICE + 0.5, low=FALLBACK_PRICE - 0.5, close=FALLBACK_PRICE)
        for t in aligned_times(now, interval, count)
    ]


def candles_from_history(prices: Sequence[float], now: float, interval: int, count: int) -> List[Candle]:
    """Consecutive samples become candles: sample i opens, sample i+1 closes."""
    samples = list(prices)[-(count + 1):]
    n = len(samples) - 1
    if n <= 0:
        return []
    times = aligned_times(now, interval, n)
    candles: List[Candle] = []
    for i in range(n):
        o, c = samples[i], samples[i + 1]
        candles.append(Candle(time=times[i], open=o, high=max(o, c), low=min(o, c), close=c))
    return candles


def _trend(t: float, interval: int, vol: float) -> float:
    return (
        math.sin(t / (interval * 24) * 2 * math.pi) * vol * 1.5
        + math.sin(t / (interval * 7) * 2 * math.pi) * vol
        + math.sin(t / 1000.0 + t / interval) * vol * 0.5
    )


def synthetic_candles(current_price: float, now: float, interval: int, count: int = DEFAULT_CANDLE_COUNT) -> List[Candle]:
    """A plausible series that is a pure function of (price, time) and closes at `current_price`.

    A non-positive or non-finite price yields the flat fallback series.
    """
    if current_price is None or not math.isfinite(current_price) or current_price <= 0:
        return flat_candles(now, interval, count)

    vol = current_price * SYNTH_VOLATILITY_RATIO
    times = aligned_times(now, interval, count)
    anchor = _trend(times[-1], interval, vol)

    def level(t: float) -> float:
        return current_price + _trend(t, interval, vol) - anchor

    candles: List[Candle] = []
    prev_close = level(times[0] - interval)
    for t in times:
        o = prev_close
        c = level(t)
        high = max(o, c) + abs(math.sin(t / 2000.0)) * vol * 0.4
        low = min(o, c) - abs(math.cos(t / 2500.0)) * vol * 0.4
        candles.append(Candle(time=t, open=o, high=high, low=max(low, 0.0), close=c))
        prev_close = c
    return candles


class CandleSynthesizer:
    def __init__(
        self,
        client: Optional[MarketDataClient],
        prices: SpotPrices,
        history: PriceHistory,
        *,
        clock: Optional[Clock] = None,
        cache: Optional[TTLCache[List[Candle]]] = None,
        ttl_sec: float = 60.0,
        timeout_sec: float = 10.0,
        default_count: int = DEFAULT_CANDLE_COUNT,
    ) -> None:
        self._client = client
        self._prices = prices
        self._history = history
        self._clock = clock or SystemClock()
        self.cache: TTLCache[List[Candle]] = cache if cache is not None else TTLCache(ttl_sec, self._clock)
        self._timeout = timeout_sec
        self._default_count = default_count

    @staticmethod
    def cache_key(pair: str, market_type: str, timeframe: str) -> str:
        return f"{pair}-{market_type}-{timeframe}"

    async def get_candles(
        self,
        pair: str,
        timeframe: str,
        market_type: str,
        *,
        count: Optional[int] = None,
    ) -> List[Candle]:
        key = self.cache_key(pair, market_type, timeframe)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        candles = await self._fetch_ohlc(pair, timeframe, market_type)
        if not candles:
            candles = await self._synthesize(pair, timeframe, market_type, count or self._default_count)

        self.cache.set(key, candles)
        return candles

    async def _fetch_ohlc(self, pair: str, timeframe: str, market_type: str) -> List[Candle]:
        api_id = catalog.api_id(pair, market_type)
        if self._client is None or api_id is None:
            return []
        days = catalog.lookback_days(timeframe)
        try:
            candles = await self._client.fetch_ohlc(api_id, days, timeout=self._timeout)
        except MarketDataError as e:
            log.warning("ohlc_fetch_failed", pair=pair, timeframe=timeframe, error=str(e))
            return []
        except Exception as e:
            log.warning("ohlc_fetch_error", pair=pair, timeframe=timeframe, error=str(e))
            return []
        log.debug("ohlc_fetched", pair=pair, timeframe=timeframe, candles=len(candles))
        return candles

    async def _synthesize(self, pair: str, timeframe: str, market_type: str, count: int) -> List[Candle]:
        interval = catalog.interval_sec(timeframe)
        now = self._clock.time()
        history = self._history.prices(pair)
        if len(history) >= MIN_HISTORY_SAMPLES:
            log.debug("candles_from_history", pair=pair, samples=len(history))
            return candles_from_history(history, now, interval, count)
        price = await self._prices.get_price(pair, market_type)
        return synthetic_candles(price, now, interval, count)


class CandleFeed:
    """Single-flight candle requests for one consumer (a chart).

    A new request cancels the previous in-flight one; the superseded caller
    receives an empty list and its fetch never reaches the cache.
    """

    def __init__(self, synthesizer: CandleSynthesizer) -> None:
        self._synthesizer = synthesizer
        self._inflight: Optional[asyncio.Task[List[Candle]]] = None

    async def request(self, pair: str, timeframe: str, market_type: str) -> List[Candle]:
        if self._inflight is not None and not self._inflight.done():
            self._inflight.cancel()
        task = asyncio.create_task(self._synthesizer.get_candles(pair, timeframe, market_type))
        self._inflight = task
        try:
            return await task
        except asyncio.CancelledError:
            if task is not self._inflight:
                log.debug("candle_request_superseded", pair=pair, timeframe=timeframe)
                return []
            raise
        finally:
            if self._inflight is task and task.done():
                self._inflight = None

    async def close(self) -> None:
        task, self._inflight = self._inflight, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
