"""Spot price source: live CoinGecko prices for mapped crypto pairs, simulation otherwise.

get_price never raises for data-source problems; the caller always receives
a usable number.
"""

from __future__ import annotations

from collections import deque
from typing import Deque, Dict, List, Optional

from tradedesk.infrastructure.logging.logging import get_logger
from tradedesk.infrastructure.market.coingecko_client import MarketDataClient, MarketDataError
from tradedesk.infrastructure.utils.timeutils import Clock, SystemClock
from tradedesk.models.market_models import PricePoint
from tradedesk.services.market import catalog
from tradedesk.services.market.price_simulator import PriceSimulator
from tradedesk.services.market.ttl_cache import TTLCache

log = get_logger("price_source")

SOURCE_COINGECKO = "coingecko"
SOURCE_SIMULATION = "simulation"


class PriceHistory:
    """Rolling per-pair buffer of recently observed prices."""

    def __init__(self, maxlen: int = 100) -> None:
        self._maxlen = maxlen
        self._points: Dict[str, Deque[PricePoint]] = {}

    def append(self, pair: str, epoch: float, price: float) -> None:
        buf = self._points.get(pair)
        if buf is None:
            buf = deque(maxlen=self._maxlen)
            self._points[pair] = buf
        buf.append(PricePoint(pair=pair, epoch=epoch, price=price))

    def points(self, pair: str) -> List[PricePoint]:
        return list(self._points.get(pair, ()))

    def prices(self, pair: str) -> List[float]:
        return [p.price for p in self._points.get(pair, ())]

    def __len__(self) -> int:
        return sum(len(b) for b in self._points.values())


class PriceSource:
    def __init__(
        self,
        client: Optional[MarketDataClient],
        *,
        clock: Optional[Clock] = None,
        cache: Optional[TTLCache[float]] = None,
        simulator: Optional[PriceSimulator] = None,
        history: Optional[PriceHistory] = None,
        ttl_sec: float = 30.0,
        timeout_sec: float = 5.0,
    ) -> None:
        self._client = client
        self._clock = clock or SystemClock()
        self.cache: TTLCache[float] = cache if cache is not None else TTLCache(ttl_sec, self._clock)
        self.simulator = simulator or PriceSimulator(self._clock)
        self.history = history or PriceHistory()
        self._timeout = timeout_sec

    def data_source(self, pair: str, market_type: str) -> str:
        if self._client is not None and catalog.api_id(pair, market_type):
            return SOURCE_COINGECKO
        return SOURCE_SIMULATION

    async def get_price(self, pair: str, market_type: str, *, fresh: bool = False) -> float:
        if not fresh:
            cached = self.cache.get(pair)
            if cached is not None:
                return cached

        price = await self._fetch_live(pair, market_type)
        if price is None:
            price = self.simulator.next_price(pair, catalog.base_price(pair))

        self.cache.set(pair, price)
        self.history.append(pair, self._clock.time(), price)
        return price

    async def _fetch_live(self, pair: str, market_type: str) -> Optional[float]:
        api_id = catalog.api_id(pair, market_type)
        if self._client is None or api_id is None:
            return None
        try:
            price = await self._client.fetch_price(api_id, timeout=self._timeout)
        except MarketDataError as e:
            log.warning("price_fetch_failed", pair=pair, api_id=api_id, error=str(e))
            return None
        except Exception as e:
            log.warning("price_fetch_error", pair=pair, api_id=api_id, error=str(e))
            return None
        log.debug("price_fetched", pair=pair, price=price)
        return price
