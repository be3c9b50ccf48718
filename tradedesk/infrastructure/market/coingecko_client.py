"""CoinGecko public API client (spot price + OHLC) over aiohttp."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Iterable, List, Optional, Protocol

import aiohttp

from tradedesk.infrastructure.logging.logging import get_logger
from tradedesk.models.market_models import Candle

log = get_logger("coingecko")


class MarketDataError(RuntimeError):
    """The provider could not deliver usable data (timeout, HTTP error, bad payload)."""


class MarketDataClient(Protocol):
    async def fetch_price(self, api_id: str, *, timeout: float) -> float:
        ...

    async def fetch_ohlc(self, api_id: str, days: int, *, timeout: float) -> List[Candle]:
        ...


def parse_ohlc(rows: Any) -> List[Candle]:
    """`[[ms, open, high, low, close], ...]` -> candles (epoch seconds)."""
    if not isinstance(rows, list):
        raise MarketDataError("unexpected OHLC payload")
    candles: List[Candle] = []
    for row in rows:
        if not isinstance(row, (list, tuple)) or len(row) < 5:
            continue
        candles.append(
            Candle(
                time=int(row[0]) // 1000,
                open=float(row[1]),
                high=float(row[2]),
                low=float(row[3]),
                close=float(row[4]),
            )
        )
    return candles


class CoinGeckoClient:
    def __init__(self, base_url: str = "https://api.coingecko.com/api/v3", *, session: Optional[aiohttp.ClientSession] = None) -> None:
        self._base = base_url.rstrip("/")
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(headers={"Accept": "application/json"})
            self._owns_session = True
        return self._session

    async def _get_json(self, path: str, params: Dict[str, str], timeout: float) -> Any:
        session = await self._get_session()
        try:
            async with session.get(
                f"{self._base}{path}", params=params, timeout=aiohttp.ClientTimeout(total=timeout)
            ) as resp:
                if resp.status != 200:
                    raise MarketDataError(f"{path} -> HTTP {resp.status}")
                return await resp.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise MarketDataError(f"{path} timed out after {timeout}s") from e
        except aiohttp.ClientError as e:
            raise MarketDataError(f"{path} failed: {e}") from e

    async def fetch_prices(self, api_ids: Iterable[str], *, timeout: float = 5.0) -> Dict[str, float]:
        ids = sorted(set(api_ids))
        if not ids:
            return {}
        data = await self._get_json("/simple/price", {"ids": ",".join(ids), "vs_currencies": "usd"}, timeout)
        out: Dict[str, float] = {}
        for api_id in ids:
            usd = (data or {}).get(api_id, {}).get("usd")
            if usd is not None:
                out[api_id] = float(usd)
        return out

    async def fetch_price(self, api_id: str, *, timeout: float = 5.0) -> float:
        prices = await self.fetch_prices([api_id], timeout=timeout)
        price = prices.get(api_id)
        if price is None or price <= 0:
            raise MarketDataError(f"no usd price for {api_id}")
        return price

    async def fetch_ohlc(self, api_id: str, days: int, *, timeout: float = 10.0) -> List[Candle]:
        rows = await self._get_json(f"/coins/{api_id}/ohlc", {"vs_currency": "usd", "days": str(days)}, timeout)
        candles = parse_ohlc(rows)
        log.debug("ohlc_loaded", api_id=api_id, days=days, candles=len(candles))
        return candles

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None
