"""Market domain models."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class MarketType(str, Enum):
    CRYPTO = "crypto"
    FOREX = "forex"


@dataclass(frozen=True)
class TradingPair:
    symbol: str              # "BTC/USDT", "EUR/USD"
    name: str
    market_type: MarketType
    base_price: float
    api_id: Optional[str] = None   # CoinGecko id, crypto only

    @property
    def base_asset(self) -> str:
        return self.symbol.split("/")[0]


def asset_symbol(pair: str, market_type: str) -> str:
    """Symbol of the tradeable_assets row that carries a pair's price.

    Crypto assets are stored by base symbol ("BTC"), forex by full pair.
    """
    if str(getattr(market_type, "value", market_type)) == MarketType.CRYPTO.value:
        return pair.split("/")[0]
    return pair


@dataclass(frozen=True)
class PricePoint:
    pair: str
    epoch: float
    price: float


@dataclass(frozen=True)
class Candle:
    time: int       # open time, epoch seconds
    open: float
    high: float
    low: float
    close: float

    def as_dict(self) -> dict:
        return {"time": self.time, "open": self.open, "high": self.high, "low": self.low, "close": self.close}
