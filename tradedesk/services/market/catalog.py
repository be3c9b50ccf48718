"""Tradeable pair catalogue and timeframe tables."""

from __future__ import annotations

from typing import Dict, List, Optional

from tradedesk.models.market_models import MarketType, TradingPair

DEFAULT_BASE_PRICE = 100.0

CRYPTO_PAIRS: List[TradingPair] = [
    TradingPair("BTC/USDT", "Bitcoin", MarketType.CRYPTO, 94500, "bitcoin"),
    TradingPair("ETH/USDT", "Ethereum", MarketType.CRYPTO, 3450, "ethereum"),
    TradingPair("BNB/USDT", "Binance Coin", MarketType.CRYPTO, 680, "binancecoin"),
    TradingPair("SOL/USDT", "Solana", MarketType.CRYPTO, 195, "solana"),
    TradingPair("XRP/USDT", "Ripple", MarketType.CRYPTO, 2.35, "ripple"),
    TradingPair("ADA/USDT", "Cardano", MarketType.CRYPTO, 1.05, "cardano"),
    TradingPair("DOGE/USDT", "Dogecoin", MarketType.CRYPTO, 0.38, "dogecoin"),
    TradingPair("AVAX/USDT", "Avalanche", MarketType.CRYPTO, 42, "avalanche-2"),
    TradingPair("DOT/USDT", "Polkadot", MarketType.CRYPTO, 8.2, "polkadot"),
    TradingPair("LINK/USDT", "Chainlink", MarketType.CRYPTO, 24, "chainlink"),
    TradingPair("TRX/USDT", "Tron", MarketType.CRYPTO, 0.26, "tron"),
    TradingPair("LTC/USDT", "Litecoin", MarketType.CRYPTO, 115, "litecoin"),
    TradingPair("MATIC/USDT", "Polygon", MarketType.CRYPTO, 0.58, "matic-network"),
    TradingPair("TON/USDT", "Toncoin", MarketType.CRYPTO, 6.2, "the-open-network"),
    TradingPair("SHIB/USDT", "Shiba Inu", MarketType.CRYPTO, 0.000024, "shiba-inu"),
]

FOREX_PAIRS: List[TradingPair] = [
    TradingPair("EUR/USD", "Euro / US Dollar", MarketType.FOREX, 1.0850),
    TradingPair("GBP/USD", "British Pound / US Dollar", MarketType.FOREX, 1.2650),
    TradingPair("USD/JPY", "US Dollar / Japanese Yen", MarketType.FOREX, 149.50),
    TradingPair("AUD/USD", "Australian Dollar / US Dollar", MarketType.FOREX, 0.6550),
    TradingPair("USD/CHF", "US Dollar / Swiss Franc", MarketType.FOREX, 0.8850),
    TradingPair("USD/CAD", "US Dollar / Canadian Dollar", MarketType.FOREX, 1.3550),
    TradingPair("NZD/USD", "New Zealand Dollar / US Dollar", MarketType.FOREX, 0.6150),
    TradingPair("EUR/GBP", "Euro / British Pound", MarketType.FOREX, 0.8580),
    TradingPair("EUR/JPY", "Euro / Japanese Yen", MarketType.FOREX, 162.20),
    TradingPair("GBP/JPY", "British Pound / Japanese Yen", MarketType.FOREX, 189.10),
    TradingPair("EUR/AUD", "Euro / Australian Dollar", MarketType.FOREX, 1.6550),
    TradingPair("GBP/AUD", "British Pound / Australian Dollar", MarketType.FOREX, 1.9310),
    TradingPair("EUR/CAD", "Euro / Canadian Dollar", MarketType.FOREX, 1.4710),
    TradingPair("USD/SGD", "US Dollar / Singapore Dollar", MarketType.FOREX, 1.3450),
    TradingPair("USD/ZAR", "US Dollar / South African Rand", MarketType.FOREX, 18.50),
]

_BY_SYMBOL: Dict[str, TradingPair] = {p.symbol: p for p in CRYPTO_PAIRS + FOREX_PAIRS}

# timeframe (minutes, as sent by the chart) -> candle interval in seconds
TIMEFRAME_INTERVAL_SEC: Dict[str, int] = {
    "1": 60,
    "5": 300,
    "15": 900,
    "60": 3600,
    "240": 14400,
    "1440": 86400,
}
DEFAULT_INTERVAL_SEC = 900

# timeframe -> OHLC look-back window in days
TIMEFRAME_LOOKBACK_DAYS: Dict[str, int] = {
    "1": 1,
    "5": 1,
    "15": 1,
    "60": 7,
    "240": 14,
    "1440": 30,
}


def get_pair(symbol: str) -> Optional[TradingPair]:
    return _BY_SYMBOL.get(symbol)


def base_price(symbol: str) -> float:
    pair = _BY_SYMBOL.get(symbol)
    return float(pair.base_price) if pair else DEFAULT_BASE_PRICE


def api_id(symbol: str, market_type: str) -> Optional[str]:
    """CoinGecko id for crypto pairs that have one; forex never does."""
    if str(getattr(market_type, "value", market_type)) != MarketType.CRYPTO.value:
        return None
    pair = _BY_SYMBOL.get(symbol)
    return pair.api_id if pair else None


def interval_sec(timeframe: str) -> int:
    return TIMEFRAME_INTERVAL_SEC.get(str(timeframe), DEFAULT_INTERVAL_SEC)


def lookback_days(timeframe: str) -> int:
    return TIMEFRAME_LOOKBACK_DAYS.get(str(timeframe), 1)


def pairs_for(market_type: str) -> List[TradingPair]:
    if str(getattr(market_type, "value", market_type)) == MarketType.FOREX.value:
        return list(FOREX_PAIRS)
    return list(CRYPTO_PAIRS)
