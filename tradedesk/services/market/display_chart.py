"""What the chart draws. Purely cosmetic: nothing here feeds balances or profit."""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import List, Optional, Sequence

from tradedesk.models.account_models import EngineMode
from tradedesk.models.market_models import Candle
from tradedesk.services.market.candle_synthesizer import aligned_times

FOREX_DISPLAY_CANDLES = 100
FOREX_DISPLAY_VOLATILITY = 0.0015


@dataclass(frozen=True)
class ChartHeader:
    last_price: float
    change: float
    change_percent: float


def rising_display(candles: Sequence[Candle]) -> List[Candle]:
    """Bias a series upward so closes never fall (rising engine view)."""
    if not candles:
        return []
    total = len(candles)
    floor_close = candles[0].close
    out: List[Candle] = []
    for idx, c in enumerate(candles):
        bias = idx / total * (c.close * 0.05)
        close = max(floor_close, c.close) + bias
        floor_close = close
        out.append(
            Candle(
                time=c.time,
                open=c.open + bias * 0.8,
                high=max(c.high, close) + bias * 0.2,
                low=max(c.low, c.open * 0.99),
                close=close,
            )
        )
    return out


def display_candles(candles: Sequence[Candle], engine: EngineMode) -> List[Candle]:
    if engine is EngineMode.RISING:
        return rising_display(candles)
    return list(candles)


def forex_display_series(
    base_rate: float,
    now: float,
    interval: int,
    engine: EngineMode,
    *,
    count: int = FOREX_DISPLAY_CANDLES,
    rng: Optional[random.Random] = None,
) -> List[Candle]:
    rng = rng or random.Random()
    vol = base_rate * FOREX_DISPLAY_VOLATILITY
    last_close = base_rate
    out: List[Candle] = []
    for t in aligned_times(now, interval, count + 1):
        if engine is EngineMode.RISING:
            change = rng.random() * vol * 0.8
        else:
            change = (rng.random() - 0.5) * vol * 2
        o = last_close
        c = o + change
        out.append(
            Candle(
                time=t,
                open=o,
                high=max(o, c) + rng.random() * vol * 0.5,
                low=min(o, c) - rng.random() * vol * 0.5,
                close=c,
            )
        )
        last_close = c
    return out


def chart_header(candles: Sequence[Candle]) -> Optional[ChartHeader]:
    if not candles:
        return None
    first = candles[0].open
    last = candles[-1].close
    change = last - first
    percent = change / first * 100 if first else 0.0
    return ChartHeader(last_price=last, change=change, change_percent=percent)
