"""Deterministic market simulation used when no live feed is available.

Each pair keeps its own state (last price, phase). A new price is the last
price moved by three sinusoids (50 s, 12 s and 3 s time constants), bounded
noise and a slow trend term that changes every five minutes, then clamped to
+/-5% of the pair's base price.
"""

from __future__ import annotations

import math
import random
from dataclasses import dataclass
from typing import Dict, Optional

from tradedesk.infrastructure.utils.timeutils import Clock, SystemClock

VOLATILITY_RATIO = 0.0003
CLAMP_RATIO = 0.05

# Largest possible move in one call, in units of volatility (3 + 2 + 1 + 1 + 0.5).
MAX_STEP_VOLATILITIES = 7.5


@dataclass
class SimulationState:
    price: float
    last_update: float
    phase: float


class PriceSimulator:
    def __init__(self, clock: Optional[Clock] = None, rng: Optional[random.Random] = None) -> None:
        self._clock = clock or SystemClock()
        self._rng = rng or random.Random()
        self._states: Dict[str, SimulationState] = {}

    @staticmethod
    def volatility(base_price: float) -> float:
        return base_price * VOLATILITY_RATIO

    def state(self, pair: str) -> Optional[SimulationState]:
        return self._states.get(pair)

    def reset(self, pair: Optional[str] = None) -> None:
        if pair is None:
            self._states.clear()
        else:
            self._states.pop(pair, None)

    def next_price(self, pair: str, base_price: float) -> float:
        now = self._clock.time()
        state = self._states.get(pair)
        if state is None:
            state = SimulationState(price=base_price, last_update=now, phase=self._rng.random() * math.pi * 2)
            self._states[pair] = state

        now_ms = now * 1000
        vol = self.volatility(base_price)
        wave1 = math.sin(now_ms / 50_000 + state.phase) * vol * 3
        wave2 = math.sin(now_ms / 12_000 + state.phase * 2) * vol * 2
        wave3 = math.sin(now_ms / 3_000 + state.phase * 3) * vol
        noise = (self._rng.random() - 0.5) * vol * 2
        trend = math.sin(math.floor(now_ms / 300_000) + state.phase) * vol * 0.5

        lower = base_price * (1 - CLAMP_RATIO)
        upper = base_price * (1 + CLAMP_RATIO)
        price = min(upper, max(lower, state.price + wave1 + wave2 + wave3 + noise + trend))

        state.price = price
        state.last_update = now
        return price
