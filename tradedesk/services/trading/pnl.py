"""Display-side profit projection for open positions.

The backend owns `current_profit`; the arithmetic lives with the trade model
so the reference settlement procedures share it.
"""

from __future__ import annotations

from dataclasses import dataclass

from tradedesk.models.trade_models import Trade, market_profit, profit_percent


@dataclass(frozen=True)
class ProfitProjection:
    profit: float
    percent: float
    equity: float


def project(trade: Trade, current_price: float) -> ProfitProjection:
    """What the position would show at `current_price` (display only)."""
    profit = market_profit(trade.trade_type, trade.initial_amount, trade.entry_price, current_price)
    return ProfitProjection(
        profit=profit,
        percent=profit_percent(profit, trade.initial_amount),
        equity=trade.initial_amount + profit,
    )
