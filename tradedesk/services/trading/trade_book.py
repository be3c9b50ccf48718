from __future__ import annotations

from typing import Callable, Dict, List, Optional, Tuple

from tradedesk.models.trade_models import Trade

Listener = Callable[[List[Trade]], None]


class TradeBook:
    """Local projection of the user's active trades.

    Poll and push both call replace(); the whole list is swapped in one
    assignment so readers never see a mix of two snapshots.
    """

    def __init__(self) -> None:
        self._trades: Tuple[Trade, ...] = ()
        self._listeners: List[Listener] = []

    @property
    def trades(self) -> List[Trade]:
        return list(self._trades)

    def get(self, trade_id: str) -> Optional[Trade]:
        for trade in self._trades:
            if trade.id == trade_id:
                return trade
        return None

    def replace(self, trades: List[Trade]) -> None:
        self._trades = tuple(trades)
        for listener in list(self._listeners):
            listener(self.trades)

    def on_change(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _off() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _off

    def totals(self) -> Dict[str, float]:
        invested = sum(t.initial_amount for t in self._trades)
        profit = sum(t.current_profit for t in self._trades)
        return {"count": float(len(self._trades)), "invested": invested, "profit": profit, "equity": invested + profit}

    def __len__(self) -> int:
        return len(self._trades)
