"""In-memory metrics snapshot for the API + console."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from tradedesk.models.account_models import BalanceSet
from tradedesk.models.trade_models import Trade


@dataclass
class MetricsSnapshot:
    backend: str = ""
    user_id: Optional[str] = None
    net_balance: Optional[float] = None
    balance_updates: int = 0
    active_trades: int = 0
    open_profit: float = 0.0
    trade_syncs: int = 0

    def on_balances(self, balances: BalanceSet) -> None:
        self.net_balance = balances.net_balance
        self.balance_updates += 1

    def on_trades(self, trades: List[Trade]) -> None:
        self.active_trades = len(trades)
        self.open_profit = sum(t.current_profit for t in trades)
        self.trade_syncs += 1

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)
