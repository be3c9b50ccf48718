from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from tradedesk.infrastructure.utils.timeutils import parse_timestamp

# Sent in place of signal references when a trade is opened without a signal.
NULL_UUID = "00000000-0000-0000-0000-000000000000"


class TradeType(str, Enum):
    BUY = "buy"
    SELL = "sell"


def position_size(amount: float, entry_price: float) -> float:
    if not entry_price or entry_price <= 0:
        return 0.0
    return amount / entry_price


def market_profit(
    trade_type: Union[TradeType, str],
    amount: float,
    entry_price: Optional[float],
    current_price: Optional[float],
) -> float:
    """Signed P/L of a position of `amount` quote units opened at `entry_price`."""
    if entry_price is None or current_price is None or entry_price <= 0:
        return 0.0
    size = position_size(amount, entry_price)
    if TradeType(str(getattr(trade_type, "value", trade_type)).lower()) is TradeType.BUY:
        return (current_price - entry_price) * size
    return (entry_price - current_price) * size


def profit_percent(profit: float, amount: float) -> float:
    if not amount:
        return 0.0
    return round(profit / amount * 100, 2)


def price_change_percent(entry_price: Optional[float], current_price: Optional[float]) -> float:
    if not entry_price or current_price is None:
        return 0.0
    return (current_price - entry_price) / entry_price * 100


class TradeStatus(str, Enum):
    ACTIVE = "active"
    STOPPED = "stopped"
    LIQUIDATED = "liquidated"

    @property
    def is_terminal(self) -> bool:
        return self is not TradeStatus.ACTIVE


class DurationType(str, Enum):
    ONE_HOUR = "1h"
    SIX_HOURS = "6h"
    ONE_DAY = "24h"
    SEVEN_DAYS = "7d"
    UNLIMITED = "unlimited"

    @property
    def lifetime(self) -> Optional[timedelta]:
        return _DURATION_LIFETIMES.get(self)

    def expires_at(self, started_at: datetime) -> Optional[datetime]:
        lifetime = self.lifetime
        return started_at + lifetime if lifetime is not None else None


_DURATION_LIFETIMES = {
    DurationType.ONE_HOUR: timedelta(hours=1),
    DurationType.SIX_HOURS: timedelta(hours=6),
    DurationType.ONE_DAY: timedelta(hours=24),
    DurationType.SEVEN_DAYS: timedelta(days=7),
}


def _opt_float(value: Any) -> Optional[float]:
    return float(value) if value is not None else None


@dataclass
class Trade:
    id: str
    user_id: str
    trade_type: TradeType
    initial_amount: float
    profit_multiplier: float
    entry_price: Optional[float]
    trading_pair: Optional[str]
    market_type: Optional[str]
    status: TradeStatus = TradeStatus.ACTIVE
    current_price: Optional[float] = None
    current_profit: float = 0.0
    balance_source: Optional[str] = None
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    duration_type: DurationType = DurationType.UNLIMITED
    expires_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    last_updated: Optional[datetime] = None
    signal_id: Optional[str] = None
    purchased_signal_id: Optional[str] = None
    signal_name: str = ""   # display only, merged from signals

    @property
    def profit_percent(self) -> float:
        return profit_percent(self.current_profit, self.initial_amount)

    @property
    def equity(self) -> float:
        return self.initial_amount + self.current_profit

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Trade":
        return cls(
            id=str(row["id"]),
            user_id=str(row.get("user_id") or ""),
            trade_type=TradeType(str(row.get("trade_type") or "buy").lower()),
            initial_amount=float(row.get("initial_amount") or 0),
            profit_multiplier=float(row.get("profit_multiplier") or 1.0),
            entry_price=_opt_float(row.get("entry_price")),
            trading_pair=row.get("trading_pair"),
            market_type=row.get("market_type"),
            status=TradeStatus(row.get("status") or "active"),
            current_price=_opt_float(row.get("current_price")),
            current_profit=float(row.get("current_profit") or 0),
            balance_source=row.get("balance_source"),
            stop_loss=_opt_float(row.get("stop_loss")),
            take_profit=_opt_float(row.get("take_profit")),
            duration_type=DurationType(row.get("duration_type") or "unlimited"),
            expires_at=parse_timestamp(row.get("expires_at")),
            started_at=parse_timestamp(row.get("started_at")),
            last_updated=parse_timestamp(row.get("last_updated")),
            signal_id=row.get("signal_id"),
            purchased_signal_id=row.get("purchased_signal_id"),
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "trade_type": self.trade_type.value,
            "trading_pair": self.trading_pair,
            "market_type": self.market_type,
            "status": self.status.value,
            "initial_amount": self.initial_amount,
            "profit_multiplier": self.profit_multiplier,
            "entry_price": self.entry_price,
            "current_price": self.current_price,
            "current_profit": self.current_profit,
            "profit_percent": f"{self.profit_percent:.2f}",
            "equity": self.equity,
            "balance_source": self.balance_source,
            "stop_loss": self.stop_loss,
            "take_profit": self.take_profit,
            "duration_type": self.duration_type.value,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "signal_name": self.signal_name,
        }


@dataclass(frozen=True)
class OpenTradeRequest:
    trade_type: TradeType
    amount: float
    trading_pair: str
    market_type: str
    balance_source: str
    purchased_signal_id: Optional[str] = None
    asset_id: Optional[str] = None
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    duration_type: DurationType = DurationType.UNLIMITED


@dataclass(frozen=True)
class StartTradeResult:
    success: bool
    error: Optional[str] = None
    trade_id: Optional[str] = None
    engine: Optional[str] = None
    entry_price: Optional[float] = None

    @classmethod
    def from_payload(cls, payload: Any) -> "StartTradeResult":
        data = payload if isinstance(payload, dict) else {}
        return cls(
            success=bool(data.get("success")),
            error=data.get("error"),
            trade_id=data.get("trade_id"),
            engine=data.get("engine"),
        )


@dataclass(frozen=True)
class StoppedTrade:
    trade_id: str
    trading_pair: Optional[str]
    trade_type: str
    initial_amount: float
    profit: float
    balance_source: Optional[str] = None

    @property
    def transaction_type(self) -> str:
        return "trade_profit" if self.profit >= 0 else "trade_loss"

    def description(self) -> str:
        pair = self.trading_pair or "market"
        return f"Trade stopped: {self.trade_type.upper()} {pair} - Profit: ${self.profit:.2f}"

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "StoppedTrade":
        return cls(
            trade_id=str(payload.get("trade_id") or payload.get("id")),
            trading_pair=payload.get("trading_pair"),
            trade_type=str(payload.get("trade_type") or "buy"),
            initial_amount=float(payload.get("initial_amount") or 0),
            profit=float(payload.get("profit") or 0),
            balance_source=payload.get("balance_source"),
        )


@dataclass(frozen=True)
class StopAllResult:
    success: bool
    message: str = ""
    trades_stopped: int = 0
    total_profit: float = 0.0
    trade_details: List[StoppedTrade] = field(default_factory=list)
    error: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Any) -> "StopAllResult":
        data = payload if isinstance(payload, dict) else {}
        return cls(
            success=bool(data.get("success")),
            message=str(data.get("message") or ""),
            trades_stopped=int(data.get("trades_stopped") or 0),
            total_profit=float(data.get("total_profit") or 0),
            trade_details=[StoppedTrade.from_payload(d) for d in data.get("trade_details") or []],
            error=data.get("error"),
        )
