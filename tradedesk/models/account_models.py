"""Account domain models: balances, signals, engine mode, ledger rows."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from tradedesk.infrastructure.utils.timeutils import parse_timestamp


class BalanceBucket(str, Enum):
    BTC = "btc_balance"
    ETH = "eth_balance"
    USDT = "usdt_balance"
    INTEREST = "interest_earned"
    COMMISSIONS = "commissions"

    @property
    def label(self) -> str:
        return _BUCKET_LABELS[self]

    @classmethod
    def parse(cls, value: Any) -> "BalanceBucket":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value))
        except ValueError:
            raise ValueError(f"unknown balance bucket: {value!r}") from None


_BUCKET_LABELS = {
    BalanceBucket.BTC: "BTC Balance",
    BalanceBucket.ETH: "ETH Balance",
    BalanceBucket.USDT: "USDT Balance",
    BalanceBucket.INTEREST: "Interest Earned",
    BalanceBucket.COMMISSIONS: "Commissions",
}


def _num(row: Dict[str, Any], key: str) -> float:
    value = row.get(key)
    return float(value) if value is not None else 0.0


@dataclass(frozen=True)
class BalanceSet:
    btc_balance: float = 0.0
    eth_balance: float = 0.0
    usdt_balance: float = 0.0
    interest_earned: float = 0.0
    commissions: float = 0.0
    net_balance: float = 0.0
    base_balance: float = 0.0
    total_invested: float = 0.0

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "BalanceSet":
        return cls(
            btc_balance=_num(row, "btc_balance"),
            eth_balance=_num(row, "eth_balance"),
            usdt_balance=_num(row, "usdt_balance"),
            interest_earned=_num(row, "interest_earned"),
            commissions=_num(row, "commissions"),
            net_balance=_num(row, "net_balance"),
            base_balance=_num(row, "base_balance"),
            total_invested=_num(row, "total_invested"),
        )

    def get(self, bucket: BalanceBucket) -> float:
        return float(getattr(self, BalanceBucket.parse(bucket).value))

    def aggregate(self) -> float:
        """Sum of the five buckets; equals net_balance for a consistent row."""
        return self.btc_balance + self.eth_balance + self.usdt_balance + self.interest_earned + self.commissions

    def as_dict(self) -> Dict[str, float]:
        return {
            "btc_balance": self.btc_balance,
            "eth_balance": self.eth_balance,
            "usdt_balance": self.usdt_balance,
            "interest_earned": self.interest_earned,
            "commissions": self.commissions,
            "net_balance": self.net_balance,
            "base_balance": self.base_balance,
            "total_invested": self.total_invested,
        }


class EngineMode(str, Enum):
    DEFAULT = "default"
    RISING = "rising"
    GENERAL = "general"


GLOBAL_ENGINE_KEY = "global_trading_engine"


def _as_mode(value: Any) -> Optional[EngineMode]:
    if value is None:
        return None
    try:
        return EngineMode(str(value).strip().strip('"').lower())
    except ValueError:
        return None


def resolve_engine_mode(user_override: Any, global_setting: Any) -> EngineMode:
    """Per-user override (anything but `default`), then the global setting, then `rising`."""
    override = _as_mode(user_override)
    if override is not None and override is not EngineMode.DEFAULT:
        return override
    global_mode = _as_mode(global_setting)
    if global_mode is not None and global_mode is not EngineMode.DEFAULT:
        return global_mode
    return EngineMode.RISING


class TransactionType(str, Enum):
    TRADE_PROFIT = "trade_profit"
    TRADE_LOSS = "trade_loss"
    TRADE_LIQUIDATION = "trade_liquidation"
    SIGNAL_PURCHASE = "signal_purchase"
    SWAP = "swap"
    ADMIN_ADJUSTMENT = "admin_adjustment"


@dataclass(frozen=True)
class Signal:
    id: str
    name: str
    price: float
    profit_multiplier: float = 1.0
    description: str = ""

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Signal":
        return cls(
            id=str(row["id"]),
            name=str(row.get("name") or ""),
            price=_num(row, "price"),
            profit_multiplier=float(row.get("profit_multiplier") or 1.0),
            description=str(row.get("description") or ""),
        )


@dataclass(frozen=True)
class PurchasedSignal:
    id: str
    signal_id: str
    status: str
    price_paid: float = 0.0
    purchased_at: Optional[datetime] = None
    signal_name: str = ""
    profit_multiplier: float = 1.0

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    @classmethod
    def from_row(cls, row: Dict[str, Any], signal: Optional[Signal] = None) -> "PurchasedSignal":
        return cls(
            id=str(row["id"]),
            signal_id=str(row.get("signal_id") or ""),
            status=str(row.get("status") or "active"),
            price_paid=_num(row, "price_paid"),
            purchased_at=parse_timestamp(row.get("purchased_at")),
            signal_name=signal.name if signal else "",
            profit_multiplier=signal.profit_multiplier if signal else 1.0,
        )


@dataclass(frozen=True)
class Transaction:
    id: str
    user_id: str
    type: str
    amount: float
    description: str = ""
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Transaction":
        return cls(
            id=str(row["id"]),
            user_id=str(row.get("user_id") or ""),
            type=str(row.get("type") or ""),
            amount=_num(row, "amount"),
            description=str(row.get("description") or ""),
            created_at=parse_timestamp(row.get("created_at")),
        )


@dataclass(frozen=True)
class OperationResult:
    """Generic `{success, error, message}` RPC reply."""

    success: bool
    error: Optional[str] = None
    message: Optional[str] = None
    data: Optional[Dict[str, Any]] = None

    @classmethod
    def from_payload(cls, payload: Any) -> "OperationResult":
        data = payload if isinstance(payload, dict) else {}
        return cls(
            success=bool(data.get("success")),
            error=data.get("error"),
            message=data.get("message"),
            data=data,
        )
