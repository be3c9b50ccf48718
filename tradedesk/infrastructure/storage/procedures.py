"""Reference settlement procedures for the local SQLite backend.

Each procedure runs inside one SQLite transaction opened by SQLiteBackend,
validates before it mutates, and returns the same `{success, error, ...}`
payloads the hosted RPCs return. Row changes are recorded on the context
and published to subscribers after commit.
"""

from __future__ import annotations

import json
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from tradedesk.infrastructure.backend.base import ChangeEvent, JsonDict
from tradedesk.infrastructure.logging.logging import get_logger
from tradedesk.infrastructure.utils.timeutils import parse_timestamp
from tradedesk.models.account_models import GLOBAL_ENGINE_KEY, BalanceBucket, EngineMode, TransactionType, resolve_engine_mode
from tradedesk.models.market_models import asset_symbol
from tradedesk.models.trade_models import (
    NULL_UUID,
    DurationType,
    TradeStatus,
    TradeType,
    market_profit,
    price_change_percent,
)

log = get_logger("procedures")

BUCKETS = [b.value for b in BalanceBucket]
DAILY_INTEREST_KEY = "daily_interest_rate"


class Rejected(Exception):
    """Business rule violation; becomes `{success: false, error}`."""


@dataclass
class ProcedureContext:
    conn: sqlite3.Connection
    now: datetime
    changes: List[ChangeEvent] = field(default_factory=list)

    @property
    def now_iso(self) -> str:
        return self.now.isoformat()

    def fetch_one(self, sql: str, params: tuple = ()) -> Optional[JsonDict]:
        row = self.conn.execute(sql, params).fetchone()
        return dict(row) if row else None

    def fetch_all(self, sql: str, params: tuple = ()) -> List[JsonDict]:
        return [dict(r) for r in self.conn.execute(sql, params).fetchall()]

    def insert_row(self, table: str, values: JsonDict) -> JsonDict:
        cols = ", ".join(values.keys())
        marks = ", ".join("?" for _ in values)
        self.conn.execute(f"INSERT INTO {table}({cols}) VALUES({marks})", tuple(values.values()))
        row = self.fetch_one(f"SELECT * FROM {table} WHERE id = ?", (values["id"],)) or dict(values)
        self.changes.append(ChangeEvent(table=table, event_type="INSERT", new=row))
        return row

    def update_row(self, table: str, row_id: str, values: JsonDict) -> JsonDict:
        old = self.fetch_one(f"SELECT * FROM {table} WHERE id = ?", (row_id,)) or {}
        assignments = ", ".join(f"{col} = ?" for col in values)
        self.conn.execute(f"UPDATE {table} SET {assignments} WHERE id = ?", (*values.values(), row_id))
        new = self.fetch_one(f"SELECT * FROM {table} WHERE id = ?", (row_id,)) or {}
        self.changes.append(ChangeEvent(table=table, event_type="UPDATE", new=new, old=old))
        return new

    def setting(self, key: str) -> Any:
        row = self.fetch_one("SELECT value FROM admin_settings WHERE key = ?", (key,))
        if not row or row["value"] is None:
            return None
        try:
            return json.loads(row["value"])
        except (TypeError, ValueError):
            return row["value"]


# ---------- helpers ----------

def _nullable_ref(value: Any) -> Optional[str]:
    if value in (None, "", NULL_UUID):
        return None
    return str(value)


def _amount(value: Any) -> float:
    try:
        amount = float(value)
    except (TypeError, ValueError):
        raise Rejected("Invalid amount") from None
    if not amount > 0:
        raise Rejected("Amount must be greater than zero")
    return amount


def _bucket(value: Any) -> str:
    if value not in BUCKETS:
        raise Rejected("Invalid balance source")
    return str(value)


def _profile(ctx: ProcedureContext, user_id: Any) -> JsonDict:
    profile = ctx.fetch_one("SELECT * FROM profiles WHERE id = ?", (str(user_id),))
    if profile is None:
        raise Rejected("User not found")
    return profile


def _apply_balances(ctx: ProcedureContext, profile: JsonDict, deltas: Dict[str, float], **extra: Any) -> JsonDict:
    values: JsonDict = {}
    for bucket in BUCKETS:
        values[bucket] = float(profile.get(bucket) or 0) + deltas.get(bucket, 0.0)
    values["net_balance"] = sum(values[b] for b in BUCKETS)
    values["updated_at"] = ctx.now_iso
    values.update(extra)
    return ctx.update_row("profiles", profile["id"], values)


def _record_transaction(ctx: ProcedureContext, user_id: str, type_: TransactionType, amount: float, description: str) -> JsonDict:
    return ctx.insert_row(
        "transactions",
        {
            "id": str(uuid.uuid4()),
            "user_id": user_id,
            "type": type_.value,
            "amount": amount,
            "description": description,
            "created_at": ctx.now_iso,
        },
    )


def _asset_price(ctx: ProcedureContext, trading_pair: Optional[str], market_type: Optional[str]) -> Optional[float]:
    if not trading_pair:
        return None
    row = ctx.fetch_one(
        "SELECT current_price FROM tradeable_assets WHERE symbol = ?",
        (asset_symbol(trading_pair, market_type or "crypto"),),
    )
    if not row or row["current_price"] is None:
        return None
    return float(row["current_price"])


def _engine_for(ctx: ProcedureContext, user_id: str) -> EngineMode:
    override = ctx.fetch_one("SELECT engine_type FROM user_trading_engines WHERE user_id = ?", (user_id,))
    return resolve_engine_mode(override["engine_type"] if override else None, ctx.setting(GLOBAL_ENGINE_KEY))


def _settle(ctx: ProcedureContext, trade: JsonDict, status: TradeStatus) -> JsonDict:
    """Close `trade` and credit stake plus profit (never below zero) back to its bucket."""
    profit = float(trade.get("current_profit") or 0)
    amount = float(trade["initial_amount"])
    credit = max(0.0, amount + profit)
    bucket = trade.get("balance_source") if trade.get("balance_source") in BUCKETS else BalanceBucket.USDT.value
    profile = _profile(ctx, trade["user_id"])
    _apply_balances(
        ctx,
        profile,
        {bucket: credit},
        total_invested=max(0.0, float(profile.get("total_invested") or 0) - amount),
    )
    ctx.update_row("trades", trade["id"], {"status": status.value, "closed_at": ctx.now_iso, "last_updated": ctx.now_iso})
    return {
        "trade_id": trade["id"],
        "trading_pair": trade.get("trading_pair"),
        "trade_type": trade.get("trade_type"),
        "initial_amount": amount,
        "profit": profit,
        "balance_source": bucket,
    }


def _liquidation_reason(trade: JsonDict, price: Optional[float], now: datetime) -> Optional[str]:
    is_buy = trade["trade_type"] == TradeType.BUY.value
    stop_loss = trade.get("stop_loss")
    take_profit = trade.get("take_profit")
    if price is not None and stop_loss is not None:
        if (is_buy and price <= stop_loss) or (not is_buy and price >= stop_loss):
            return "stop_loss"
    if price is not None and take_profit is not None:
        if (is_buy and price >= take_profit) or (not is_buy and price <= take_profit):
            return "take_profit"
    expires_at = parse_timestamp(trade.get("expires_at"))
    if expires_at is not None and now >= expires_at:
        return "expired"
    return None


def _liquidate_due(ctx: ProcedureContext, user_id: Optional[str]) -> List[JsonDict]:
    liquidated: List[JsonDict] = []
    for trade in _active_trades(ctx, user_id):
        reason = _liquidation_reason(trade, trade.get("current_price"), ctx.now)
        if reason is None:
            continue
        detail = _settle(ctx, trade, TradeStatus.LIQUIDATED)
        _record_transaction(
            ctx,
            trade["user_id"],
            TransactionType.TRADE_LIQUIDATION,
            detail["profit"],
            f"Trade liquidated ({reason}): {str(trade['trade_type']).upper()} {trade.get('trading_pair') or 'market'}"
            f" - Profit: ${detail['profit']:.2f}",
        )
        log.info("trade_liquidated", trade_id=trade["id"], reason=reason, profit=detail["profit"])
        liquidated.append({**detail, "reason": reason})
    return liquidated


def _active_trades(ctx: ProcedureContext, user_id: Optional[str]) -> List[JsonDict]:
    if user_id:
        return ctx.fetch_all(
            "SELECT * FROM trades WHERE status = 'active' AND user_id = ? ORDER BY started_at", (user_id,)
        )
    return ctx.fetch_all("SELECT * FROM trades WHERE status = 'active' ORDER BY started_at")


# ---------- procedures ----------

def start_trade_validated(ctx: ProcedureContext, params: JsonDict) -> JsonDict:
    user_id = str(params.get("p_user_id") or "")
    profile = _profile(ctx, user_id)
    if profile.get("is_frozen"):
        raise Rejected("Account is frozen")

    trade_type = str(params.get("p_trade_type") or "").lower()
    if trade_type not in (TradeType.BUY.value, TradeType.SELL.value):
        raise Rejected("Invalid trade type")
    amount = _amount(params.get("p_initial_amount"))
    bucket = _bucket(params.get("p_balance_source"))

    try:
        duration = DurationType(params.get("p_duration_type") or DurationType.UNLIMITED.value)
    except ValueError:
        raise Rejected("Invalid duration") from None

    engine = _engine_for(ctx, user_id)
    purchased_signal_id = _nullable_ref(params.get("p_purchased_signal_id"))
    signal_id = _nullable_ref(params.get("p_signal_id"))
    if engine is EngineMode.RISING:
        purchase = None
        if purchased_signal_id:
            purchase = ctx.fetch_one(
                "SELECT * FROM purchased_signals WHERE id = ? AND user_id = ? AND status = 'active'",
                (purchased_signal_id, user_id),
            )
        if purchase is None:
            raise Rejected("A valid purchased signal is required to trade")
        signal_id = signal_id or purchase["signal_id"]
    else:
        signal_id = purchased_signal_id = None

    if float(profile.get(bucket) or 0) < amount:
        raise Rejected("Insufficient balance")

    trading_pair = params.get("p_trading_pair")
    market_type = params.get("p_market_type") or "crypto"
    entry_price = params.get("p_entry_price")
    if entry_price is None or float(entry_price) <= 0:
        entry_price = _asset_price(ctx, trading_pair, market_type)
    if entry_price is None or float(entry_price) <= 0:
        raise Rejected("Entry price unavailable")
    multiplier = float(params.get("p_profit_multiplier") or 1.0)
    if engine is not EngineMode.RISING or multiplier <= 0:
        multiplier = 1.0

    _apply_balances(
        ctx,
        profile,
        {bucket: -amount},
        total_invested=float(profile.get("total_invested") or 0) + amount,
    )
    trade_id = str(uuid.uuid4())
    expires_at = duration.expires_at(ctx.now)
    ctx.insert_row(
        "trades",
        {
            "id": trade_id,
            "user_id": user_id,
            "signal_id": signal_id,
            "purchased_signal_id": purchased_signal_id,
            "asset_id": _nullable_ref(params.get("p_asset_id")),
            "trade_type": trade_type,
            "initial_amount": amount,
            "profit_multiplier": multiplier,
            "entry_price": float(entry_price),
            "current_price": float(entry_price),
            "current_profit": 0.0,
            "price_change_percent": 0.0,
            "trading_pair": trading_pair,
            "market_type": market_type,
            "balance_source": bucket,
            "stop_loss": params.get("p_stop_loss"),
            "take_profit": params.get("p_take_profit"),
            "duration_type": duration.value,
            "expires_at": expires_at.isoformat() if expires_at else None,
            "engine_type": engine.value,
            "status": TradeStatus.ACTIVE.value,
            "started_at": ctx.now_iso,
            "last_updated": ctx.now_iso,
        },
    )
    return {"success": True, "trade_id": trade_id, "engine": engine.value}


def sync_trading_profits(ctx: ProcedureContext, params: JsonDict) -> JsonDict:
    user_id = _nullable_ref(params.get("p_user_id"))
    updated = 0
    for trade in _active_trades(ctx, user_id):
        price = _asset_price(ctx, trade.get("trading_pair"), trade.get("market_type"))
        if price is None:
            continue
        raw = market_profit(trade["trade_type"], float(trade["initial_amount"]), trade.get("entry_price"), price)
        scaled = raw * float(trade.get("profit_multiplier") or 1.0)
        if trade.get("engine_type") == EngineMode.RISING.value:
            profit = max(float(trade.get("current_profit") or 0), scaled, 0.0)
        else:
            profit = scaled
        ctx.update_row(
            "trades",
            trade["id"],
            {
                "current_price": price,
                "current_profit": profit,
                "price_change_percent": price_change_percent(trade.get("entry_price"), price),
                "last_updated": ctx.now_iso,
            },
        )
        updated += 1
    liquidated = _liquidate_due(ctx, user_id)
    return {"success": True, "trades_updated": updated, "trades_liquidated": len(liquidated)}


def check_and_liquidate_trades(ctx: ProcedureContext, params: JsonDict) -> JsonDict:
    liquidated = _liquidate_due(ctx, _nullable_ref(params.get("p_user_id")))
    return {"success": True, "trades_liquidated": len(liquidated), "trade_details": liquidated}


def stop_single_trade(ctx: ProcedureContext, params: JsonDict) -> JsonDict:
    trade = ctx.fetch_one(
        "SELECT * FROM trades WHERE id = ? AND user_id = ?",
        (str(params.get("p_trade_id") or ""), str(params.get("p_user_id") or "")),
    )
    if trade is None:
        raise Rejected("Trade not found")
    if trade["status"] != TradeStatus.ACTIVE.value:
        raise Rejected("Trade is not active")
    detail = _settle(ctx, trade, TradeStatus.STOPPED)
    return {"success": True, **detail}


def stop_all_user_trades(ctx: ProcedureContext, params: JsonDict) -> JsonDict:
    user_id = str(params.get("p_user_id") or "")
    _profile(ctx, user_id)
    details = [_settle(ctx, trade, TradeStatus.STOPPED) for trade in _active_trades(ctx, user_id)]
    if not details:
        return {"success": True, "message": "No active trades to stop", "trades_stopped": 0, "total_profit": 0.0, "trade_details": []}
    total = sum(d["profit"] for d in details)
    return {
        "success": True,
        "message": f"Stopped {len(details)} trade(s)",
        "trades_stopped": len(details),
        "total_profit": total,
        "trade_details": details,
    }


def swap_balances(ctx: ProcedureContext, params: JsonDict) -> JsonDict:
    profile = _profile(ctx, params.get("p_user_id"))
    source = _bucket(params.get("p_from_balance"))
    target = _bucket(params.get("p_to_balance"))
    if source == target:
        raise Rejected("Cannot swap a balance into itself")
    amount = _amount(params.get("p_amount"))
    if float(profile.get(source) or 0) < amount:
        raise Rejected("Insufficient balance")
    _apply_balances(ctx, profile, {source: -amount, target: amount})
    _record_transaction(
        ctx,
        profile["id"],
        TransactionType.SWAP,
        amount,
        f"Swapped ${amount:.2f} from {BalanceBucket(source).label} to {BalanceBucket(target).label}",
    )
    return {"success": True}


def purchase_signal(ctx: ProcedureContext, params: JsonDict) -> JsonDict:
    profile = _profile(ctx, params.get("p_user_id"))
    signal = ctx.fetch_one("SELECT * FROM signals WHERE id = ?", (str(params.get("p_signal_id") or ""),))
    if signal is None:
        raise Rejected("Signal not found")
    bucket = _bucket(params.get("p_balance_source") or BalanceBucket.USDT.value)
    price = float(signal.get("price") or 0)
    if float(profile.get(bucket) or 0) < price:
        raise Rejected("Insufficient balance")
    _apply_balances(ctx, profile, {bucket: -price})
    ctx.insert_row(
        "purchased_signals",
        {
            "id": str(uuid.uuid4()),
            "user_id": profile["id"],
            "signal_id": signal["id"],
            "status": "active",
            "price_paid": price,
            "purchased_at": ctx.now_iso,
        },
    )
    _record_transaction(ctx, profile["id"], TransactionType.SIGNAL_PURCHASE, -price, f"Purchased signal: {signal['name']}")
    return {"success": True, "signal_name": signal["name"], "amount_paid": price}


def admin_adjust_user_balance(ctx: ProcedureContext, params: JsonDict) -> JsonDict:
    admin = _profile(ctx, params.get("p_admin_id"))
    if admin.get("role") != "admin":
        raise Rejected("Unauthorized: admin access required")
    profile = _profile(ctx, params.get("p_user_id"))
    bucket = _bucket(params.get("p_balance_type"))
    action = str(params.get("p_action") or "").lower()
    if action not in ("add", "subtract"):
        raise Rejected("Invalid action")
    amount = _amount(params.get("p_amount"))
    reason = str(params.get("p_reason") or "").strip()
    if not reason:
        raise Rejected("A reason is required")
    if action == "subtract" and float(profile.get(bucket) or 0) < amount:
        raise Rejected("Insufficient balance for subtraction")
    signed = amount if action == "add" else -amount
    _apply_balances(ctx, profile, {bucket: signed})
    _record_transaction(ctx, profile["id"], TransactionType.ADMIN_ADJUSTMENT, signed, f"Admin adjustment: {reason}")
    verb = "added to" if action == "add" else "subtracted from"
    return {"success": True, "message": f"${amount:.2f} {verb} {BalanceBucket(bucket).label}"}


def update_live_interest_earned(ctx: ProcedureContext, params: JsonDict) -> JsonDict:
    try:
        rate = float(ctx.setting(DAILY_INTEREST_KEY) or 0)
    except (TypeError, ValueError):
        rate = 0.0
    user_id = _nullable_ref(params.get("p_user_id"))
    if user_id:
        profiles = [_profile(ctx, user_id)]
    else:
        profiles = ctx.fetch_all("SELECT * FROM profiles")
    accrued_total = 0.0
    for profile in profiles:
        last = parse_timestamp(profile.get("interest_updated_at"))
        accrued = 0.0
        if last is not None and rate > 0:
            elapsed_days = max(0.0, (ctx.now - last).total_seconds() / 86400.0)
            accrued = float(profile.get("base_balance") or 0) * rate * elapsed_days
        if accrued > 0:
            _apply_balances(ctx, profile, {BalanceBucket.INTEREST.value: accrued}, interest_updated_at=ctx.now_iso)
            accrued_total += accrued
        else:
            ctx.conn.execute("UPDATE profiles SET interest_updated_at = ? WHERE id = ?", (ctx.now_iso, profile["id"]))
    return {"success": True, "accrued": accrued_total}


Procedure = Callable[[ProcedureContext, JsonDict], Any]

PROCEDURES: Dict[str, Procedure] = {
    "start_trade_validated": start_trade_validated,
    "sync_trading_profits": sync_trading_profits,
    "check_and_liquidate_trades": check_and_liquidate_trades,
    "update_live_interest_earned": update_live_interest_earned,
    "stop_single_trade": stop_single_trade,
    "stop_all_user_trades": stop_all_user_trades,
    "swap_balances": swap_balances,
    "purchase_signal": purchase_signal,
    "admin_adjust_user_balance": admin_adjust_user_balance,
}
