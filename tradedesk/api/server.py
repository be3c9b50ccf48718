# tradedesk/api/server.py
from __future__ import annotations

from typing import Awaitable, Callable, List, Optional, TypeVar

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from tradedesk.api.state import get_state
from tradedesk.models.account_models import BalanceBucket, EngineMode
from tradedesk.models.market_models import MarketType
from tradedesk.models.trade_models import DurationType, OpenTradeRequest, TradeType
from tradedesk.services.errors import run_user_action
from tradedesk.services.market import catalog
from tradedesk.services.market.display_chart import chart_header, display_candles, forex_display_series
from tradedesk.services.monitoring.metrics_store import read_metrics

T = TypeVar("T")

_STATUS_BY_KIND = {"validation": 400, "rejected": 409, "error": 500}


class OpenTradePayload(BaseModel):
    trade_type: TradeType
    amount: float
    trading_pair: str
    market_type: MarketType = MarketType.CRYPTO
    balance_source: BalanceBucket
    purchased_signal_id: Optional[str] = None
    asset_id: Optional[str] = None
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    duration_type: DurationType = DurationType.UNLIMITED


class SwapPayload(BaseModel):
    from_balance: str
    to_balance: str
    amount: float


class PurchasePayload(BaseModel):
    balance_source: str = Field(default=BalanceBucket.USDT.value)


class BalanceAdjustPayload(BaseModel):
    user_id: str
    balance_type: str
    action: str
    amount: float
    reason: str


class EnginePayload(BaseModel):
    mode: EngineMode
    user_id: Optional[str] = None


async def _act(action: str, fn: Callable[[], Awaitable[T]]) -> T:
    notice = await run_user_action(action, fn)
    if not notice.ok:
        raise HTTPException(status_code=_STATUS_BY_KIND.get(notice.kind, 500), detail=notice.message)
    return notice.value  # type: ignore[return-value]


def create_app(cors_origins: Optional[List[str]] = None) -> FastAPI:
    app = FastAPI(title="TradeDesk API", version="0.1.0")

    # CORS (dashboard frontend)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["http://localhost:5173", "http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    def health():
        return {"ok": True}

    @app.get("/metrics")
    def metrics():
        return get_state().metrics.as_dict()

    @app.get("/monitor")
    def monitor():
        # written by the monitor process
        return read_metrics()

    @app.get("/balances")
    async def balances():
        s = get_state()
        snapshot = await _act("fetch_balances", s.account.refresh)
        if snapshot is None:
            raise HTTPException(status_code=404, detail="Profile not found")
        return snapshot.as_dict()

    @app.get("/trades")
    async def trades():
        s = get_state()
        active = await _act("sync_trades", s.trades.sync_profits)
        return {"trades": [t.as_dict() for t in active], "totals": s.trades.book.totals()}

    @app.get("/trades/history")
    async def trade_history(limit: int = 50):
        s = get_state()
        history = await _act("trade_history", lambda: s.trades.trade_history(limit=limit))
        return [t.as_dict() for t in history]

    @app.post("/trades")
    async def open_trade(payload: OpenTradePayload):
        s = get_state()
        request = OpenTradeRequest(
            trade_type=payload.trade_type,
            amount=payload.amount,
            trading_pair=payload.trading_pair,
            market_type=payload.market_type.value,
            balance_source=payload.balance_source.value,
            purchased_signal_id=payload.purchased_signal_id,
            asset_id=payload.asset_id,
            stop_loss=payload.stop_loss,
            take_profit=payload.take_profit,
            duration_type=payload.duration_type,
        )
        result = await _act("open_trade", lambda: s.trades.open_trade(request))
        return {"trade_id": result.trade_id, "engine": result.engine, "entry_price": result.entry_price}

    @app.post("/trades/stop-all")
    async def stop_all():
        s = get_state()
        result = await _act("stop_all_trades", s.trades.stop_all)
        return {
            "message": result.message,
            "trades_stopped": result.trades_stopped,
            "total_profit": result.total_profit,
        }

    @app.post("/trades/{trade_id}/stop")
    async def stop_trade(trade_id: str):
        s = get_state()
        detail = await _act("stop_trade", lambda: s.trades.close_trade(trade_id))
        return {"trade_id": detail.trade_id, "profit": detail.profit, "description": detail.description()}

    @app.get("/transactions")
    async def transactions(limit: int = 50):
        s = get_state()
        rows = await _act("list_transactions", lambda: s.account.transactions(limit=limit))
        return [
            {"id": t.id, "type": t.type, "amount": t.amount, "description": t.description,
             "created_at": t.created_at.isoformat() if t.created_at else None}
            for t in rows
        ]

    @app.post("/swap")
    async def swap(payload: SwapPayload):
        s = get_state()
        balances = await _act(
            "swap_balances", lambda: s.account.swap(payload.from_balance, payload.to_balance, payload.amount)
        )
        return balances.as_dict()

    @app.get("/signals")
    async def signals():
        s = get_state()
        rows = await _act("list_signals", s.account.list_signals)
        return [
            {"id": sig.id, "name": sig.name, "price": sig.price, "profit_multiplier": sig.profit_multiplier, "description": sig.description}
            for sig in rows
        ]

    @app.get("/signals/purchased")
    async def purchased_signals():
        s = get_state()
        rows = await _act("purchased_signals", s.account.purchased_signals)
        return [
            {"id": p.id, "signal_id": p.signal_id, "signal_name": p.signal_name, "profit_multiplier": p.profit_multiplier, "price_paid": p.price_paid}
            for p in rows
        ]

    @app.post("/signals/{signal_id}/purchase")
    async def purchase_signal(signal_id: str, payload: Optional[PurchasePayload] = None):
        s = get_state()
        source = (payload or PurchasePayload()).balance_source
        result = await _act("purchase_signal", lambda: s.account.purchase_signal(signal_id, source))
        data = result.data or {}
        return {"signal_name": data.get("signal_name"), "amount_paid": data.get("amount_paid")}

    @app.get("/prices/{base}/{quote}")
    async def price(base: str, quote: str, market_type: MarketType = MarketType.CRYPTO):
        s = get_state()
        pair = f"{base.upper()}/{quote.upper()}"
        value = await s.prices.get_price(pair, market_type.value)
        return {"pair": pair, "price": value, "source": s.prices.data_source(pair, market_type.value)}

    @app.get("/candles/{base}/{quote}")
    async def candles(base: str, quote: str, timeframe: str = "15", market_type: MarketType = MarketType.CRYPTO):
        s = get_state()
        pair = f"{base.upper()}/{quote.upper()}"
        if timeframe not in catalog.TIMEFRAME_INTERVAL_SEC:
            raise HTTPException(status_code=400, detail=f"Unsupported timeframe: {timeframe}")
        series = await s.candles.get_candles(pair, timeframe, market_type.value)
        engine = EngineMode.GENERAL
        if s.trades.user_id:
            engine = await s.engines.resolve(s.trades.user_id)
        if market_type is MarketType.FOREX and series:
            shown = forex_display_series(series[-1].close, series[-1].time, catalog.interval_sec(timeframe), engine)
        else:
            shown = display_candles(series, engine)
        header = chart_header(shown)
        return {
            "pair": pair,
            "timeframe": timeframe,
            "engine": engine.value,
            "candles": [c.as_dict() for c in series],
            "display": [c.as_dict() for c in shown],
            "header": header.__dict__ if header else None,
        }

    # the signed-in user acts as the admin; the backend checks the role
    @app.post("/admin/balances/adjust")
    async def admin_adjust_balance(payload: BalanceAdjustPayload):
        s = get_state()
        result = await _act(
            "admin_adjust_balance",
            lambda: s.admin.adjust_balance(
                payload.user_id, payload.balance_type, payload.action, payload.amount, payload.reason
            ),
        )
        return {"message": result.message}

    @app.post("/admin/engine")
    async def admin_set_engine(payload: EnginePayload):
        s = get_state()
        await _act("set_engine_mode", lambda: s.admin.set_engine_mode(payload.mode, payload.user_id))
        return {"mode": payload.mode.value, "user_id": payload.user_id}

    return app

