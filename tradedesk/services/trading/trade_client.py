"""Trade lifecycle as seen from the client.

The backend is authoritative: the client validates what it can locally,
forces a price resync before staking, issues one RPC per money-moving step
and only then refreshes its local projections.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from tradedesk.infrastructure.backend.base import Backend, BackendError, ChangeEvent, Subscription
from tradedesk.infrastructure.logging.logging import get_logger
from tradedesk.infrastructure.utils.timeutils import Clock, SystemClock
from tradedesk.models.account_models import BalanceBucket, EngineMode
from tradedesk.models.market_models import asset_symbol
from tradedesk.models.trade_models import (
    NULL_UUID,
    OpenTradeRequest,
    StartTradeResult,
    StopAllResult,
    StoppedTrade,
    Trade,
)
from tradedesk.services.account.balance_store import SOURCE_FETCH, BalanceEvent, BalanceStore, fetch_balances
from tradedesk.services.errors import OperationRejected, ValidationFailure, rejection_message
from tradedesk.services.monitoring.periodic import PeriodicTask
from tradedesk.services.trading.engine_mode import ENGINE_TABLES, EngineModeResolver
from tradedesk.services.trading.price_sync import PriceSync
from tradedesk.services.trading.trade_book import TradeBook

log = get_logger("trade_client")

START_FAILED = "Failed to start trade"
START_REJECTED = "Unable to process trade"
STOP_FAILED = "Failed to stop trade"
STOP_ALL_FAILED = "Failed to stop trades"


class TradeClient:
    def __init__(
        self,
        backend: Backend,
        user_id: Optional[str],
        price_sync: PriceSync,
        *,
        balances: Optional[BalanceStore] = None,
        book: Optional[TradeBook] = None,
        engine_resolver: Optional[EngineModeResolver] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._backend = backend
        self.user_id = user_id
        self._price_sync = price_sync
        self.balances = balances or BalanceStore()
        self.book = book or TradeBook()
        self._engines = engine_resolver or EngineModeResolver(backend)
        self.engine: Optional[EngineMode] = None
        self._clock = clock or SystemClock()
        self._log = log.bind(user_id=user_id)

    @property
    def backend(self) -> Backend:
        return self._backend

    # ---------- reads ----------

    def _require_user(self) -> str:
        if not self.user_id:
            raise ValidationFailure("Please sign in to trade")
        return self.user_id

    async def _signal_names(self, trades: List[Trade]) -> Dict[str, str]:
        ids = sorted({t.signal_id for t in trades if t.signal_id})
        if not ids:
            return {}
        rows = await self._backend.select("signals", columns="id,name", in_filters={"id": ids})
        return {str(r["id"]): str(r.get("name") or "") for r in rows}

    async def _load(self, filters: Dict[str, Any], *, limit: Optional[int] = None) -> List[Trade]:
        rows = await self._backend.select("trades", filters, order="started_at", descending=True, limit=limit)
        trades = [Trade.from_row(r) for r in rows]
        names = await self._signal_names(trades)
        for trade in trades:
            trade.signal_name = names.get(trade.signal_id or "", "")
        return trades

    async def refresh_trades(self) -> List[Trade]:
        user_id = self._require_user()
        trades = await self._load({"user_id": user_id, "status": "active"})
        self.book.replace(trades)
        return trades

    async def refresh_balances(self) -> None:
        user_id = self._require_user()
        balances = await fetch_balances(self._backend, user_id)
        if balances is not None:
            self.balances.apply(BalanceEvent(source=SOURCE_FETCH, balances=balances, received_at=self._clock.time()))

    async def trade_history(self, limit: int = 50) -> List[Trade]:
        return await self._load({"user_id": self._require_user()}, limit=limit)

    async def refresh_engine(self) -> EngineMode:
        self.engine = await self._engines.resolve(self._require_user())
        return self.engine

    # ---------- open ----------

    async def _validate(self, request: OpenTradeRequest) -> EngineMode:
        self._require_user()
        if not request.balance_source:
            raise ValidationFailure("Please select a balance source")
        try:
            bucket = BalanceBucket.parse(request.balance_source)
        except ValueError:
            raise ValidationFailure("Please select a valid balance source") from None
        if not request.trading_pair:
            raise ValidationFailure("Please select a trading asset")
        if not request.amount or request.amount <= 0:
            raise ValidationFailure("Please enter a valid amount")

        engine = await self.refresh_engine()
        if engine is EngineMode.RISING and not request.purchased_signal_id:
            raise ValidationFailure("Please select a signal to trade with")

        if self.balances.snapshot is None:
            await self.refresh_balances()
        available = self.balances.snapshot.get(bucket) if self.balances.snapshot else 0.0
        if request.amount > available:
            raise ValidationFailure(f"Insufficient {bucket.label}")
        return engine

    async def _signal_refs(self, request: OpenTradeRequest, engine: EngineMode) -> Dict[str, Any]:
        # signals only boost trades under the rising engine
        if engine is not EngineMode.RISING or not request.purchased_signal_id:
            return {"signal_id": NULL_UUID, "purchased_signal_id": NULL_UUID, "multiplier": 1.0}
        purchase = await self._backend.select_one(
            "purchased_signals", {"id": request.purchased_signal_id, "user_id": self.user_id}
        )
        if purchase is None or purchase.get("status") != "active":
            raise ValidationFailure("The selected signal is no longer available")
        signal = await self._backend.select_one("signals", {"id": purchase["signal_id"]})
        multiplier = float((signal or {}).get("profit_multiplier") or 1.0)
        return {"signal_id": str(purchase["signal_id"]), "purchased_signal_id": str(purchase["id"]), "multiplier": multiplier}

    async def _asset_id(self, request: OpenTradeRequest) -> str:
        if request.asset_id:
            return request.asset_id
        row = await self._backend.select_one(
            "tradeable_assets", {"symbol": asset_symbol(request.trading_pair, request.market_type)}, columns="id"
        )
        return str(row["id"]) if row else NULL_UUID

    async def open_trade(self, request: OpenTradeRequest) -> StartTradeResult:
        engine = await self._validate(request)
        refs = await self._signal_refs(request, engine)

        entry_price = await self._price_sync.sync(request.trading_pair, request.market_type, fresh=True)
        params = {
            "p_user_id": self.user_id,
            "p_signal_id": refs["signal_id"],
            "p_purchased_signal_id": refs["purchased_signal_id"],
            "p_trade_type": request.trade_type.value,
            "p_initial_amount": request.amount,
            "p_profit_multiplier": refs["multiplier"],
            "p_asset_id": await self._asset_id(request),
            "p_entry_price": entry_price,
            "p_balance_source": BalanceBucket.parse(request.balance_source).value,
            "p_trading_pair": request.trading_pair,
            "p_market_type": request.market_type,
            "p_stop_loss": request.stop_loss,
            "p_take_profit": request.take_profit,
            "p_duration_type": request.duration_type.value,
        }
        try:
            payload = await self._backend.rpc("start_trade_validated", params)
        except BackendError as e:
            self._log.error("trade_start_failed", pair=request.trading_pair, error=str(e))
            raise OperationRejected(START_FAILED) from e

        result = StartTradeResult.from_payload(payload)
        if not result.success:
            message = rejection_message(payload, START_REJECTED)
            self._log.warning("trade_start_rejected", pair=request.trading_pair, error=message)
            raise OperationRejected(message)

        self._log.info(
            "trade_opened",
            trade_id=result.trade_id,
            pair=request.trading_pair,
            side=request.trade_type.value,
            amount=request.amount,
            entry_price=entry_price,
            engine=result.engine or engine.value,
        )
        await self.refresh_trades()
        await self.refresh_balances()
        return StartTradeResult(
            success=True,
            trade_id=result.trade_id,
            engine=result.engine or engine.value,
            entry_price=entry_price,
        )

    # ---------- live state ----------

    async def sync_profits(self) -> List[Trade]:
        """Push prices for the pairs in play, let the backend settle, then re-read."""
        self._require_user()
        active = self.book.trades or await self.refresh_trades()
        pairs = [(t.trading_pair, t.market_type or "crypto") for t in active if t.trading_pair]
        await self._price_sync.sync_many(pairs)
        try:
            await self._backend.rpc("sync_trading_profits", {})
        except BackendError as e:
            self._log.warning("profit_sync_failed", error=str(e))
        return await self.refresh_trades()

    # ---------- close ----------

    async def _record(self, detail: StoppedTrade) -> None:
        try:
            await self._backend.insert(
                "transactions",
                {
                    "user_id": self.user_id,
                    "type": detail.transaction_type,
                    "amount": detail.profit,
                    "description": detail.description(),
                },
            )
        except BackendError as e:
            self._log.error("transaction_record_failed", trade_id=detail.trade_id, error=str(e))

    async def close_trade(self, trade_id: str) -> StoppedTrade:
        user_id = self._require_user()
        trade = self.book.get(trade_id)
        if trade is None:
            row = await self._backend.select_one("trades", {"id": trade_id, "user_id": user_id})
            trade = Trade.from_row(row) if row else None
        if trade is None or trade.status.is_terminal:
            raise ValidationFailure("Trade not found or already closed")

        try:
            payload = await self._backend.rpc("stop_single_trade", {"p_trade_id": trade_id, "p_user_id": user_id})
        except BackendError as e:
            self._log.error("trade_stop_failed", trade_id=trade_id, error=str(e))
            raise OperationRejected(STOP_FAILED) from e
        if isinstance(payload, dict) and payload.get("success") is False:
            raise OperationRejected(rejection_message(payload, STOP_FAILED))

        data = payload if isinstance(payload, dict) else {}
        detail = StoppedTrade(
            trade_id=trade_id,
            trading_pair=trade.trading_pair,
            trade_type=trade.trade_type.value,
            initial_amount=trade.initial_amount,
            profit=float(data.get("profit", trade.current_profit)),
            balance_source=trade.balance_source,
        )
        await self._record(detail)
        self._log.info("trade_stopped", trade_id=trade_id, profit=detail.profit)
        await self.refresh_trades()
        await self.refresh_balances()
        return detail

    async def stop_all(self) -> StopAllResult:
        user_id = self._require_user()
        try:
            payload = await self._backend.rpc("stop_all_user_trades", {"p_user_id": user_id})
        except BackendError as e:
            self._log.error("stop_all_failed", error=str(e))
            raise OperationRejected(STOP_ALL_FAILED) from e

        result = StopAllResult.from_payload(payload)
        if not result.success:
            raise OperationRejected(rejection_message(payload, STOP_ALL_FAILED))

        for detail in result.trade_details:
            await self._record(detail)
        self._log.info("trades_stopped", count=result.trades_stopped, total_profit=result.total_profit)
        await self.refresh_trades()
        await self.refresh_balances()
        return result


class TradeMonitor:
    """Keeps the active-trade projection live.

    Realtime changes to the user's trades re-read the book and changes to the
    engine settings re-resolve the engine; a periodic sync_profits covers
    price movement and missed pushes.
    """

    def __init__(self, client: TradeClient, interval_sec: float = 5.0) -> None:
        self._client = client
        self._task = PeriodicTask("trade_monitor", interval_sec, self._tick)
        self._subscriptions: List[Subscription] = []

    @property
    def running(self) -> bool:
        return self._task.running

    async def _tick(self) -> None:
        await self._client.sync_profits()

    async def _on_trades_change(self, change: ChangeEvent) -> None:
        try:
            await self._client.refresh_trades()
        except BackendError as e:
            log.warning("trade_push_refresh_failed", table=change.table, error=str(e))

    async def _on_engine_change(self, change: ChangeEvent) -> None:
        try:
            engine = await self._client.refresh_engine()
        except BackendError as e:
            log.warning("engine_refresh_failed", table=change.table, error=str(e))
            return
        log.info("engine_changed", user_id=self._client.user_id, mode=engine.value)

    async def _subscribe(self) -> None:
        user_id = self._client.user_id
        if self._subscriptions or not user_id:
            return
        backend = self._client.backend
        self._subscriptions.append(
            await backend.subscribe("trades", "*", {"user_id": user_id}, self._on_trades_change)
        )
        for table in ENGINE_TABLES:
            self._subscriptions.append(await backend.subscribe(table, "*", None, self._on_engine_change))

    async def start(self) -> None:
        await self._subscribe()
        self._task.start()

    async def stop(self) -> None:
        await self._task.stop()
        subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            await subscription.close()

    async def __aenter__(self) -> "TradeMonitor":
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()
