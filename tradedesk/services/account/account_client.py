"""Balance view for the signed-in user: poll + realtime push, swaps, signal purchases."""

from __future__ import annotations

from typing import Any, List, Optional, Sequence

from tradedesk.infrastructure.backend.base import Backend, BackendError, ChangeEvent, Subscription
from tradedesk.infrastructure.logging.logging import get_logger
from tradedesk.infrastructure.utils.timeutils import Clock, SystemClock
from tradedesk.models.account_models import (
    BalanceBucket,
    BalanceSet,
    OperationResult,
    PurchasedSignal,
    Signal,
    Transaction,
)
from tradedesk.services.account.balance_store import (
    SOURCE_FETCH,
    SOURCE_PUSH,
    BalanceEvent,
    BalanceStore,
    fetch_balances,
)
from tradedesk.services.errors import OperationRejected, ValidationFailure, rejection_message
from tradedesk.services.monitoring.periodic import PeriodicTask

log = get_logger("account")

DASHBOARD_SYNC = ("sync_trading_profits", "update_live_interest_earned")
TRADING_SYNC = ("sync_trading_profits",)


class AccountClient:
    def __init__(
        self,
        backend: Backend,
        user_id: Optional[str],
        *,
        store: Optional[BalanceStore] = None,
        clock: Optional[Clock] = None,
        sync_functions: Sequence[str] = DASHBOARD_SYNC,
    ) -> None:
        self._backend = backend
        self.user_id = user_id
        self.store = store or BalanceStore()
        self._clock = clock or SystemClock()
        self._sync_functions = tuple(sync_functions)
        self._subscription: Optional[Subscription] = None
        self._poller: Optional[PeriodicTask] = None
        self._log = log.bind(user_id=user_id)

    @property
    def balances(self) -> Optional[BalanceSet]:
        return self.store.snapshot

    def _require_user(self) -> str:
        if not self.user_id:
            raise ValidationFailure("Please sign in first")
        return self.user_id

    # ---------- refresh paths ----------

    async def refresh(self) -> Optional[BalanceSet]:
        """Run the server sync functions, then fetch the profile row."""
        user_id = self._require_user()
        for name in self._sync_functions:
            try:
                await self._backend.rpc(name, {})
            except BackendError as e:
                self._log.warning("balance_sync_failed", function=name, error=str(e))
        balances = await fetch_balances(self._backend, user_id)
        if balances is None:
            self._log.warning("profile_missing")
            return None
        return self.store.apply(BalanceEvent(source=SOURCE_FETCH, balances=balances, received_at=self._clock.time()))

    def _on_profile_change(self, change: ChangeEvent) -> None:
        if not change.new:
            return
        self.store.apply(
            BalanceEvent(source=SOURCE_PUSH, balances=BalanceSet.from_row(change.new), received_at=self._clock.time())
        )

    async def start(self, poll_interval_sec: float = 3.0) -> None:
        user_id = self._require_user()
        if self._subscription is None:
            self._subscription = await self._backend.subscribe(
                "profiles", "UPDATE", {"id": user_id}, self._on_profile_change
            )
        if self._poller is None:
            self._poller = PeriodicTask("balance_poll", poll_interval_sec, self._poll)
            self._poller.start()
        self._log.info("account_view_started", poll_interval_sec=poll_interval_sec)

    async def _poll(self) -> None:
        await self.refresh()

    async def stop(self) -> None:
        if self._poller is not None:
            await self._poller.stop()
            self._poller = None
        if self._subscription is not None:
            await self._subscription.close()
            self._subscription = None
        self._log.info("account_view_stopped")

    async def __aenter__(self) -> "AccountClient":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()

    # ---------- actions ----------

    def _available(self, bucket: BalanceBucket) -> float:
        return self.store.snapshot.get(bucket) if self.store.snapshot else 0.0

    async def swap(self, from_bucket: Any, to_bucket: Any, amount: float) -> BalanceSet:
        user_id = self._require_user()
        try:
            source = BalanceBucket.parse(from_bucket)
            target = BalanceBucket.parse(to_bucket)
        except ValueError as e:
            raise ValidationFailure(str(e)) from None
        if source is target:
            raise ValidationFailure("Cannot swap to the same balance")
        if amount is None or amount <= 0:
            raise ValidationFailure("Please enter a valid amount")
        if self.store.snapshot is None:
            await self.refresh()
        if amount > self._available(source):
            raise ValidationFailure(f"Insufficient {source.label}")

        try:
            payload = await self._backend.rpc(
                "swap_balances",
                {"p_user_id": user_id, "p_from_balance": source.value, "p_to_balance": target.value, "p_amount": amount},
            )
        except BackendError as e:
            self._log.error("swap_failed", error=str(e))
            raise OperationRejected("Swap failed") from e
        result = OperationResult.from_payload(payload)
        if not result.success:
            raise OperationRejected(rejection_message(payload, "Swap failed"))

        self._log.info("balances_swapped", source=source.value, target=target.value, amount=amount)
        balances = await self.refresh()
        return balances or self.store.snapshot or BalanceSet()

    async def list_signals(self) -> List[Signal]:
        rows = await self._backend.select("signals", order="price")
        return [Signal.from_row(r) for r in rows]

    async def purchased_signals(self, *, active_only: bool = True) -> List[PurchasedSignal]:
        user_id = self._require_user()
        filters = {"user_id": user_id, "status": "active"} if active_only else {"user_id": user_id}
        rows = await self._backend.select("purchased_signals", filters, order="purchased_at", descending=True)
        ids = sorted({str(r["signal_id"]) for r in rows})
        signals = {}
        if ids:
            signals = {s.id: s for s in (Signal.from_row(r) for r in await self._backend.select("signals", in_filters={"id": ids}))}
        return [PurchasedSignal.from_row(r, signals.get(str(r["signal_id"]))) for r in rows]

    async def purchase_signal(self, signal_id: str, balance_source: Any = BalanceBucket.USDT) -> OperationResult:
        user_id = self._require_user()
        try:
            bucket = BalanceBucket.parse(balance_source)
        except ValueError as e:
            raise ValidationFailure(str(e)) from None
        signal_row = await self._backend.select_one("signals", {"id": signal_id})
        if signal_row is None:
            raise ValidationFailure("Signal not found")
        signal = Signal.from_row(signal_row)
        if self.store.snapshot is None:
            await self.refresh()
        if signal.price > self._available(bucket):
            raise ValidationFailure(f"Insufficient {bucket.label}")

        try:
            payload = await self._backend.rpc(
                "purchase_signal", {"p_user_id": user_id, "p_signal_id": signal.id, "p_balance_source": bucket.value}
            )
        except BackendError as e:
            self._log.error("signal_purchase_failed", signal_id=signal_id, error=str(e))
            raise OperationRejected("Failed to purchase signal") from e
        result = OperationResult.from_payload(payload)
        if not result.success:
            raise OperationRejected(rejection_message(payload, "Failed to purchase signal"))

        self._log.info("signal_purchased", signal_id=signal.id, amount_paid=(result.data or {}).get("amount_paid"))
        await self.refresh()
        return result

    async def transactions(self, limit: int = 50) -> List[Transaction]:
        rows = await self._backend.select(
            "transactions", {"user_id": self._require_user()}, order="created_at", descending=True, limit=limit
        )
        return [Transaction.from_row(r) for r in rows]
