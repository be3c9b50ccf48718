from __future__ import annotations

import asyncio

import pytest

from tradedesk.models.account_models import BalanceBucket, BalanceSet, EngineMode
from tradedesk.services.account.account_client import TRADING_SYNC, AccountClient
from tradedesk.services.account.admin_client import AdminClient
from tradedesk.services.account.balance_store import SOURCE_FETCH, SOURCE_PUSH, BalanceEvent, BalanceStore
from tradedesk.services.errors import OperationRejected, ValidationFailure
from tradedesk.services.trading.engine_mode import EngineModeResolver


@pytest.fixture
def account(backend, user_id, clock) -> AccountClient:
    return AccountClient(backend, user_id, clock=clock)


class TestBalanceStore:
    def test_last_event_wins_and_listeners_hear_it(self):
        store = BalanceStore()
        seen = []
        off = store.on_change(seen.append)
        store.apply(BalanceEvent(SOURCE_FETCH, BalanceSet(usdt_balance=10, net_balance=10), 1.0))
        store.apply(BalanceEvent(SOURCE_PUSH, BalanceSet(usdt_balance=7, net_balance=7), 2.0))
        assert store.snapshot.usdt_balance == 7
        assert store.last_event.source == SOURCE_PUSH
        assert [b.usdt_balance for b in seen] == [10, 7]
        off()
        store.apply(BalanceEvent(SOURCE_FETCH, BalanceSet(), 3.0))
        assert len(seen) == 2

    def test_inconsistent_row_is_still_applied(self):
        store = BalanceStore()
        store.apply(BalanceEvent(SOURCE_FETCH, BalanceSet(usdt_balance=10, net_balance=99), 1.0))
        assert store.snapshot.net_balance == 99

    def test_bucket_helpers(self):
        balances = BalanceSet(btc_balance=1, eth_balance=2, usdt_balance=3, interest_earned=4, commissions=5, net_balance=15)
        assert balances.aggregate() == 15
        assert balances.get("eth_balance") == 2
        assert BalanceBucket.INTEREST.label == "Interest Earned"
        with pytest.raises(ValueError):
            BalanceBucket.parse("savings")


class TestAccountView:
    def test_refresh_runs_sync_then_fetches(self, account, backend, user_id):
        balances = asyncio.run(account.refresh())
        assert balances.usdt_balance == 500.0
        assert account.balances is balances
        assert account.store.last_event.source == SOURCE_FETCH

    def test_push_updates_replace_snapshot_until_stopped(self, account, backend, user_id):
        async def scenario():
            await account.start(poll_interval_sec=3600)
            await asyncio.sleep(0)
            await asyncio.sleep(0)
            await backend.update("profiles", {"usdt_balance": 42.0}, {"id": user_id})
            pushed = account.store.last_event
            await account.stop()
            await backend.update("profiles", {"usdt_balance": 1.0}, {"id": user_id})
            return pushed

        pushed = asyncio.run(scenario())
        assert pushed.source == SOURCE_PUSH
        assert pushed.balances.usdt_balance == 42.0
        assert pushed.balances.net_balance == 42.0
        assert account.balances.usdt_balance == 42.0

    def test_other_users_changes_are_ignored(self, account, backend, user_id):
        other = backend.create_profile("user-2", usdt_balance=9.0)

        async def scenario():
            async with account:
                await account.start(poll_interval_sec=3600)
                await asyncio.sleep(0)
                await asyncio.sleep(0)
                await backend.update("profiles", {"usdt_balance": 3.0}, {"id": other})
                return account.balances

        assert asyncio.run(scenario()).usdt_balance == 500.0

    def test_trading_view_skips_interest(self, backend, user_id, clock):
        backend.set_setting("daily_interest_rate", 0.01)
        clock.advance(86400)
        view = AccountClient(backend, user_id, clock=clock, sync_functions=TRADING_SYNC)
        assert asyncio.run(view.refresh()).interest_earned == 0.0
        dashboard = AccountClient(backend, user_id, clock=clock)
        assert asyncio.run(dashboard.refresh()).interest_earned == pytest.approx(5.0)


class TestSwap:
    @pytest.mark.parametrize(
        "source, target, amount, message",
        [
            ("usdt_balance", "usdt_balance", 10.0, "Cannot swap to the same balance"),
            ("usdt_balance", "btc_balance", 0.0, "Please enter a valid amount"),
            ("usdt_balance", "btc_balance", 501.0, "Insufficient USDT Balance"),
        ],
    )
    def test_validation_happens_before_rpc(self, account, backend, source, target, amount, message):
        with pytest.raises(ValidationFailure) as err:
            asyncio.run(account.swap(source, target, amount))
        assert err.value.message == message
        assert asyncio.run(backend.select("transactions")) == []

    def test_swap_keeps_net_balance(self, account):
        balances = asyncio.run(account.swap("usdt_balance", BalanceBucket.ETH, 200.0))
        assert balances.usdt_balance == 300.0
        assert balances.eth_balance == 200.0
        assert balances.net_balance == 500.0

    def test_stale_snapshot_surfaces_server_rejection(self, account, backend, user_id):
        async def scenario():
            await account.refresh()
            await backend.rpc(
                "swap_balances",
                {"p_user_id": user_id, "p_from_balance": "usdt_balance", "p_to_balance": "eth_balance", "p_amount": 450.0},
            )
            # local snapshot still shows 500 USDT
            account.store.apply(BalanceEvent(SOURCE_FETCH, BalanceSet(usdt_balance=500.0, net_balance=500.0), 0.0))
            await account.swap("usdt_balance", "btc_balance", 100.0)

        with pytest.raises(OperationRejected, match="Insufficient balance"):
            asyncio.run(scenario())


class TestSignals:
    def test_purchase_and_list(self, account, backend):
        signal_id = backend.create_signal("Starter Signal", 50.0, profit_multiplier=1.2)
        backend.create_signal("Elite Signal", 400.0, profit_multiplier=2.0)

        async def scenario():
            listed = await account.list_signals()
            result = await account.purchase_signal(signal_id)
            owned = await account.purchased_signals()
            ledger = await account.transactions()
            return listed, result, owned, ledger

        listed, result, owned, ledger = asyncio.run(scenario())
        assert [s.name for s in listed] == ["Starter Signal", "Elite Signal"]
        assert result.success and result.data["amount_paid"] == 50.0
        assert account.balances.usdt_balance == 450.0
        (purchase,) = owned
        assert purchase.is_active
        assert purchase.signal_name == "Starter Signal"
        assert purchase.profit_multiplier == 1.2
        (tx,) = ledger
        assert tx.type == "signal_purchase"
        assert tx.amount == -50.0

    def test_cannot_afford_signal(self, account, backend):
        signal_id = backend.create_signal("Whale", 5000.0)
        with pytest.raises(ValidationFailure, match="Insufficient USDT Balance"):
            asyncio.run(account.purchase_signal(signal_id))

    def test_unknown_signal(self, account):
        with pytest.raises(ValidationFailure, match="Signal not found"):
            asyncio.run(account.purchase_signal("missing"))


class TestAdmin:
    def test_adjust_balance(self, backend, user_id):
        admin = AdminClient(backend, backend.create_profile("admin-1", role="admin"))
        result = asyncio.run(admin.adjust_balance(user_id, "usdt_balance", "subtract", 100.0, " correction "))
        assert result.message == "$100.00 subtracted from USDT Balance"
        assert backend.fetch_profile(user_id)["usdt_balance"] == 400.0
        (tx,) = asyncio.run(backend.select("transactions", {"user_id": user_id}))
        assert tx["description"] == "Admin adjustment: correction"
        assert tx["amount"] == -100.0

    @pytest.mark.parametrize(
        "bucket, action, amount, reason",
        [
            ("usdt_balance", "multiply", 1.0, "x"),
            ("usdt_balance", "add", 0.0, "x"),
            ("usdt_balance", "add", 1.0, "   "),
            ("gold", "add", 1.0, "x"),
        ],
    )
    def test_adjust_validation(self, backend, user_id, bucket, action, amount, reason):
        admin = AdminClient(backend, "admin-1")
        with pytest.raises(ValidationFailure):
            asyncio.run(admin.adjust_balance(user_id, bucket, action, amount, reason))

    def test_non_admin_is_rejected_by_backend(self, backend, user_id):
        admin = AdminClient(backend, user_id)
        with pytest.raises(OperationRejected, match="Unauthorized"):
            asyncio.run(admin.adjust_balance(user_id, "usdt_balance", "add", 5.0, "bonus"))

    def test_engine_mode_switches(self, backend, user_id):
        admin = AdminClient(backend, backend.create_profile("admin-1", role="admin"))
        resolver = EngineModeResolver(backend)

        async def scenario():
            modes = [await resolver.resolve(user_id)]
            await admin.set_engine_mode(EngineMode.RISING)
            modes.append(await resolver.resolve(user_id))
            await admin.set_engine_mode(EngineMode.GENERAL, user_id=user_id)
            modes.append(await resolver.resolve(user_id))
            await admin.set_engine_mode(EngineMode.DEFAULT, user_id=user_id)
            modes.append(await resolver.resolve(user_id))
            return modes

        assert asyncio.run(scenario()) == [EngineMode.GENERAL, EngineMode.RISING, EngineMode.GENERAL, EngineMode.RISING]

    def test_global_engine_cannot_be_default(self, backend):
        with pytest.raises(ValidationFailure):
            asyncio.run(AdminClient(backend, "admin-1").set_engine_mode(EngineMode.DEFAULT))

    def test_engine_switch_requires_admin_role(self, backend, user_id):
        with pytest.raises(OperationRejected, match="Unauthorized"):
            asyncio.run(AdminClient(backend, user_id).set_engine_mode(EngineMode.RISING))
        with pytest.raises(ValidationFailure, match="Please sign in as an admin"):
            asyncio.run(AdminClient(backend, None).set_engine_mode(EngineMode.RISING))
        assert asyncio.run(EngineModeResolver(backend).resolve(user_id)) is EngineMode.GENERAL
