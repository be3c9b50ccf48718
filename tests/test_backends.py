from __future__ import annotations

import asyncio

import aiohttp
import pytest
from aiohttp import test_utils, web

from tradedesk.infrastructure.backend.base import BackendError, ChangeEvent
from tradedesk.infrastructure.backend.realtime_client import (
    MessageRouter,
    RealtimeClient,
    RealtimeError,
    join_payload,
    parse_change_message,
    postgres_filter,
)
from tradedesk.infrastructure.backend.rest_backend import RestBackend, build_query_params
from tradedesk.models.trade_models import TradeStatus


class TestQueryParams:
    def test_filters_order_and_limit(self):
        params = build_query_params(
            {"user_id": "u1", "status": TradeStatus.ACTIVE, "closed_at": None},
            columns="id,name",
            in_filters={"id": ["a", "b"]},
            order="started_at",
            descending=True,
            limit=20,
        )
        assert params == [
            ("select", "id,name"),
            ("user_id", "eq.u1"),
            ("status", "eq.active"),
            ("closed_at", "is.null"),
            ("id", "in.(a,b)"),
            ("order", "started_at.desc"),
            ("limit", "20"),
        ]

    def test_defaults(self):
        assert build_query_params() == [("select", "*")]


class TestRealtimeProtocol:
    def test_join_payload_carries_single_filter_and_token(self):
        payload = join_payload("profiles", "UPDATE", {"id": "u1"}, "tok")
        (binding,) = payload["config"]["postgres_changes"]
        assert binding == {"event": "UPDATE", "schema": "public", "table": "profiles", "filter": "id=eq.u1"}
        assert payload["access_token"] == "tok"

    def test_only_one_filter_per_binding(self):
        assert postgres_filter(None) is None
        with pytest.raises(RealtimeError):
            postgres_filter({"id": "u1", "role": "user"})

    def test_parse_change_message(self):
        msg = {
            "topic": "realtime:tradedesk-profiles-1",
            "event": "postgres_changes",
            "payload": {
                "data": {
                    "type": "UPDATE",
                    "table": "profiles",
                    "record": {"id": "u1", "usdt_balance": 10},
                    "old_record": {"id": "u1"},
                }
            },
        }
        change = parse_change_message(msg)
        assert change == ChangeEvent("profiles", "UPDATE", {"id": "u1", "usdt_balance": 10}, {"id": "u1"})
        assert parse_change_message({"event": "phx_reply", "payload": {}}) is None
        assert parse_change_message({"event": "postgres_changes", "payload": {"data": {}}}) is None

    def test_router_correlates_replies(self):
        async def scenario():
            router = MessageRouter()
            first = router.register("1")
            second = router.register("2")
            router.resolve("2", {"ref": "2"})
            router.resolve("9", {"ref": "9"})
            router.reject_all(RealtimeError("Disconnected"))
            return first, second

        first, second = asyncio.run(scenario())
        assert second.result() == {"ref": "2"}
        with pytest.raises(RealtimeError):
            first.result()

    def test_subscription_before_connect_is_queued_and_closable(self):
        async def scenario():
            client = RealtimeClient("wss://example.supabase.co/realtime/v1/websocket", "anon")
            sub = await client.subscribe("profiles", "UPDATE", {"id": "u1"}, lambda change: None)
            await sub.close()
            await sub.close()
            return client, sub

        client, sub = asyncio.run(scenario())
        assert sub.closed
        assert not client.is_connected and not client.is_running

    def test_change_event_matching(self):
        change = ChangeEvent("profiles", "UPDATE", new={"id": "u1"})
        assert change.matches("UPDATE", {"id": "u1"})
        assert change.matches("*", None)
        assert not change.matches("INSERT", None)
        assert not change.matches("UPDATE", {"id": "u2"})


class TestSQLiteRows:
    def test_select_with_in_filter_order_and_limit(self, backend):
        for name, price in (("A", 3.0), ("B", 1.0), ("C", 2.0)):
            backend.create_signal(name, price)

        async def scenario():
            cheapest = await backend.select("signals", order="price", limit=2)
            rows = await backend.select("signals", columns="name", in_filters={"name": ["A", "C"]}, order="name", descending=True)
            none = await backend.select("signals", in_filters={"name": []})
            return cheapest, rows, none

        cheapest, rows, none = asyncio.run(scenario())
        assert [r["name"] for r in cheapest] == ["B", "C"]
        assert rows == [{"name": "C"}, {"name": "A"}]
        assert none == []

    def test_identifiers_are_checked(self, backend):
        with pytest.raises(BackendError):
            asyncio.run(backend.select("accounts"))
        with pytest.raises(BackendError):
            asyncio.run(backend.select("profiles", {"id; DROP TABLE profiles": 1}))
        with pytest.raises(BackendError):
            asyncio.run(backend.update("profiles", {"usdt_balance": 1.0}, {}))

    def test_insert_assigns_id_and_timestamp(self, backend):
        (row,) = asyncio.run(backend.insert("transactions", {"user_id": "u1", "type": "swap", "amount": 1.0}))
        assert row["id"] and row["created_at"]

    def test_settings_round_trip_as_json(self, backend):
        backend.set_setting("limits", {"max": 5})
        row = asyncio.run(backend.select_one("admin_settings", {"key": "limits"}))
        assert row["value"] == {"max": 5}

    def test_bucket_update_recomputes_net_and_notifies(self, backend, user_id):
        seen = []

        def broken(change):
            raise RuntimeError("listener bug")

        async def scenario():
            await backend.subscribe("profiles", "UPDATE", {"id": user_id}, broken)
            sub = await backend.subscribe("profiles", "*", {"id": user_id}, seen.append)
            (row,) = await backend.update("profiles", {"btc_balance": 25.0}, {"id": user_id})
            await sub.close()
            await backend.update("profiles", {"btc_balance": 0.0}, {"id": user_id})
            return row

        row = asyncio.run(scenario())
        assert row["net_balance"] == 525.0
        (change,) = seen
        assert change.old["btc_balance"] == 0.0
        assert change.new["btc_balance"] == 25.0


class TestRestBackend:
    def test_speaks_postgrest(self):
        seen = {}

        async def list_trades(request: web.Request) -> web.Response:
            seen["query"] = list(request.query.items())
            seen["headers"] = dict(request.headers)
            return web.json_response([{"id": "t1", "status": "active"}])

        async def patch_trades(request: web.Request) -> web.Response:
            seen["prefer"] = request.headers.get("Prefer")
            seen["patch"] = await request.json()
            return web.json_response([{"id": "t1", "status": "stopped"}])

        async def rpc(request: web.Request) -> web.Response:
            name = request.match_info["name"]
            if name == "swap_balances":
                return web.json_response({"message": "permission denied"}, status=403)
            seen["rpc_body"] = await request.json()
            return web.json_response({"success": True})

        async def scenario():
            app = web.Application()
            app.router.add_get("/rest/v1/trades", list_trades)
            app.router.add_patch("/rest/v1/trades", patch_trades)
            app.router.add_post("/rest/v1/rpc/{name}", rpc)
            async with test_utils.TestServer(app) as server:
                backend = RestBackend(str(server.make_url("/")), anon_key="anon", access_token="tok")
                try:
                    rows = await backend.select("trades", {"user_id": "u1"}, order="started_at", descending=True)
                    updated = await backend.update("trades", {"status": TradeStatus.STOPPED}, {"id": "t1"})
                    ok = await backend.rpc("sync_trading_profits", {"p_user_id": "u1"})
                    with pytest.raises(BackendError) as err:
                        await backend.rpc("swap_balances", {})
                    with pytest.raises(BackendError):
                        await backend.subscribe("profiles", "UPDATE", None, lambda c: None)
                finally:
                    await backend.close()
            return rows, updated, ok, err.value

        rows, updated, ok, error = asyncio.run(scenario())
        assert rows == [{"id": "t1", "status": "active"}]
        assert seen["query"] == [("select", "*"), ("user_id", "eq.u1"), ("order", "started_at.desc")]
        assert seen["headers"]["apikey"] == "anon"
        assert seen["headers"]["Authorization"] == "Bearer tok"
        assert updated[0]["status"] == "stopped"
        assert seen["patch"] == {"status": "stopped"}
        assert seen["prefer"] == "return=representation"
        assert ok == {"success": True}
        assert seen["rpc_body"] == {"p_user_id": "u1"}
        assert error.status == 403

    def test_injected_session_still_sends_credentials(self):
        seen = {}

        async def get_profile(request: web.Request) -> web.Response:
            seen["headers"] = dict(request.headers)
            return web.json_response([{"id": "u1", "role": "user"}])

        async def scenario():
            app = web.Application()
            app.router.add_get("/rest/v1/profiles", get_profile)
            async with test_utils.TestServer(app) as server:
                async with aiohttp.ClientSession() as session:
                    backend = RestBackend(
                        str(server.make_url("/")), anon_key="anon", access_token="tok", session=session
                    )
                    row = await backend.select_one("profiles", {"id": "u1"})
                    await backend.close()
                    return row, session.closed

        row, closed_by_backend = asyncio.run(scenario())
        assert row == {"id": "u1", "role": "user"}
        assert seen["headers"]["apikey"] == "anon"
        assert seen["headers"]["Authorization"] == "Bearer tok"
        assert not closed_by_backend

    def test_requires_url(self):
        with pytest.raises(ValueError):
            RestBackend("", anon_key="anon")
