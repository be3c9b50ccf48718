from __future__ import annotations

import asyncio

from tradedesk.app.main import DEMO_SIGNALS, seed_demo
from tradedesk.models.account_models import GLOBAL_ENGINE_KEY
from tradedesk.services.market import catalog


def test_seed_creates_demo_desk(backend):
    user_id = seed_demo(backend, "demo-user")
    assert user_id == "demo-user"

    profile = backend.fetch_profile(user_id)
    assert profile["usdt_balance"] == 1000.0
    assert profile["net_balance"] == 1250.0
    assert backend.fetch_profile("demo-user-admin")["role"] == "admin"

    async def scenario():
        assets = await backend.select("tradeable_assets")
        signals = await backend.select("signals", order="price")
        engine = await backend.select_one("admin_settings", {"key": GLOBAL_ENGINE_KEY})
        return assets, signals, engine

    assets, signals, engine = asyncio.run(scenario())
    assert len(assets) == len(catalog.CRYPTO_PAIRS) + len(catalog.FOREX_PAIRS)
    btc = next(a for a in assets if a["symbol"] == "BTC")
    assert btc["api_id"] == "bitcoin"
    assert [s["name"] for s in signals] == [name for name, *_ in DEMO_SIGNALS]
    assert engine["value"] == "general"


def test_seed_is_idempotent(backend):
    seed_demo(backend, "demo-user")
    seed_demo(backend, "demo-user")
    signals = asyncio.run(backend.select("signals"))
    assert len(signals) == len(DEMO_SIGNALS)


def test_seed_generates_user_id(backend):
    user_id = seed_demo(backend)
    assert backend.fetch_profile(user_id) is not None
