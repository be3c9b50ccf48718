"""Entrypoint.

Usage:
  python -m tradedesk.app.main api       # run FastAPI server
  python -m tradedesk.app.main monitor   # keep balances/trades synced and log snapshots
  python -m tradedesk.app.main seed      # create demo data in the local SQLite backend
"""

from __future__ import annotations

import argparse
import asyncio
import uuid
from pathlib import Path
from typing import Optional

import uvicorn

from tradedesk.api.server import create_app
from tradedesk.api.state import build_state, set_state
from tradedesk.infrastructure.logging.logging import bind_user, clear_user, configure_logging, get_logger
from tradedesk.infrastructure.storage.sqlite_backend import SQLiteBackend
from tradedesk.infrastructure.utils.config import TradeDeskConfig, load_config
from tradedesk.models.account_models import GLOBAL_ENGINE_KEY
from tradedesk.models.market_models import asset_symbol
from tradedesk.services.market import catalog
from tradedesk.services.monitoring.metrics_store import write_metrics
from tradedesk.services.trading.trade_client import TradeMonitor

log = get_logger("main")

DEMO_SIGNALS = [
    ("Starter Signal", 50.0, 1.2, "Entry-level signal with a modest profit boost"),
    ("Pro Signal", 150.0, 1.5, "Higher multiplier for active traders"),
    ("Elite Signal", 400.0, 2.0, "Maximum multiplier"),
]


async def run_monitor(config: TradeDeskConfig, *, once: bool = False) -> None:
    state = build_state(config)
    if not config.user_id:
        raise SystemExit("monitor needs a user id (TRADEDESK_USER_ID or user_id in config)")
    bind_user(config.user_id)
    try:
        await state.account.refresh()
        await state.trades.sync_profits()
        write_metrics(state.metrics.as_dict())
        if once:
            return
        await state.account.start(config.refresh.dashboard_poll_sec)
        async with TradeMonitor(state.trades, config.refresh.trading_poll_sec):
            while True:
                await asyncio.sleep(config.refresh.trading_poll_sec)
                snapshot = state.metrics.as_dict()
                write_metrics(snapshot)
                log.info("monitor_snapshot", **snapshot)
    finally:
        await state.close()
        clear_user()


def seed_demo(backend: SQLiteBackend, user_id: Optional[str] = None) -> str:
    """Populate a local database with a demo user, the pair catalogue and a few signals."""
    user_id = user_id or str(uuid.uuid4())
    if backend.fetch_profile(user_id) is not None:
        log.info("demo_already_seeded", user_id=user_id)
        return user_id

    backend.create_profile(user_id, email="demo@tradedesk.local", usdt_balance=1000.0, btc_balance=250.0, base_balance=1250.0)
    backend.create_profile(f"{user_id}-admin", role="admin", email="admin@tradedesk.local")
    for pair in catalog.CRYPTO_PAIRS + catalog.FOREX_PAIRS:
        backend.set_asset_price(
            asset_symbol(pair.symbol, pair.market_type.value),
            pair.base_price,
            asset_type=pair.market_type.value,
            name=pair.name,
            api_id=pair.api_id,
        )
    for name, price, multiplier, description in DEMO_SIGNALS:
        backend.create_signal(name, price, profit_multiplier=multiplier, description=description)
    backend.set_setting(GLOBAL_ENGINE_KEY, "general")
    backend.set_setting("daily_interest_rate", 0.001)
    log.info("demo_seeded", user_id=user_id)
    return user_id


def main() -> None:
    parser = argparse.ArgumentParser("tradedesk")
    parser.add_argument("command", choices=["api", "monitor", "seed"], help="What to run")
    parser.add_argument("--config", type=Path, default=None, help="Path to a YAML config file")
    parser.add_argument("--once", action="store_true", help="monitor: run a single sync and exit")
    args = parser.parse_args()

    config = load_config(args.config)
    configure_logging(config.log_level, config.environment)

    if args.command == "api":
        state = build_state(config)
        set_state(state)
        if config.user_id:
            bind_user(config.user_id)
        uvicorn.run(create_app(config.api.cors_origins), host=config.api.host, port=config.api.port, reload=False)
        return

    if args.command == "monitor":
        asyncio.run(run_monitor(config, once=args.once))
        return

    if args.command == "seed":
        if config.backend.kind != "sqlite":
            raise SystemExit("seed only works with the sqlite backend")
        backend = SQLiteBackend(config.sqlite.path)
        try:
            seed_demo(backend, config.user_id)
        finally:
            asyncio.run(backend.close())
        return


if __name__ == "__main__":
    main()
