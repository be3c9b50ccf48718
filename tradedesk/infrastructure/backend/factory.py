from __future__ import annotations

from typing import Optional

from tradedesk.infrastructure.backend.base import Backend
from tradedesk.infrastructure.backend.realtime_client import RealtimeClient
from tradedesk.infrastructure.backend.rest_backend import RestBackend
from tradedesk.infrastructure.storage.sqlite_backend import SQLiteBackend
from tradedesk.infrastructure.utils.config import TradeDeskConfig
from tradedesk.infrastructure.utils.timeutils import Clock


def build_backend(config: TradeDeskConfig, *, clock: Optional[Clock] = None) -> Backend:
    if config.backend.kind == "sqlite":
        return SQLiteBackend(config.sqlite.path, clock=clock)

    realtime = RealtimeClient(
        config.backend.realtime_url,
        config.backend.anon_key,
        config.backend.access_token,
        heartbeat_interval_sec=config.backend.realtime_heartbeat_sec,
        request_timeout_sec=config.backend.request_timeout_sec,
    )
    return RestBackend(
        config.backend.url,
        anon_key=config.backend.anon_key,
        access_token=config.backend.access_token,
        request_timeout_sec=config.backend.request_timeout_sec,
        realtime=realtime,
    )
