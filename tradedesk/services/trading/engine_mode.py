"""Which settlement engine applies to a user.

Resolution order: explicit per-user override (anything but `default`),
then the global admin setting `global_trading_engine`, then `rising`.
"""

from __future__ import annotations

from tradedesk.infrastructure.backend.base import Backend
from tradedesk.infrastructure.logging.logging import get_logger
from tradedesk.models.account_models import GLOBAL_ENGINE_KEY, EngineMode, resolve_engine_mode

log = get_logger("engine_mode")

# Changes to these tables can move a user to another engine.
ENGINE_TABLES = ("admin_settings", "user_trading_engines")


class EngineModeResolver:
    def __init__(self, backend: Backend) -> None:
        self._backend = backend

    async def resolve(self, user_id: str) -> EngineMode:
        user_row = await self._backend.select_one("user_trading_engines", {"user_id": user_id}, columns="engine_type")
        global_row = await self._backend.select_one("admin_settings", {"key": GLOBAL_ENGINE_KEY}, columns="value")
        mode = resolve_engine_mode(
            user_row.get("engine_type") if user_row else None,
            global_row.get("value") if global_row else None,
        )
        log.debug("engine_mode_resolved", user_id=user_id, mode=mode.value)
        return mode
