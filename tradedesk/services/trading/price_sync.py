"""Push client-observed prices into tradeable_assets so settlement sees them."""

from __future__ import annotations

from typing import Dict, Iterable, Tuple

from tradedesk.infrastructure.backend.base import Backend, BackendError
from tradedesk.infrastructure.logging.logging import get_logger
from tradedesk.infrastructure.utils.timeutils import utc_now
from tradedesk.models.market_models import asset_symbol
from tradedesk.services.market import catalog
from tradedesk.services.market.price_source import PriceSource

log = get_logger("price_sync")


class PriceSync:
    def __init__(self, backend: Backend, prices: PriceSource) -> None:
        self._backend = backend
        self._prices = prices

    async def sync(self, pair: str, market_type: str, *, fresh: bool = True) -> float:
        """Refresh one pair's price and write it to its asset row; returns the price."""
        price = await self._prices.get_price(pair, market_type, fresh=fresh)
        symbol = asset_symbol(pair, market_type)
        values = {"current_price": price, "updated_at": utc_now().isoformat()}
        try:
            rows = await self._backend.update("tradeable_assets", values, {"symbol": symbol})
            if not rows:
                known = catalog.get_pair(pair)
                await self._backend.insert(
                    "tradeable_assets",
                    {
                        "symbol": symbol,
                        "name": known.name if known else symbol,
                        "asset_type": str(getattr(market_type, "value", market_type)),
                        "api_id": known.api_id if known else None,
                        **values,
                    },
                )
        except BackendError as e:
            log.warning("price_sync_failed", pair=pair, symbol=symbol, error=str(e))
            return price
        log.debug("price_synced", pair=pair, symbol=symbol, price=price)
        return price

    async def sync_many(self, pairs: Iterable[Tuple[str, str]]) -> Dict[str, float]:
        out: Dict[str, float] = {}
        for pair, market_type in dict.fromkeys(pairs):
            out[pair] = await self.sync(pair, market_type, fresh=False)
        return out
