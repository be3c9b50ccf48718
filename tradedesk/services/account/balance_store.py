"""Single reducer for the user's balance snapshot.

Both refresh paths (periodic fetch and realtime push) produce BalanceEvents
and hand them to apply(). The snapshot is replaced in one assignment; the
last event to arrive wins.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, List, Optional

from tradedesk.infrastructure.backend.base import Backend
from tradedesk.infrastructure.logging.logging import get_logger
from tradedesk.models.account_models import BalanceSet

SOURCE_FETCH = "fetch"
SOURCE_PUSH = "push"

log = get_logger("balances")


@dataclass(frozen=True)
class BalanceEvent:
    source: str
    balances: BalanceSet
    received_at: float


Listener = Callable[[BalanceSet], None]


class BalanceStore:
    def __init__(self) -> None:
        self._snapshot: Optional[BalanceSet] = None
        self._last_event: Optional[BalanceEvent] = None
        self._listeners: List[Listener] = []

    @property
    def snapshot(self) -> Optional[BalanceSet]:
        return self._snapshot

    @property
    def last_event(self) -> Optional[BalanceEvent]:
        return self._last_event

    def apply(self, event: BalanceEvent) -> BalanceSet:
        self._snapshot = event.balances
        self._last_event = event
        if abs(event.balances.aggregate() - event.balances.net_balance) > 1e-6:
            log.warning(
                "net_balance_mismatch",
                source=event.source,
                net_balance=event.balances.net_balance,
                aggregate=event.balances.aggregate(),
            )
        for listener in list(self._listeners):
            listener(event.balances)
        return event.balances

    def on_change(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _off() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _off


async def fetch_balances(backend: Backend, user_id: str) -> Optional[BalanceSet]:
    row = await backend.select_one("profiles", {"id": user_id})
    return BalanceSet.from_row(row) if row else None
