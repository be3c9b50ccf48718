from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Generic, Optional, TypeVar

from tradedesk.infrastructure.utils.timeutils import Clock, SystemClock

V = TypeVar("V")


@dataclass
class _Entry(Generic[V]):
    value: V
    stored_at: float


class TTLCache(Generic[V]):
    """Read-through cache: entries are served unchanged until `ttl_sec` has elapsed."""

    def __init__(self, ttl_sec: float, clock: Optional[Clock] = None) -> None:
        self.ttl_sec = ttl_sec
        self._clock = clock or SystemClock()
        self._entries: Dict[str, _Entry[V]] = {}

    def get(self, key: str) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock.time() - entry.stored_at >= self.ttl_sec:
            del self._entries[key]
            return None
        return entry.value

    def set(self, key: str, value: V) -> None:
        self._entries[key] = _Entry(value=value, stored_at=self._clock.time())

    def invalidate(self, key: Optional[str] = None) -> None:
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        return len(self._entries)
