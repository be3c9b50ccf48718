"""Clock helpers.

Caches and simulations read time through a Clock so that tests can drive
them with a controlled clock instead of wall time.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Optional, Protocol


class Clock(Protocol):
    def time(self) -> float:
        """Seconds since the epoch."""
        ...


class SystemClock:
    def time(self) -> float:
        return time.time()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def from_epoch(epoch: float) -> datetime:
    return datetime.fromtimestamp(epoch, tz=timezone.utc)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp as returned by the backend (``Z`` suffix allowed)."""
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
