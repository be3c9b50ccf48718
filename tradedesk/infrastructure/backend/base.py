"""Backend contract shared by the hosted adapter and the local reference backend.

Every money-moving operation is an RPC; plain reads/writes go through the
row operations. Realtime row changes are delivered to subscribers as
ChangeEvent objects.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

JsonDict = Dict[str, Any]


class BackendError(RuntimeError):
    """Transport failure or server-side error while talking to the backend."""

    def __init__(self, message: str, *, status: Optional[int] = None, details: Any = None) -> None:
        super().__init__(message)
        self.status = status
        self.details = details


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    event_type: str          # "INSERT" | "UPDATE" | "DELETE"
    new: JsonDict = field(default_factory=dict)
    old: JsonDict = field(default_factory=dict)

    def matches(self, event: str, filters: Optional[Dict[str, Any]]) -> bool:
        if event not in ("*", self.event_type):
            return False
        row = self.new or self.old
        for key, expected in (filters or {}).items():
            if str(row.get(key)) != str(expected):
                return False
        return True


ChangeHandler = Callable[[ChangeEvent], Union[None, Awaitable[None]]]


class Subscription:
    """Handle returned by Backend.subscribe; close() stops delivery."""

    def __init__(self, on_close: Callable[[], Union[None, Awaitable[None]]]) -> None:
        self._on_close = on_close
        self.closed = False

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        result = self._on_close()
        if result is not None:
            await result


class Backend(ABC):
    @abstractmethod
    async def rpc(self, name: str, params: JsonDict) -> Any:
        ...

    @abstractmethod
    async def select(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        *,
        columns: str = "*",
        in_filters: Optional[Dict[str, Iterable[Any]]] = None,
        order: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[JsonDict]:
        ...

    @abstractmethod
    async def insert(self, table: str, rows: Union[JsonDict, List[JsonDict]]) -> List[JsonDict]:
        ...

    @abstractmethod
    async def update(self, table: str, values: JsonDict, filters: Dict[str, Any]) -> List[JsonDict]:
        ...

    @abstractmethod
    async def subscribe(
        self,
        table: str,
        event: str,
        filters: Optional[Dict[str, Any]],
        on_change: ChangeHandler,
    ) -> Subscription:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    async def select_one(self, table: str, filters: Dict[str, Any], *, columns: str = "*") -> Optional[JsonDict]:
        rows = await self.select(table, filters, columns=columns, limit=1)
        return rows[0] if rows else None
