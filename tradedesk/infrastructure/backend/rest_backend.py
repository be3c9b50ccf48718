"""Hosted backend adapter: PostgREST over HTTP (aiohttp) + realtime channel."""

from __future__ import annotations

import asyncio
import enum
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

import aiohttp

from tradedesk.infrastructure.backend.base import Backend, BackendError, ChangeHandler, JsonDict, Subscription
from tradedesk.infrastructure.backend.realtime_client import RealtimeClient
from tradedesk.infrastructure.logging.logging import get_logger


def _literal(value: Any) -> str:
    if isinstance(value, enum.Enum):
        value = value.value
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def build_query_params(
    filters: Optional[Dict[str, Any]] = None,
    *,
    columns: str = "*",
    in_filters: Optional[Dict[str, Iterable[Any]]] = None,
    order: Optional[str] = None,
    descending: bool = False,
    limit: Optional[int] = None,
) -> List[Tuple[str, str]]:
    """Translate a row query into PostgREST query parameters."""
    params: List[Tuple[str, str]] = [("select", columns)]
    for col, value in (filters or {}).items():
        params.append((col, "is.null" if value is None else f"eq.{_literal(value)}"))
    for col, values in (in_filters or {}).items():
        params.append((col, "in.(" + ",".join(_literal(v) for v in values) + ")"))
    if order:
        params.append(("order", f"{order}.{'desc' if descending else 'asc'}"))
    if limit is not None:
        params.append(("limit", str(int(limit))))
    return params


def _filter_params(filters: Dict[str, Any]) -> List[Tuple[str, str]]:
    return [(c, "is.null" if v is None else f"eq.{_literal(v)}") for c, v in filters.items()]


def _json_body(values: Any) -> Any:
    if isinstance(values, list):
        return [_json_body(v) for v in values]
    if isinstance(values, dict):
        return {k: (v.value if isinstance(v, enum.Enum) else v) for k, v in values.items()}
    return values


class RestBackend(Backend):
    def __init__(
        self,
        base_url: str,
        *,
        anon_key: str,
        access_token: str = "",
        request_timeout_sec: float = 10.0,
        realtime: Optional[RealtimeClient] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        if not base_url:
            raise ValueError("backend url is required for the rest backend")
        self._base = base_url.rstrip("/")
        self._anon_key = anon_key
        self._token = access_token or anon_key
        self._timeout = aiohttp.ClientTimeout(total=request_timeout_sec)
        self._session = session
        self._owns_session = session is None
        self._realtime = realtime
        self._logger = get_logger("rest_backend")

    def _headers(self) -> Dict[str, str]:
        return {
            "apikey": self._anon_key,
            "Authorization": f"Bearer {self._token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[List[Tuple[str, str]]] = None,
        json_body: Any = None,
        prefer: Optional[str] = None,
    ) -> Any:
        session = await self._get_session()
        # sent per request so an injected session carries the credentials too
        headers = {**self._headers(), **({"Prefer": prefer} if prefer else {})}
        url = f"{self._base}{path}"
        try:
            async with session.request(
                method, url, params=params, json=json_body, headers=headers, timeout=self._timeout
            ) as resp:
                if resp.status >= 400:
                    text = await resp.text()
                    self._logger.error("backend_http_error", method=method, path=path, status=resp.status, body=text[:500])
                    raise BackendError(f"{method} {path} -> HTTP {resp.status}", status=resp.status, details=text)
                if resp.status == 204:
                    return None
                text = await resp.text()
                if not text:
                    return None
                return await resp.json(content_type=None)
        except asyncio.TimeoutError as e:
            self._logger.warning("backend_timeout", method=method, path=path)
            raise BackendError(f"{method} {path} timed out") from e
        except aiohttp.ClientError as e:
            self._logger.warning("backend_transport_error", method=method, path=path, error=str(e))
            raise BackendError(f"{method} {path} failed: {e}") from e

    async def rpc(self, name: str, params: JsonDict) -> Any:
        self._logger.debug("rpc_call", function=name)
        return await self._request("POST", f"/rest/v1/rpc/{name}", json_body=_json_body(params or {}))

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
        params = build_query_params(
            filters, columns=columns, in_filters=in_filters, order=order, descending=descending, limit=limit
        )
        return list(await self._request("GET", f"/rest/v1/{table}", params=params) or [])

    async def insert(self, table: str, rows: Union[JsonDict, List[JsonDict]]) -> List[JsonDict]:
        result = await self._request("POST", f"/rest/v1/{table}", json_body=_json_body(rows), prefer="return=representation")
        return list(result or [])

    async def update(self, table: str, values: JsonDict, filters: Dict[str, Any]) -> List[JsonDict]:
        if not filters:
            raise BackendError("update without filters is not allowed")
        result = await self._request(
            "PATCH",
            f"/rest/v1/{table}",
            params=_filter_params(filters),
            json_body=_json_body(values),
            prefer="return=representation",
        )
        return list(result or [])

    async def subscribe(
        self,
        table: str,
        event: str,
        filters: Optional[Dict[str, Any]],
        on_change: ChangeHandler,
    ) -> Subscription:
        if self._realtime is None:
            raise BackendError("realtime is not configured for this backend")
        if not self._realtime.is_running:
            await self._realtime.start()
        return await self._realtime.subscribe(table, event, filters, on_change)

    async def close(self) -> None:
        if self._realtime is not None:
            await self._realtime.stop()
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None
