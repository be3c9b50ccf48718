"""Realtime change feed client (Phoenix channel protocol) using asyncio + websockets.

Features:
- One channel per subscription, joined with a postgres_changes config
- Heartbeat on the "phoenix" topic
- Reconnection with exponential backoff + jitter
- MessageRouter: correlate ref -> reply Future
- Channels re-joined after reconnect
"""

from __future__ import annotations

import asyncio
import inspect
import json
import random
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import websockets
from websockets.exceptions import ConnectionClosed

from tradedesk.infrastructure.backend.base import ChangeEvent, ChangeHandler, JsonDict, Subscription
from tradedesk.infrastructure.logging.logging import get_logger


class RealtimeError(RuntimeError):
    pass


def postgres_filter(filters: Optional[Dict[str, Any]]) -> Optional[str]:
    """Realtime accepts a single `col=eq.value` filter per binding."""
    if not filters:
        return None
    if len(filters) > 1:
        raise RealtimeError("realtime bindings support a single equality filter")
    col, value = next(iter(filters.items()))
    return f"{col}=eq.{value}"


def join_payload(table: str, event: str, filters: Optional[Dict[str, Any]], access_token: str) -> JsonDict:
    binding: JsonDict = {"event": event, "schema": "public", "table": table}
    flt = postgres_filter(filters)
    if flt:
        binding["filter"] = flt
    return {
        "config": {
            "broadcast": {"self": False, "ack": False},
            "presence": {"key": ""},
            "postgres_changes": [binding],
        },
        "access_token": access_token,
    }


def parse_change_message(msg: JsonDict) -> Optional[ChangeEvent]:
    """Extract a ChangeEvent from a `postgres_changes` channel message."""
    if msg.get("event") != "postgres_changes":
        return None
    data = (msg.get("payload") or {}).get("data") or {}
    event_type = data.get("type") or data.get("eventType")
    table = data.get("table")
    if not event_type or not table:
        return None
    return ChangeEvent(
        table=table,
        event_type=str(event_type).upper(),
        new=dict(data.get("record") or {}),
        old=dict(data.get("old_record") or {}),
    )


@dataclass
class _Channel:
    topic: str
    table: str
    event: str
    filters: Optional[Dict[str, Any]]
    on_change: ChangeHandler
    joined: bool = False


class MessageRouter:
    def __init__(self) -> None:
        self._futures: Dict[str, asyncio.Future[JsonDict]] = {}

    def register(self, ref: str) -> asyncio.Future[JsonDict]:
        fut: asyncio.Future[JsonDict] = asyncio.get_running_loop().create_future()
        self._futures[ref] = fut
        return fut

    def resolve(self, ref: str, msg: JsonDict) -> None:
        fut = self._futures.pop(ref, None)
        if fut and not fut.done():
            fut.set_result(msg)

    def reject_all(self, exc: BaseException) -> None:
        for fut in self._futures.values():
            if not fut.done():
                fut.set_exception(exc)
        self._futures.clear()


class RealtimeClient:
    def __init__(
        self,
        realtime_url: str,
        api_key: str,
        access_token: str = "",
        *,
        heartbeat_interval_sec: float = 25.0,
        request_timeout_sec: float = 10.0,
        max_reconnect_backoff_sec: float = 60.0,
    ) -> None:
        self._logger = get_logger("realtime")
        self._url = f"{realtime_url}?{urlencode({'apikey': api_key, 'vsn': '1.0.0'})}"
        self._token = access_token or api_key
        self._heartbeat_interval = heartbeat_interval_sec
        self._request_timeout = request_timeout_sec
        self._max_backoff = max_reconnect_backoff_sec

        self._ws: Any = None
        self._router = MessageRouter()
        self._connected_evt = asyncio.Event()
        self._stop_evt = asyncio.Event()
        self._runner_task: Optional[asyncio.Task[None]] = None

        self._ref = 0
        self._channel_seq = 0
        self._channels: Dict[str, _Channel] = {}

    @property
    def is_connected(self) -> bool:
        return self._connected_evt.is_set()

    @property
    def is_running(self) -> bool:
        return self._runner_task is not None and not self._runner_task.done()

    async def start(self) -> None:
        self._stop_evt.clear()
        self._runner_task = asyncio.create_task(self._run_forever())

    async def stop(self) -> None:
        self._stop_evt.set()
        if self._runner_task:
            self._runner_task.cancel()
            try:
                await self._runner_task
            except (asyncio.CancelledError, Exception):
                pass
            self._runner_task = None
        self._connected_evt.clear()
        self._router.reject_all(RealtimeError("Disconnected"))
        if self._ws is not None:
            await self._ws.close()
            self._ws = None

    async def wait_until_connected(self, timeout: float = 30.0) -> None:
        await asyncio.wait_for(self._connected_evt.wait(), timeout=timeout)

    async def subscribe(
        self,
        table: str,
        event: str,
        filters: Optional[Dict[str, Any]],
        on_change: ChangeHandler,
    ) -> Subscription:
        postgres_filter(filters)
        self._channel_seq += 1
        topic = f"realtime:tradedesk-{table}-{self._channel_seq}"
        channel = _Channel(topic=topic, table=table, event=event, filters=filters, on_change=on_change)
        self._channels[topic] = channel
        if self.is_connected:
            await self._join(channel)
        return Subscription(lambda: self._leave(topic))

    async def _leave(self, topic: str) -> None:
        channel = self._channels.pop(topic, None)
        if channel is None or not channel.joined or not self.is_connected:
            return
        try:
            await self._request(topic, "phx_leave", {})
        except RealtimeError as e:
            self._logger.warning("channel_leave_failed", topic=topic, error=str(e))

    async def _run_forever(self) -> None:
        backoff = 1.0
        while not self._stop_evt.is_set():
            try:
                await self._connect_and_run()
                backoff = 1.0
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._logger.error("realtime_loop_error", error=str(e))

            if self._stop_evt.is_set():
                break

            jitter = random.random() * 0.3 * backoff
            sleep_for = min(self._max_backoff, backoff + jitter)
            self._logger.warning("reconnect_backoff", seconds=sleep_for)
            await asyncio.sleep(sleep_for)
            backoff = min(self._max_backoff, backoff * 2)

    async def _connect_and_run(self) -> None:
        self._logger.info("realtime_connect")
        async with websockets.connect(self._url, ping_interval=None, close_timeout=5, max_queue=256) as ws:
            self._ws = ws
            reader = asyncio.create_task(self._reader_loop())
            heartbeat: Optional[asyncio.Task[None]] = None
            try:
                self._connected_evt.set()
                for channel in list(self._channels.values()):
                    channel.joined = False
                    await self._join(channel)
                heartbeat = asyncio.create_task(self._heartbeat_loop())

                done, pending = await asyncio.wait([reader, heartbeat], return_when=asyncio.FIRST_COMPLETED)
                for t in pending:
                    t.cancel()
                for t in done:
                    exc = t.exception()
                    if exc:
                        raise exc
            finally:
                self._connected_evt.clear()
                self._router.reject_all(RealtimeError("Disconnected"))
                reader.cancel()
                if heartbeat is not None:
                    heartbeat.cancel()
                self._ws = None

    def _next_ref(self) -> str:
        self._ref += 1
        return str(self._ref)

    async def _request(self, topic: str, event: str, payload: JsonDict) -> JsonDict:
        if self._ws is None:
            raise RealtimeError("WebSocket not open")
        ref = self._next_ref()
        fut = self._router.register(ref)
        await self._ws.send(json.dumps({"topic": topic, "event": event, "payload": payload, "ref": ref}))
        try:
            return await asyncio.wait_for(fut, timeout=self._request_timeout)
        except asyncio.TimeoutError as e:
            raise RealtimeError(f"Request timeout topic={topic} event={event}") from e

    async def _join(self, channel: _Channel) -> None:
        reply = await self._request(
            channel.topic,
            "phx_join",
            join_payload(channel.table, channel.event, channel.filters, self._token),
        )
        status = (reply.get("payload") or {}).get("status")
        if status != "ok":
            raise RealtimeError(f"Join failed for {channel.topic}: {reply.get('payload')}")
        channel.joined = True
        self._logger.info("channel_joined", topic=channel.topic, table=channel.table, event=channel.event)

    async def _reader_loop(self) -> None:
        assert self._ws is not None
        try:
            while True:
                raw = await self._ws.recv()
                msg = json.loads(raw)

                if msg.get("event") == "phx_reply" and msg.get("ref") is not None:
                    self._router.resolve(str(msg["ref"]), msg)
                    continue

                change = parse_change_message(msg)
                channel = self._channels.get(msg.get("topic", ""))
                if change is None or channel is None:
                    continue
                try:
                    result = channel.on_change(change)
                    if inspect.isawaitable(result):
                        await result
                except Exception:
                    self._logger.exception("change_handler_failed", topic=channel.topic)
        except ConnectionClosed:
            return

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            try:
                await self._request("phoenix", "heartbeat", {})
                self._logger.debug("heartbeat_ok")
            except RealtimeError as e:
                self._logger.warning("heartbeat_failed", error=str(e))
                raise
