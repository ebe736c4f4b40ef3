"""
ProjectX user hub client (SignalR JSON protocol over WebSocket).

Low-latency path for source-account order, position and trade updates.
One ``ProjectXHubConnection`` per (user, account): it connects with a bearer
token in the URL, subscribes to the account's streams, and reconnects with
exponential backoff, re-issuing every subscription after each reconnect
since the hub forgets them when the transport drops.

Wire format: JSON records terminated by ``\\x1e``.  After the handshake
``{"protocol":"json","version":1}`` the hub sends invocations
(type 1, ``target`` + ``arguments``), completions (3), pings (6) and
close (7).
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import json
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Union
from urllib.parse import urlencode, urlsplit, urlunsplit

import websockets
import websockets.exceptions

from config import projectx_hub_url, settings
from services.brokers.projectx import parse_account_id
from utils.logger import exception_text
from utils.logger import hub_logger as logger

RECORD_SEPARATOR = "\x1e"
HANDSHAKE = {"protocol": "json", "version": 1}

MSG_INVOCATION = 1
MSG_COMPLETION = 3
MSG_PING = 6
MSG_CLOSE = 7

ORDER_EVENT = "GatewayUserOrder"
POSITION_EVENT = "GatewayUserPosition"
TRADE_EVENT = "GatewayUserTrade"
ACCOUNT_EVENT = "GatewayUserAccount"

DEFAULT_KEEPALIVE_INTERVAL = 15.0
DEFAULT_RECONNECT_MULTIPLIER = 2.0

HubCallback = Callable[[dict], Union[None, Awaitable[None]]]
TokenProvider = Callable[[], Awaitable[str]]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class HubProtocolError(Exception):
    """Handshake refused, invocation failed, or the hub closed the session."""


@dataclass
class HubStats:
    messages_received: int = 0
    events_dispatched: int = 0
    callback_errors: int = 0
    parse_errors: int = 0
    reconnections: int = 0
    subscribed_sessions: int = 0
    connection_uptime_start: float = 0.0

    @property
    def uptime_seconds(self) -> float:
        if self.connection_uptime_start == 0.0:
            return 0.0
        return time.monotonic() - self.connection_uptime_start

    def to_dict(self) -> dict:
        return {
            "messages_received": self.messages_received,
            "events_dispatched": self.events_dispatched,
            "callback_errors": self.callback_errors,
            "parse_errors": self.parse_errors,
            "reconnections": self.reconnections,
            "subscribed_sessions": self.subscribed_sessions,
            "uptime_seconds": round(self.uptime_seconds, 1),
        }


def encode_record(message: dict) -> str:
    return json.dumps(message, separators=(",", ":")) + RECORD_SEPARATOR


def decode_records(raw: Union[str, bytes]) -> List[dict]:
    """Split one WebSocket frame into its SignalR records."""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    return [json.loads(part) for part in raw.split(RECORD_SEPARATOR) if part.strip()]


def unwrap_event(payload: Any) -> Any:
    """Hub events may arrive as ``{action, data}``; dispatch the inner data."""
    if isinstance(payload, dict) and "data" in payload:
        return payload["data"]
    return payload


def backoff_delay(attempt: int, base: float, maximum: float) -> float:
    """Delay before reconnect ``attempt`` (1-based): base, 2*base, 4*base ... capped."""
    return min(base * (DEFAULT_RECONNECT_MULTIPLIER ** (attempt - 1)), maximum)


def build_hub_url(hub_url: str, token: str) -> str:
    """``https://host/hubs/user`` -> ``wss://host/hubs/user?access_token=...``."""
    parts = urlsplit(hub_url)
    scheme = {"https": "wss", "http": "ws"}.get(parts.scheme, parts.scheme)
    query = "&".join(q for q in (parts.query, urlencode({"access_token": token})) if q)
    return urlunsplit((scheme, parts.netloc, parts.path, query, ""))


class ProjectXHubConnection:
    """Persistent subscription to one ProjectX account's user hub.

    Callbacks are registered per stream (orders, positions, trades) and may
    be plain functions or coroutines.  A failing callback is logged and
    counted; it never stops delivery to the others or tears down the
    connection.
    """

    def __init__(
        self,
        account_id: Any,
        token_provider: TokenProvider,
        *,
        service_type: Optional[str] = None,
        hub_url: Optional[str] = None,
        handshake_timeout: Optional[float] = None,
        reconnect_base_delay: Optional[float] = None,
        reconnect_max_delay: Optional[float] = None,
        max_reconnect_attempts: Optional[int] = None,
        keepalive_interval: float = DEFAULT_KEEPALIVE_INTERVAL,
        connect: Optional[Callable[..., Any]] = None,
    ) -> None:
        # The hub scopes subscriptions by numeric account id
        self.account_id = parse_account_id(account_id)
        self._token_provider = token_provider
        self._hub_url = hub_url or projectx_hub_url(service_type)
        self._handshake_timeout = handshake_timeout or settings.HUB_HANDSHAKE_TIMEOUT_SECONDS
        self._reconnect_base_delay = reconnect_base_delay or settings.HUB_RECONNECT_BASE_DELAY
        self._reconnect_max_delay = reconnect_max_delay or settings.HUB_RECONNECT_MAX_DELAY
        self._max_reconnect_attempts = (
            settings.HUB_MAX_RECONNECT_ATTEMPTS if max_reconnect_attempts is None else max_reconnect_attempts
        )
        self._keepalive_interval = keepalive_interval
        self._connect = connect or websockets.connect

        self._order_callbacks: List[HubCallback] = []
        self._position_callbacks: List[HubCallback] = []
        self._trade_callbacks: List[HubCallback] = []

        self._ws: Any = None
        self._state = ConnectionState.DISCONNECTED
        self._run_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._send_lock = asyncio.Lock()
        self._invocation_ids = itertools.count(1)
        self._pending: dict[str, asyncio.Future] = {}

        self.stats = HubStats()

    # -- public API ---------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    def on_order(self, callback: HubCallback) -> None:
        self._order_callbacks.append(callback)

    def on_position(self, callback: HubCallback) -> None:
        self._position_callbacks.append(callback)

    def on_trade(self, callback: HubCallback) -> None:
        self._trade_callbacks.append(callback)

    async def start(self) -> None:
        """Start the connection loop in the background.  Idempotent."""
        if self._run_task is not None and not self._run_task.done():
            return
        self._stop_event.clear()
        self._run_task = asyncio.create_task(
            self._run_loop(), name=f"projectx-hub-{self.account_id}"
        )
        logger.info("ProjectX hub started", account_id=self.account_id)

    async def stop(self) -> None:
        """Unsubscribe if connected, close the socket and stop reconnecting."""
        if self._ws is not None and self._state == ConnectionState.CONNECTED:
            try:
                await asyncio.wait_for(self._unsubscribe_all(), timeout=self._handshake_timeout)
            except (asyncio.TimeoutError, HubProtocolError, websockets.exceptions.WebSocketException) as exc:
                logger.debug("Hub unsubscribe on stop failed", error=exception_text(exc))
        self._stop_event.set()
        if self._ws is not None:
            await self._ws.close()
        if self._run_task and not self._run_task.done():
            self._run_task.cancel()
            try:
                await self._run_task
            except asyncio.CancelledError:
                pass
        self._ws = None
        self._state = ConnectionState.DISCONNECTED
        logger.info("ProjectX hub stopped", account_id=self.account_id)

    async def invoke(self, target: str, *arguments: Any) -> Any:
        """Call a hub method and wait for its completion record."""
        if self._ws is None:
            raise HubProtocolError(f"Cannot invoke {target}: hub not connected")
        invocation_id = str(next(self._invocation_ids))
        future = asyncio.get_running_loop().create_future()
        self._pending[invocation_id] = future
        try:
            await self._send(
                {"type": MSG_INVOCATION, "invocationId": invocation_id, "target": target, "arguments": list(arguments)}
            )
            return await asyncio.wait_for(future, timeout=self._handshake_timeout)
        finally:
            self._pending.pop(invocation_id, None)

    # -- internal connection loop -------------------------------------------

    async def _run_loop(self) -> None:
        """Outer loop: connect, listen, and reconnect on failure."""
        attempt = 0
        while not self._stop_event.is_set():
            subscribed_before = self.stats.subscribed_sessions
            try:
                self._state = ConnectionState.CONNECTING if attempt == 0 else ConnectionState.RECONNECTING
                await self._connect_and_listen()
            except asyncio.CancelledError:
                break
            except Exception as exc:
                if self._stop_event.is_set():
                    break
                logger.warning(
                    "ProjectX hub connection lost",
                    account_id=self.account_id,
                    error=exception_text(exc),
                )
            if self._stop_event.is_set():
                break

            # Only a session that completed every subscription resets the attempt
            # counter; a hub that accepts the handshake but refuses the
            # subscriptions still backs off and eventually gives up
            if self.stats.subscribed_sessions != subscribed_before:
                attempt = 0
            attempt += 1
            if self._max_reconnect_attempts and attempt > self._max_reconnect_attempts:
                logger.error(
                    "ProjectX hub giving up after repeated failures",
                    account_id=self.account_id,
                    attempts=attempt - 1,
                )
                break
            self.stats.reconnections += 1
            self._state = ConnectionState.RECONNECTING
            delay = backoff_delay(attempt, self._reconnect_base_delay, self._reconnect_max_delay)
            logger.info(
                "ProjectX hub reconnecting",
                account_id=self.account_id,
                attempt=attempt,
                delay=delay,
            )
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
                break  # stop_event was set during wait
            except asyncio.TimeoutError:
                pass  # delay elapsed, retry

        self._state = ConnectionState.DISCONNECTED

    async def _connect_and_listen(self) -> None:
        """Open the socket, handshake, subscribe, then read until it closes."""
        token = await self._token_provider()
        url = build_hub_url(self._hub_url, token)
        async with self._connect(url, ping_interval=None, close_timeout=5) as ws:
            self._ws = ws
            try:
                await self._handshake(ws)
                self._state = ConnectionState.CONNECTED
                self.stats.connection_uptime_start = time.monotonic()
                logger.info("ProjectX hub connected", account_id=self.account_id)

                reader = asyncio.create_task(self._read_loop(ws), name=f"projectx-hub-read-{self.account_id}")
                keepalive = asyncio.create_task(self._keepalive_loop(), name=f"projectx-hub-ping-{self.account_id}")
                try:
                    await self._subscribe_all()
                    await reader
                finally:
                    keepalive.cancel()
                    if not reader.done():
                        reader.cancel()
            finally:
                self._ws = None
                self._fail_pending(HubProtocolError("Hub connection closed"))

    async def _handshake(self, ws: Any) -> None:
        await ws.send(encode_record(HANDSHAKE))
        raw = await asyncio.wait_for(ws.recv(), timeout=self._handshake_timeout)
        records = decode_records(raw)
        response = records[0] if records else {}
        if response.get("error"):
            raise HubProtocolError(f"Hub handshake rejected: {response['error']}")
        # Any records that arrived in the same frame as the handshake ack
        for record in records[1:]:
            await self._handle_record(record)

    async def _subscribe_all(self) -> None:
        await self.invoke("SubscribeAccounts")
        await self.invoke("SubscribeOrders", self.account_id)
        await self.invoke("SubscribePositions", self.account_id)
        await self.invoke("SubscribeTrades", self.account_id)
        self.stats.subscribed_sessions += 1
        logger.debug("ProjectX hub subscribed", account_id=self.account_id)

    async def _unsubscribe_all(self) -> None:
        await self.invoke("UnsubscribeAccounts")
        await self.invoke("UnsubscribeOrders", self.account_id)
        await self.invoke("UnsubscribePositions", self.account_id)
        await self.invoke("UnsubscribeTrades", self.account_id)

    async def _send(self, message: dict) -> None:
        async with self._send_lock:
            await self._ws.send(encode_record(message))

    async def _keepalive_loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(self._keepalive_interval)
                if self._ws is None:
                    return
                await self._send({"type": MSG_PING})
        except asyncio.CancelledError:
            return
        except websockets.exceptions.WebSocketException:
            return

    async def _read_loop(self, ws: Any) -> None:
        try:
            async for raw in ws:
                if self._stop_event.is_set():
                    break
                self.stats.messages_received += 1
                try:
                    records = decode_records(raw)
                except ValueError as exc:
                    self.stats.parse_errors += 1
                    logger.debug("ProjectX hub parse error", error=str(exc))
                    continue
                for record in records:
                    await self._handle_record(record)
        finally:
            self._fail_pending(HubProtocolError("Hub connection closed"))

    def _fail_pending(self, exc: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(exc)
        self._pending.clear()

    # -- message handling ---------------------------------------------------

    async def _handle_record(self, record: dict) -> None:
        kind = record.get("type")
        if kind == MSG_INVOCATION:
            await self._dispatch(record.get("target"), record.get("arguments") or [])
        elif kind == MSG_COMPLETION:
            future = self._pending.get(str(record.get("invocationId")))
            if future is not None and not future.done():
                if record.get("error"):
                    future.set_exception(HubProtocolError(str(record["error"])))
                else:
                    future.set_result(record.get("result"))
        elif kind == MSG_CLOSE:
            raise HubProtocolError(f"Hub closed the session: {record.get('error') or 'no reason'}")
        # MSG_PING and anything unknown need no reply

    async def _dispatch(self, target: Optional[str], arguments: list) -> None:
        if target == ORDER_EVENT:
            callbacks = self._order_callbacks
        elif target == POSITION_EVENT:
            callbacks = self._position_callbacks
        elif target == TRADE_EVENT:
            callbacks = self._trade_callbacks
        else:
            return
        if not arguments:
            return
        payload = unwrap_event(arguments[-1])
        if not isinstance(payload, dict):
            return

        self.stats.events_dispatched += 1
        for callback in list(callbacks):
            try:
                result = callback(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                self.stats.callback_errors += 1
                logger.error(
                    "ProjectX hub callback failed",
                    account_id=self.account_id,
                    target=target,
                    error=exception_text(exc),
                )
