import asyncio
import sys
from contextlib import asynccontextmanager
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from services.projectx_hub import (
    MSG_COMPLETION,
    MSG_INVOCATION,
    ORDER_EVENT,
    TRADE_EVENT,
    ConnectionState,
    HubProtocolError,
    ProjectXHubConnection,
    backoff_delay,
    build_hub_url,
    decode_records,
    encode_record,
    unwrap_event,
)


class FakeHubSocket:
    """Answers the handshake and every invocation like a healthy hub.

    With ``reject_invocations`` the handshake still succeeds but every
    invocation completes with an error, as a hub refusing a stale token does.
    """

    def __init__(self, reject_invocations: bool = False):
        self.reject_invocations = reject_invocations
        self.sent: list[dict] = []
        self._incoming: asyncio.Queue = asyncio.Queue()
        self.closed = False

    async def send(self, text: str) -> None:
        for record in decode_records(text):
            self.sent.append(record)
            if record.get("protocol") == "json":
                await self._incoming.put("{}\x1e")
            elif record.get("type") == MSG_INVOCATION:
                completion = {"type": MSG_COMPLETION, "invocationId": record["invocationId"]}
                if self.reject_invocations:
                    completion["error"] = "Unauthorized"
                else:
                    completion["result"] = None
                await self._incoming.put(encode_record(completion))

    async def recv(self) -> str:
        return await self._incoming.get()

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        item = await self._incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item

    def push(self, record: dict) -> None:
        self._incoming.put_nowait(encode_record(record))

    def drop(self) -> None:
        self._incoming.put_nowait(None)

    async def close(self) -> None:
        self.closed = True
        self._incoming.put_nowait(None)

    @property
    def invoked(self) -> list[str]:
        return [r["target"] for r in self.sent if r.get("type") == MSG_INVOCATION]


class FakeConnector:
    def __init__(self, fail: bool = False, reject_invocations: bool = False):
        self.fail = fail
        self.reject_invocations = reject_invocations
        self.urls: list[str] = []
        self.sockets: list[FakeHubSocket] = []

    def __call__(self, url: str, **kwargs):
        self.urls.append(url)
        if self.fail:
            raise ConnectionRefusedError("hub unreachable")
        socket = FakeHubSocket(reject_invocations=self.reject_invocations)
        self.sockets.append(socket)

        @asynccontextmanager
        async def _session():
            yield socket

        return _session()


async def _token() -> str:
    return "jwt-token"


def _hub(connector: FakeConnector, **kwargs) -> ProjectXHubConnection:
    options = dict(
        hub_url="https://rtc.example.com/hubs/user",
        handshake_timeout=1.0,
        reconnect_base_delay=0.01,
        reconnect_max_delay=0.05,
        max_reconnect_attempts=3,
        connect=connector,
    )
    options.update(kwargs)
    return ProjectXHubConnection(1001, _token, **options)


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


SUBSCRIPTIONS = ["SubscribeAccounts", "SubscribeOrders", "SubscribePositions", "SubscribeTrades"]


def test_build_hub_url_switches_scheme_and_appends_token():
    assert build_hub_url("https://rtc.topstepx.com/hubs/user", "abc") == "wss://rtc.topstepx.com/hubs/user?access_token=abc"
    assert build_hub_url("http://localhost:5000/hubs/user?x=1", "a b") == "ws://localhost:5000/hubs/user?x=1&access_token=a+b"


def test_backoff_delay_doubles_until_capped():
    assert [backoff_delay(n, 1.0, 30.0) for n in (1, 2, 3, 4, 5, 6)] == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0]


def test_unwrap_event_returns_inner_data():
    assert unwrap_event({"action": 1, "data": {"id": 5}}) == {"id": 5}
    assert unwrap_event({"id": 5}) == {"id": 5}


def test_records_round_trip_through_separator():
    frame = encode_record({"type": 6}) + encode_record({"type": 1, "target": "X", "arguments": []})
    assert [r["type"] for r in decode_records(frame)] == [6, 1]


def test_non_numeric_account_id_is_rejected():
    with pytest.raises(ValueError):
        ProjectXHubConnection("PRAC-V2-1001", _token, connect=FakeConnector())


@pytest.mark.asyncio
async def test_dispatch_isolates_failing_callbacks():
    hub = _hub(FakeConnector())
    received = []

    def broken(_payload):
        raise RuntimeError("boom")

    async def healthy(payload):
        received.append(payload)

    hub.on_order(broken)
    hub.on_order(healthy)
    await hub._handle_record(
        {"type": MSG_INVOCATION, "target": ORDER_EVENT, "arguments": [1001, {"action": 1, "data": {"id": 5001}}]}
    )

    assert received == [{"id": 5001}]
    assert hub.stats.callback_errors == 1
    assert hub.stats.events_dispatched == 1


@pytest.mark.asyncio
async def test_close_record_raises_protocol_error():
    hub = _hub(FakeConnector())
    with pytest.raises(HubProtocolError):
        await hub._handle_record({"type": 7, "error": "token expired"})


@pytest.mark.asyncio
async def test_connects_subscribes_and_delivers_events():
    connector = FakeConnector()
    hub = _hub(connector)
    trades = []
    hub.on_trade(trades.append)

    await hub.start()
    try:
        await _wait_for(lambda: connector.sockets and len(connector.sockets[0].invoked) == 4)
        assert hub.state is ConnectionState.CONNECTED
        assert connector.urls == ["wss://rtc.example.com/hubs/user?access_token=jwt-token"]
        assert connector.sockets[0].invoked == SUBSCRIPTIONS
        subscribe_orders = [r for r in connector.sockets[0].sent if r.get("target") == "SubscribeOrders"][0]
        assert subscribe_orders["arguments"] == [1001]

        connector.sockets[0].push({"type": MSG_INVOCATION, "target": TRADE_EVENT, "arguments": [1001, {"id": 9001}]})
        await _wait_for(lambda: trades)
        assert trades == [{"id": 9001}]
    finally:
        await hub.stop()

    assert hub.state is ConnectionState.DISCONNECTED
    assert connector.sockets[0].invoked[4:] == [
        "UnsubscribeAccounts",
        "UnsubscribeOrders",
        "UnsubscribePositions",
        "UnsubscribeTrades",
    ]


@pytest.mark.asyncio
async def test_reconnect_reissues_every_subscription():
    connector = FakeConnector()
    hub = _hub(connector)

    await hub.start()
    try:
        await _wait_for(lambda: connector.sockets and len(connector.sockets[0].invoked) == 4)
        connector.sockets[0].drop()

        await _wait_for(lambda: len(connector.sockets) == 2 and len(connector.sockets[1].invoked) == 4)
        assert connector.sockets[1].invoked == SUBSCRIPTIONS
        assert hub.stats.reconnections == 1
        await _wait_for(lambda: hub.stats.subscribed_sessions == 2)
        assert hub.state is ConnectionState.CONNECTED
    finally:
        await hub.stop()


@pytest.mark.asyncio
async def test_gives_up_after_max_reconnect_attempts():
    connector = FakeConnector(fail=True)
    hub = _hub(connector, max_reconnect_attempts=2)

    await hub.start()
    await asyncio.wait_for(hub._run_task, timeout=2.0)

    assert len(connector.urls) == 3
    assert hub.stats.reconnections == 2
    assert hub.state is ConnectionState.DISCONNECTED
    await hub.stop()


@pytest.mark.asyncio
async def test_refused_subscriptions_still_back_off_and_give_up():
    connector = FakeConnector(reject_invocations=True)
    hub = _hub(connector, max_reconnect_attempts=2)

    await hub.start()
    await asyncio.wait_for(hub._run_task, timeout=2.0)

    # Every handshake succeeded, yet no session counts as subscribed
    assert len(connector.urls) == 3
    assert all(socket.invoked == ["SubscribeAccounts"] for socket in connector.sockets)
    assert hub.stats.subscribed_sessions == 0
    assert hub.stats.reconnections == 2
    assert hub.state is ConnectionState.DISCONNECTED
    await hub.stop()


@pytest.mark.asyncio
async def test_invoke_without_connection_fails_fast():
    hub = _hub(FakeConnector())
    with pytest.raises(HubProtocolError):
        await hub.invoke("SubscribeOrders", 1001)
