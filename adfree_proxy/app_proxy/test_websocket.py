import asyncio
from types import SimpleNamespace

import aiohttp
import pytest
from starlette.websockets import WebSocket, WebSocketState

from adfree_proxy.app_proxy.dispatcher import (
    ProxyDispatcher,
    pump_client_to_upstream,
    pump_upstream_to_client,
    relay_frames,
)
from adfree_proxy.blocklist import BlocklistStore, RequestFilter
from adfree_proxy.cookies import CookieJar
from adfree_proxy.rewrite import ResponseRewriter
from adfree_proxy.vars import ProxyConfig


class FakeClientSocket:
    """Stands in for the Starlette WebSocket on the client side."""

    def __init__(self, messages=None, block=False):
        self._messages = list(messages or [])
        self._block = block
        self.sent = []
        self.closed_with = None
        self.application_state = WebSocketState.CONNECTED
        self.client_state = WebSocketState.CONNECTED

    async def receive(self):
        if self._messages:
            return self._messages.pop(0)
        if self._block:
            await asyncio.Event().wait()
        return {"type": "websocket.disconnect", "code": 1000}

    async def send_text(self, data):
        self.sent.append(("text", data))

    async def send_bytes(self, data):
        self.sent.append(("bytes", data))

    async def close(self, code=1000, reason=None):
        self.closed_with = code
        self.application_state = WebSocketState.DISCONNECTED


class FakeUpstream:
    """Stands in for an aiohttp ClientWebSocketResponse."""

    def __init__(self, messages=None, block=False):
        self._messages = list(messages or [])
        self._block = block
        self.sent = []
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self._messages:
            return self._messages.pop(0)
        if self._block:
            await asyncio.Event().wait()
        raise StopAsyncIteration

    async def send_str(self, data):
        self.sent.append(("text", data))

    async def send_bytes(self, data):
        self.sent.append(("bytes", data))

    async def close(self):
        self.closed = True


def frame(kind, data):
    return SimpleNamespace(type=kind, data=data)


class TestPumps:
    @pytest.mark.asyncio
    async def test_client_frames_reach_upstream(self):
        client = FakeClientSocket(
            [
                {"type": "websocket.receive", "text": "hello"},
                {"type": "websocket.receive", "bytes": b"\x00\x01"},
            ]
        )
        upstream = FakeUpstream()

        await pump_client_to_upstream(client, upstream)

        assert upstream.sent == [("text", "hello"), ("bytes", b"\x00\x01")]

    @pytest.mark.asyncio
    async def test_upstream_frames_reach_client(self):
        upstream = FakeUpstream(
            [
                frame(aiohttp.WSMsgType.TEXT, '{"type":"pong"}'),
                frame(aiohttp.WSMsgType.BINARY, b"\x02"),
            ]
        )
        client = FakeClientSocket()

        await pump_upstream_to_client(upstream, client)

        assert client.sent == [("text", '{"type":"pong"}'), ("bytes", b"\x02")]

    @pytest.mark.asyncio
    async def test_upstream_error_frame_stops_pump(self):
        upstream = FakeUpstream(
            [
                frame(aiohttp.WSMsgType.ERROR, RuntimeError("reset")),
                frame(aiohttp.WSMsgType.TEXT, "never"),
            ]
        )
        client = FakeClientSocket()

        await pump_upstream_to_client(upstream, client)

        assert client.sent == []


class TestRelayFrames:
    @pytest.mark.asyncio
    async def test_client_disconnect_closes_upstream(self):
        client = FakeClientSocket([{"type": "websocket.receive", "text": "bye"}])
        client.application_state = WebSocketState.DISCONNECTED
        upstream = FakeUpstream(block=True)

        await asyncio.wait_for(relay_frames(client, upstream), timeout=2)

        assert upstream.sent == [("text", "bye")]
        assert upstream.closed
        assert client.closed_with is None

    @pytest.mark.asyncio
    async def test_upstream_close_closes_client(self):
        client = FakeClientSocket(block=True)
        upstream = FakeUpstream([frame(aiohttp.WSMsgType.TEXT, "last")])

        await asyncio.wait_for(relay_frames(client, upstream), timeout=2)

        assert client.sent == [("text", "last")]
        assert client.closed_with == 1000
        assert upstream.closed

    @pytest.mark.asyncio
    async def test_failing_pump_still_closes_both_sides(self):
        class BrokenUpstream(FakeUpstream):
            async def send_str(self, data):
                raise ConnectionResetError("gone")

        client = FakeClientSocket([{"type": "websocket.receive", "text": "x"}], block=True)
        upstream = BrokenUpstream(block=True)

        await asyncio.wait_for(relay_frames(client, upstream), timeout=2)

        assert upstream.closed
        assert client.closed_with == 1000


def make_websocket(path="/ws", query="", headers=None):
    headers = {"host": "localhost:5555", **(headers or {})}
    scope = {
        "type": "websocket",
        "path": path,
        "raw_path": path.encode(),
        "root_path": "",
        "query_string": query.encode(),
        "headers": [(k.lower().encode(), v.encode()) for k, v in headers.items()],
        "scheme": "ws",
        "server": ("localhost", 5555),
        "client": ("127.0.0.1", 40000),
        "subprotocols": [],
    }

    async def receive():
        return {"type": "websocket.connect"}

    async def send(message):
        pass

    return WebSocket(scope, receive, send)


class TestWebSocketHeaders:
    @pytest.fixture
    def dispatcher(self, mock_transport_client):
        jar = CookieJar(None)
        jar.set("open.spotify.com", ["sp_dc=secret; Domain=.spotify.com"])
        config = ProxyConfig(
            upstream_url="https://open.spotify.com",
            upstream_ws_url="wss://dealer.spotify.com/ws",
            cookie_store_path=None,
        )
        return ProxyDispatcher(
            config,
            RequestFilter(BlocklistStore("https://lists.example/hosts.txt")),
            jar,
            ResponseRewriter(),
            mock_transport_client(lambda request: None),
        )

    def test_target_keeps_query(self, dispatcher):
        websocket = make_websocket(query="access_token=abc")
        assert (
            dispatcher.websocket_target_url(websocket)
            == "wss://dealer.spotify.com/ws?access_token=abc"
        )

    def test_headers_carry_jar_cookies_and_upstream_origin(self, dispatcher):
        websocket = make_websocket(
            headers={
                "origin": "http://localhost:5555",
                "sec-websocket-key": "abc==",
                "x-forwarded-for": "10.0.0.1",
                "cookie": "theme=dark",
            }
        )

        headers = dispatcher.websocket_headers(websocket)

        assert headers["origin"] == "https://open.spotify.com"
        assert headers["cookie"] == "sp_dc=secret; theme=dark"
        assert "sec-websocket-key" not in headers
        assert "x-forwarded-for" not in headers
        assert "host" not in headers
