"""
Shared fakes for the tdcheck test suite.

``FakeServer`` scripts the messaging service: it hands out fake websockets
per token and answers commands the way the real server does (confirms,
message echo and delivery, call answer and leave). Behaviour switches let
a test drop any of those replies.
"""

from __future__ import annotations

import asyncio
import json
from collections import defaultdict
from typing import Any, Dict, List, NamedTuple, Optional

import aiohttp
import pytest

from config.settings import ProbeSettings, ServerConfig
from exceptions.probe import AuthFailedError, DialFailedError
from messenger.connection import EventConnection


ADDRESSES = {
    "alice-token": "alice@team-1",
    "bob-token": "bob@team-1",
}


class FakeMessage(NamedTuple):
    type: aiohttp.WSMsgType
    data: Any


# ============================================================================
# WEBSOCKET
# ============================================================================

class FakeWebSocket:
    """In-memory stand-in for ``aiohttp.ClientWebSocketResponse``."""

    def __init__(self, server: Optional["FakeServer"] = None, token: str = ""):
        self.server = server
        self.token = token
        self.sent: List[Dict[str, Any]] = []
        self.closed = False
        self.close_calls = 0
        self._incoming: asyncio.Queue = asyncio.Queue()

    async def receive(self) -> FakeMessage:
        return await self._incoming.get()

    async def send_bytes(self, data: bytes) -> None:
        if self.closed:
            raise ConnectionResetError("socket closed")
        frame = json.loads(data)
        self.sent.append(frame)
        if self.server is not None:
            self.server.handle(self, frame)

    async def close(self) -> None:
        self.close_calls += 1
        if not self.closed:
            self.closed = True
            self._incoming.put_nowait(FakeMessage(aiohttp.WSMsgType.CLOSED, None))

    def exception(self) -> Optional[BaseException]:
        return None

    # --- server side ---

    def push(self, name: str, params: Optional[Dict[str, Any]] = None, confirm_id: Optional[str] = None) -> None:
        frame: Dict[str, Any] = {"event": name, "params": params or {}}
        if confirm_id:
            frame["confirm_id"] = confirm_id
        self.push_raw(json.dumps(frame).encode("utf-8"))

    def push_raw(self, data: Any, msg_type: aiohttp.WSMsgType = aiohttp.WSMsgType.BINARY) -> None:
        self._incoming.put_nowait(FakeMessage(msg_type, data))

    def drop(self) -> None:
        """The server hangs up."""
        self._incoming.put_nowait(FakeMessage(aiohttp.WSMsgType.CLOSE, None))

    def sent_names(self) -> List[str]:
        return [frame["event"] for frame in self.sent]


# ============================================================================
# SERVER
# ============================================================================

class FakeServer:
    """Scripted messaging service shared by every fake socket of a test."""

    def __init__(self, reply_delay: float = 0.0):
        self.reply_delay = reply_delay
        self.confirm_pings = True
        self.echo_messages = True
        self.deliver_messages = True
        self.answer_calls = True
        self.confirm_leave = True
        self.sockets: Dict[str, List[FakeWebSocket]] = defaultdict(list)
        self.frames: List[Dict[str, Any]] = []

    def connect(self, token: str) -> FakeWebSocket:
        ws = FakeWebSocket(self, token)
        self.sockets[token].append(ws)
        return ws

    def live_socket(self, token: str) -> Optional[FakeWebSocket]:
        for ws in reversed(self.sockets[token]):
            if not ws.closed:
                return ws
        return None

    def _reply(self, ws: Optional[FakeWebSocket], name: str, params: Dict[str, Any]) -> None:
        if ws is None or ws.closed:
            return
        if self.reply_delay:
            asyncio.get_running_loop().call_later(self.reply_delay, ws.push, name, params)
        else:
            ws.push(name, params)

    def handle(self, ws: FakeWebSocket, frame: Dict[str, Any]) -> None:
        self.frames.append(frame)
        name = frame["event"]
        params = frame.get("params") or {}

        if name == "client.ping" and self.confirm_pings:
            self._reply(ws, "server.confirm", {"confirm_id": frame["confirm_id"]})

        elif name == "client.message.updated":
            message = {"message_id": params["message_id"], "push_text": params["content"]["text"]}
            if self.echo_messages:
                self._reply(ws, "server.message.updated", {"messages": [message], "delayed": True})
            if self.deliver_messages:
                recipient = next(
                    (t for t, jid in ADDRESSES.items() if jid == params["to"]), None
                )
                target = self.live_socket(recipient) if recipient else None
                self._reply(target, "server.message.updated", {"messages": [message], "delayed": False})

        elif name == "client.call.offer" and self.answer_calls:
            self._reply(ws, "server.call.answer", {"jid": params["jid"], "jsep": {"type": "answer", "sdp": "v=0 fake-answer"}})

        elif name == "client.call.leave" and self.confirm_leave:
            self._reply(ws, "server.call.leave", {"jid": params["jid"]})


# ============================================================================
# REMOTE SERVICE
# ============================================================================

class FakeCallPeer:
    def __init__(self, relay: str):
        self.relay = relay
        self.offer_sdp = "v=0 fake-offer"
        self.answers: List[str] = []
        self.closed = False

    async def apply_answer(self, sdp: str) -> None:
        self.answers.append(sdp)

    async def close(self) -> None:
        self.closed = True


class FakeApiSession:
    def __init__(self, service: "FakeService", token: str):
        self.service = service
        self.token = token
        self.closed = False

    async def resolve_identity(self, team: str) -> str:
        self.service.resolve_calls += 1
        return ADDRESSES[self.token]

    async def open_event_stream(self, team: str, on_fault=None, label: str = "ws") -> EventConnection:
        if self.service.fail_dial:
            raise DialFailedError("dial refused", target=label)
        self.service.streams_opened += 1
        ws = self.service.server.connect(self.token)
        return EventConnection(ws, label=label, on_fault=on_fault).start()

    async def fetch_relay_endpoint(self) -> str:
        self.service.relay_calls += 1
        return "turn:relay.test:3478"

    async def close(self) -> None:
        self.closed = True


class FakeService:
    """``RemoteService`` over a ``FakeServer``."""

    def __init__(self, server: FakeServer, host: str = "probe.test"):
        self.server = server
        self.host = host
        self.fail_auth = False
        self.fail_dial = False
        self.ping_error: Optional[BaseException] = None
        self.auth_calls = 0
        self.resolve_calls = 0
        self.relay_calls = 0
        self.streams_opened = 0
        self.peers: List[FakeCallPeer] = []
        self.closed = False

    async def http_ping(self) -> None:
        if self.ping_error is not None:
            raise self.ping_error

    async def authenticate(self, token: str) -> FakeApiSession:
        self.auth_calls += 1
        await asyncio.sleep(0)
        if self.fail_auth:
            raise AuthFailedError("token refused", target=self.host)
        return FakeApiSession(self, token)

    async def open_call_peer(self, relay: str) -> FakeCallPeer:
        peer = FakeCallPeer(relay)
        self.peers.append(peer)
        return peer

    async def aclose(self) -> None:
        self.closed = True


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def fake_server() -> FakeServer:
    return FakeServer()


@pytest.fixture
def fake_service(fake_server: FakeServer) -> FakeService:
    return FakeService(fake_server)


@pytest.fixture
def probe_settings() -> ProbeSettings:
    return ProbeSettings(
        retry_interval=0.01,
        watchdog_ceiling=120,
        watchdog_decay_interval=60,
        max_timeouts=10,
    )


@pytest.fixture
def make_server():
    def _make(**overrides: Any) -> ServerConfig:
        data: Dict[str, Any] = {
            "host": "probe.test",
            "test_team": "team-1",
            "alice_token": "alice-token",
            "bob_token": "bob-token",
        }
        data.update(overrides)
        return ServerConfig(**data)

    return _make
