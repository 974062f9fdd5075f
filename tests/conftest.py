from __future__ import annotations

import base64
import json
import os
import queue
import socket
import threading
from dataclasses import replace

import pytest

from xrrelay.codec import decode
from xrrelay.config import RelayRuntimeConfig
from xrrelay.heartbeat import LivenessMonitor
from xrrelay.history import HistoryBuffer
from xrrelay.messages import MessageHelper
from xrrelay.router import MessageRouter
from xrrelay.service import RelayService
from xrrelay.session import PING, Connection, ConnectionRegistry
from xrrelay.stats import StatsManager


class FakeSocket:
    """Stands in for a websockets ServerConnection."""

    def __init__(self) -> None:
        self.sent: list[str] = []
        self.pings: list[threading.Event] = []
        self.closed = False
        self.close_code: int | None = None

    def send(self, data: str) -> None:
        self.sent.append(data)

    def ping(self) -> threading.Event:
        ev = threading.Event()
        self.pings.append(ev)
        return ev

    def pong(self) -> None:
        self.pings[-1].set()

    def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed = True
        self.close_code = code


class RelayHarness:
    def __init__(self, config: RelayRuntimeConfig) -> None:
        self.config = config
        self.stats = StatsManager()
        self.registry = ConnectionRegistry(config)
        self.history = HistoryBuffer(config.history_capacity)
        self.messages = MessageHelper(self.registry, self.stats)
        self.router = MessageRouter(
            config, self.registry, self.history, self.messages, self.stats
        )
        self.closed: list[Connection] = []
        self.liveness = LivenessMonitor(
            config, self.registry, self.messages, self.stats, close=self.closed.append
        )

    def connect(self) -> Connection:
        return self.registry.admit(FakeSocket())

    def send(self, conn: Connection, obj) -> None:
        data = obj if isinstance(obj, (str, bytes)) else json.dumps(obj)
        self.router.route_frame(conn, data)

    def identify(self, conn: Connection, device_name: str, xr_id: str | None) -> None:
        self.send(
            conn, {"type": "identification", "deviceName": device_name, "xrId": xr_id}
        )

    def inbox(self, conn: Connection) -> list[dict]:
        """Drain the outbox the way the writer thread would; pings go to the socket."""
        out = []
        while True:
            try:
                item = conn.outbox.get_nowait()
            except queue.Empty:
                return out
            if item is PING:
                conn.transmit(item)
            else:
                out.append(decode(item))

    def flush(self, *conns: Connection) -> None:
        for c in conns:
            self.inbox(c)


@pytest.fixture
def config() -> RelayRuntimeConfig:
    return replace(RelayRuntimeConfig(), display_identities=("XR Glasses",))


@pytest.fixture
def relay(config: RelayRuntimeConfig) -> RelayHarness:
    return RelayHarness(config)


@pytest.fixture
def make_relay(config: RelayRuntimeConfig):
    def _make(**overrides) -> RelayHarness:
        return RelayHarness(replace(config, **overrides))

    return _make


@pytest.fixture
def live_relay(config: RelayRuntimeConfig):
    svc = RelayService(
        replace(config, host="127.0.0.1", port=0, heartbeat_interval_s=0, close_timeout_s=1.0)
    )
    svc.start()
    try:
        yield svc
    finally:
        svc.stop()


class RawPeer:
    """A WebSocket client that completes the handshake and never reads unless asked."""

    def __init__(self, port: int, *, rcvbuf: int | None = None) -> None:
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        if rcvbuf:
            self.sock.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, rcvbuf)
        self.sock.settimeout(5)
        self.sock.connect(("127.0.0.1", port))

        key = base64.b64encode(os.urandom(16)).decode("ascii")
        self.sock.sendall(
            (
                f"GET / HTTP/1.1\r\nHost: 127.0.0.1:{port}\r\n"
                "Upgrade: websocket\r\nConnection: Upgrade\r\n"
                f"Sec-WebSocket-Key: {key}\r\nSec-WebSocket-Version: 13\r\n\r\n"
            ).encode("ascii")
        )
        # One byte at a time so no frame bytes are consumed with the headers.
        head = b""
        while not head.endswith(b"\r\n\r\n"):
            chunk = self.sock.recv(1)
            if not chunk:
                raise ConnectionError("handshake aborted")
            head += chunk
        assert head.startswith(b"HTTP/1.1 101")

    def send_json(self, obj) -> None:
        payload = json.dumps(obj).encode("utf-8")
        assert len(payload) < 126
        # FIN + text opcode, masked with an all-zero key.
        self.sock.sendall(bytes([0x81, 0x80 | len(payload)]) + b"\x00" * 4 + payload)

    def read_until_eof(self) -> bytes:
        data = b""
        while True:
            chunk = self.sock.recv(65536)
            if not chunk:
                return data
            data += chunk

    def close(self) -> None:
        self.sock.close()


@pytest.fixture
def raw_peer(live_relay: RelayService):
    peers: list[RawPeer] = []

    def _open(**kwargs) -> RawPeer:
        peer = RawPeer(live_relay.port, **kwargs)
        peers.append(peer)
        return peer

    yield _open
    for peer in peers:
        peer.close()
