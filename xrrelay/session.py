from __future__ import annotations

import itertools
import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable

from .config import RelayRuntimeConfig
from .constants import Role

_connection_ids = itertools.count(1)

# Outbox marker: the writer thread sends a ping instead of a frame.
PING = object()


@dataclass
class _RateState:
    """Token bucket state for rate limiting."""

    tokens: float
    last_refill: float


@dataclass(frozen=True)
class ConnectionInfo:
    cid: int
    device_name: str | None
    xr_id: str | None
    role: Role
    alive: bool


class RoleMap:
    """Assigns a role from the identity a connection declares."""

    def __init__(
        self, control: Iterable[str] = (), display: Iterable[str] = ()
    ) -> None:
        self.control = frozenset(s for s in control if s)
        self.display = frozenset(s for s in display if s)

    @classmethod
    def from_config(cls, cfg: RelayRuntimeConfig) -> RoleMap:
        return cls(cfg.control_identities, cfg.display_identities)

    def role_for(self, device_name: str | None, xr_id: str | None) -> Role:
        names = {n for n in (device_name, xr_id) if n}
        if names & self.control:
            return Role.CONTROL
        if names & self.display:
            return Role.DISPLAY
        return Role.VIEWER


class Connection:
    """One open transport session and what it has told us about itself."""

    def __init__(self, ws: Any, *, outbox_max: int = 256) -> None:
        self.ws = ws
        self.cid = next(_connection_ids)
        self.device_name: str | None = None
        self.xr_id: str | None = None
        self.role = Role.UNIDENTIFIED
        self.alive = True
        self.pong_waiter: threading.Event | None = None
        self.outbox: queue.Queue[Any] = queue.Queue(maxsize=max(1, outbox_max))
        self.closed = threading.Event()

    @property
    def identified(self) -> bool:
        return self.role is not Role.UNIDENTIFIED

    @property
    def label(self) -> str:
        return f"{self.device_name or 'Unknown'} ({self.xr_id or 'no-id'})"

    def matches(self, target: str) -> bool:
        return self.identified and target in (self.xr_id, self.device_name)

    def enqueue(self, payload: Any) -> bool:
        """Queue a frame for the writer thread without blocking."""
        if self.closed.is_set():
            return False
        try:
            self.outbox.put_nowait(payload)
        except queue.Full:
            return False
        return True

    def request_ping(self) -> bool:
        """Queue a ping behind any frames already waiting for this connection."""
        return self.enqueue(PING)

    def transmit(self, item: Any) -> bool:
        """
        Write one outbox item to the transport; called from the writer thread.

        Returns True when the item was a ping. Only the thread draining the
        outbox touches the socket.
        """
        if item is PING:
            self.pong_waiter = self.ws.ping()
            return True
        self.ws.send(item)
        return False

    def info(self) -> ConnectionInfo:
        return ConnectionInfo(
            cid=self.cid,
            device_name=self.device_name,
            xr_id=self.xr_id,
            role=self.role,
            alive=self.alive,
        )

    def __repr__(self) -> str:
        return f"<Connection cid={self.cid} {self.label} role={self.role.value}>"


class ConnectionRegistry:
    """
    Live registry of every open connection.

    Every method takes ``lock``, which is re-entrant so callers can hold it
    across a compound operation (identify then broadcast, remove then
    broadcast) and never expose a half-applied change.
    """

    def __init__(self, config: RelayRuntimeConfig, roles: RoleMap | None = None) -> None:
        self.config = config
        self.roles = roles or RoleMap.from_config(config)
        self.log = logging.getLogger("xrrelay.session")
        self.lock = threading.RLock()
        self._conns: dict[int, Connection] = {}
        self._rate: dict[int, _RateState] = {}

    def __len__(self) -> int:
        with self.lock:
            return len(self._conns)

    def __contains__(self, conn: Connection) -> bool:
        with self.lock:
            return self._conns.get(conn.cid) is conn

    def admit(self, ws: Any) -> Connection:
        conn = Connection(ws, outbox_max=self.config.outbox_max_frames)
        with self.lock:
            self._conns[conn.cid] = conn
            self._rate[conn.cid] = _RateState(
                tokens=float(self.config.rate_limit_msgs_per_minute),
                last_refill=time.monotonic(),
            )
        self.log.info("Connection admitted cid=%s", conn.cid)
        return conn

    def identify(self, conn: Connection, device_name: str, xr_id: str | None) -> bool:
        """Record a connection's identity; a later call overwrites an earlier one."""
        with self.lock:
            if self._conns.get(conn.cid) is not conn:
                return False

            old = (conn.device_name, conn.xr_id)
            conn.device_name = device_name
            conn.xr_id = xr_id
            conn.role = self.roles.role_for(device_name, xr_id)

            if xr_id is not None:
                dupes = [
                    other.cid
                    for other in self._conns.values()
                    if other is not conn and other.identified and other.xr_id == xr_id
                ]
                if dupes:
                    self.log.warning(
                        "Duplicate xrId=%r claimed by cid=%s (also cid=%s); targeted "
                        "messages will reach all of them",
                        xr_id,
                        conn.cid,
                        ",".join(str(c) for c in dupes),
                    )

        if old != (None, None) and old != (device_name, xr_id):
            self.log.info(
                "Re-identified cid=%s %r/%r -> %r/%r", conn.cid, *old, device_name, xr_id
            )
        else:
            self.log.info(
                "Identified cid=%s as %s role=%s", conn.cid, conn.label, conn.role.value
            )
        return True

    def remove(self, conn: Connection) -> Connection | None:
        """Drop a connection. Only the first call for a given connection returns it."""
        with self.lock:
            if self._conns.get(conn.cid) is not conn:
                return None
            self._conns.pop(conn.cid, None)
            self._rate.pop(conn.cid, None)
            conn.closed.set()
        return conn

    def snapshot(self) -> list[ConnectionInfo]:
        with self.lock:
            return [c.info() for c in self._conns.values()]

    def connections(self) -> list[Connection]:
        with self.lock:
            return list(self._conns.values())

    def find(self, predicate: Callable[[Connection], bool]) -> list[Connection]:
        with self.lock:
            return [c for c in self._conns.values() if predicate(c)]

    def participants(self) -> list[dict[str, Any]]:
        with self.lock:
            return [
                {
                    "name": c.device_name,
                    "deviceName": c.device_name,
                    "xrId": c.xr_id,
                    "role": c.role.value,
                }
                for c in self._conns.values()
                if c.identified
            ]

    def refill_and_take(self, conn: Connection, cost: float = 1.0) -> bool:
        """
        Token bucket rate limiting.

        Returns True if the frame may be processed. Always True when the
        configured rate is 0.
        """
        per_min_cfg = int(self.config.rate_limit_msgs_per_minute)
        if per_min_cfg <= 0:
            return True

        with self.lock:
            state = self._rate.get(conn.cid)
            if state is None:
                return True

            now = time.monotonic()
            per_min = float(per_min_cfg)
            elapsed = max(0.0, now - state.last_refill)
            state.tokens = min(per_min, state.tokens + elapsed * per_min / 60.0)
            state.last_refill = now

            if state.tokens < cost:
                return False

            state.tokens -= cost
            return True

    def clear_all(self) -> list[Connection]:
        with self.lock:
            conns = list(self._conns.values())
            self._conns.clear()
            self._rate.clear()
            for c in conns:
                c.closed.set()
        return conns

    def get_stats(self) -> dict[str, int]:
        with self.lock:
            conns = list(self._conns.values())
        by_role = {r: 0 for r in Role}
        for c in conns:
            by_role[c.role] += 1
        return {
            "total": len(conns),
            "identified": len(conns) - by_role[Role.UNIDENTIFIED],
            "control": by_role[Role.CONTROL],
            "display": by_role[Role.DISPLAY],
            "viewer": by_role[Role.VIEWER],
        }
