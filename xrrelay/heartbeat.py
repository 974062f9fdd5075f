"""Relay-initiated liveness checks."""

from __future__ import annotations

import logging
import threading
from typing import Callable

from .config import RelayRuntimeConfig
from .messages import MessageHelper
from .session import Connection, ConnectionRegistry
from .stats import StatsManager


class LivenessMonitor:
    """
    Pings every connection on a fixed period and evicts the silent ones.

    A connection's ``alive`` flag is cleared before each probe and set again
    when the pong comes back. Probes are queued on the connection's outbox and
    never written from this thread. A connection still not alive at the next
    sweep is closed and removed, so one unanswered probe is enough to be
    evicted one period later.
    """

    def __init__(
        self,
        config: RelayRuntimeConfig,
        registry: ConnectionRegistry,
        messages: MessageHelper,
        stats: StatsManager,
        *,
        close: Callable[[Connection], None],
    ) -> None:
        self.config = config
        self.registry = registry
        self.messages = messages
        self.stats = stats
        self._close = close
        self.log = logging.getLogger("xrrelay.heartbeat")

    def _collect_pong(self, conn: Connection) -> None:
        waiter = conn.pong_waiter
        if waiter is not None and waiter.is_set():
            conn.pong_waiter = None
            conn.alive = True
            self.stats.inc("pongs_in")

    def sweep(self) -> tuple[list[Connection], list[Connection]]:
        """Run one probe cycle. Returns ``(evicted, probed)``."""
        evicted: list[Connection] = []
        to_probe: list[Connection] = []

        with self.registry.lock:
            for conn in self.registry.connections():
                self._collect_pong(conn)
                if not conn.alive:
                    if self.registry.remove(conn) is not None:
                        evicted.append(conn)
                        self.messages.broadcast_device_list()
                    continue
                conn.alive = False
                to_probe.append(conn)

        for conn in evicted:
            self.stats.inc("evictions")
            self.log.info("Terminating dead client cid=%s %s", conn.cid, conn.label)
            self._close(conn)

        for conn in to_probe:
            self._probe(conn)

        return evicted, to_probe

    def _probe(self, conn: Connection) -> None:
        # The ping goes out on the connection's writer thread. If the outbox is
        # full the probe is lost and the connection is evicted next cycle.
        if conn.request_ping():
            self.stats.inc("pings_out")
        else:
            self.log.debug("Ping not queued cid=%s (%s)", conn.cid, conn.label)

    def run(self, shutdown: threading.Event) -> None:
        interval = float(self.config.heartbeat_interval_s)
        if interval <= 0:
            return
        while not shutdown.wait(interval):
            try:
                self.sweep()
            except Exception:
                self.log.exception("Liveness sweep failed")
