from __future__ import annotations

import logging
import queue
import signal
import socket
import threading
import time
from typing import Any

from websockets.exceptions import ConnectionClosed
from websockets.sync.server import Server, ServerConnection, serve

from . import __version__
from .config import RelayRuntimeConfig
from .heartbeat import LivenessMonitor
from .history import HistoryBuffer
from .messages import MessageHelper
from .router import MessageRouter
from .session import Connection, ConnectionRegistry
from .stats import StatsManager

# Close code sent when the relay goes away (RFC 6455 "going away").
_CLOSE_GOING_AWAY = 1001


class RelayService:
    def __init__(self, config: RelayRuntimeConfig) -> None:
        self.config = config
        self.log = logging.getLogger("xrrelay.relay")

        self._shutdown = threading.Event()
        self._stopped = False

        self.stats_manager = StatsManager()

        # Connection registry and history are the only shared mutable state.
        # Handler threads, writer threads and the liveness monitor all go
        # through the registry's lock.
        self.registry = ConnectionRegistry(config)
        self.history = HistoryBuffer(config.history_capacity)

        self.message_helper = MessageHelper(self.registry, self.stats_manager)
        self.router = MessageRouter(
            config, self.registry, self.history, self.message_helper, self.stats_manager
        )
        self.liveness = LivenessMonitor(
            config,
            self.registry,
            self.message_helper,
            self.stats_manager,
            close=self._close_in_background,
        )

        self._server: Server | None = None
        self._serve_thread: threading.Thread | None = None
        self._heartbeat_thread: threading.Thread | None = None
        self._stats_thread: threading.Thread | None = None

    @property
    def port(self) -> int | None:
        if self._server is None:
            return None
        return self._server.socket.getsockname()[1]

    def start(self) -> None:
        self.log.info("Starting xrrelay %s", __version__)
        self.stats_manager.set_start_time()

        self._server = serve(
            self.handle_connection,
            self.config.host,
            self.config.port,
            # Liveness is handled by LivenessMonitor, not the library keepalive.
            ping_interval=None,
            max_size=self.config.max_frame_bytes,
            close_timeout=self.config.close_timeout_s,
        )
        self._serve_thread = threading.Thread(
            target=self._server.serve_forever, name="xrrelay-serve", daemon=True
        )
        self._serve_thread.start()

        if self.config.heartbeat_interval_s and self.config.heartbeat_interval_s > 0:
            self._heartbeat_thread = threading.Thread(
                target=self.liveness.run,
                args=(self._shutdown,),
                name="xrrelay-heartbeat",
                daemon=True,
            )
            self._heartbeat_thread.start()

        if self.config.stats_interval_s and self.config.stats_interval_s > 0:
            self._stats_thread = threading.Thread(
                target=self._stats_loop, name="xrrelay-stats", daemon=True
            )
            self._stats_thread.start()

        self.log.info(
            "Relay running on ws://%s:%s", self.config.host, self.port or self.config.port
        )
        self.log.info(
            "Policy history_capacity=%s history_replay=%s heartbeat_interval_s=%s "
            "rate_limit_msgs_per_minute=%s control=%s display=%s",
            self.config.history_capacity,
            self.config.history_replay,
            self.config.heartbeat_interval_s,
            self.config.rate_limit_msgs_per_minute,
            list(self.config.control_identities),
            list(self.config.display_identities),
        )

    def handle_connection(self, ws: ServerConnection) -> None:
        """Serve one transport connection; runs on its own server thread."""
        with self.registry.lock:
            conn = self.registry.admit(ws)
            # History goes out before anything else queued for this connection.
            self.message_helper.send_history(
                conn, self.history.recent(self.config.history_replay)
            )

        self.log.info(
            "Connection opened cid=%s remote=%s", conn.cid, getattr(ws, "remote_address", "-")
        )

        writer = threading.Thread(
            target=self._writer_loop,
            args=(conn,),
            name=f"xrrelay-writer-{conn.cid}",
            daemon=True,
        )
        writer.start()

        try:
            for data in ws:
                try:
                    self.router.route_frame(conn, data)
                except Exception:
                    self.log.exception(
                        "Unhandled error routing frame cid=%s (%s)", conn.cid, conn.label
                    )
        except ConnectionClosed as e:
            self.log.debug("Connection closed abnormally cid=%s: %s", conn.cid, e)
        except Exception:
            self.log.exception("Connection handler failed cid=%s", conn.cid)
        finally:
            self.drop(conn, reason="closed")

    def drop(self, conn: Connection, *, reason: str) -> bool:
        """Remove ``conn`` and announce the new participant list, once."""
        with self.registry.lock:
            if self.registry.remove(conn) is None:
                return False
            self.message_helper.broadcast_device_list()

        self.log.info("Disconnected cid=%s %s reason=%s", conn.cid, conn.label, reason)
        return True

    def _writer_loop(self, conn: Connection) -> None:
        while True:
            try:
                payload = conn.outbox.get(timeout=0.5)
            except queue.Empty:
                if conn.closed.is_set():
                    return
                continue

            if conn.closed.is_set():
                return

            try:
                conn.transmit(payload)
            except ConnectionClosed:
                self.log.debug("Send skipped, connection closed cid=%s", conn.cid)
                return
            except Exception:
                self.stats_manager.inc("send_dropped")
                self.log.debug("Send failed cid=%s", conn.cid, exc_info=True)

    def _terminate(self, conn: Connection) -> None:
        """Abort the TCP connection without waiting for the peer."""
        try:
            conn.ws.socket.shutdown(socket.SHUT_RDWR)
        except OSError:
            self.log.debug("Socket shutdown failed cid=%s", conn.cid, exc_info=True)

    def _close_transport(self, conn: Connection, reason: str = "") -> None:
        try:
            conn.ws.close(code=_CLOSE_GOING_AWAY, reason=reason)
        except Exception:
            self.log.debug("Close failed cid=%s", conn.cid, exc_info=True)

    def _close_in_background(self, conn: Connection) -> threading.Thread:
        # A dead peer never answers the close handshake, and a peer that stopped
        # reading leaves its writer holding the connection's send lock. Cut the
        # socket first so both the writer and the close below return.
        self._terminate(conn)
        t = threading.Thread(
            target=self._close_transport,
            args=(conn, "heartbeat timeout"),
            name=f"xrrelay-close-{conn.cid}",
            daemon=True,
        )
        t.start()
        return t

    def _stats_loop(self) -> None:
        while not self._shutdown.wait(float(self.config.stats_interval_s)):
            self.log.info(self.format_stats())

    def format_stats(self) -> str:
        return self.stats_manager.format_stats(self.registry.get_stats(), len(self.history))

    def run_forever(self) -> None:
        if self._server is None:
            self.start()

        signal.signal(signal.SIGINT, lambda *_: self._shutdown.set())
        signal.signal(signal.SIGTERM, lambda *_: self._shutdown.set())

        while not self._shutdown.is_set():
            time.sleep(0.25)

        self.log.info("Closing server...")
        self.stop()

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        self._shutdown.set()

        conns = self.registry.clear_all()
        closers: list[threading.Thread] = []
        for conn in conns:
            t = threading.Thread(
                target=self._close_transport,
                args=(conn, "server shutting down"),
                name=f"xrrelay-close-{conn.cid}",
                daemon=True,
            )
            t.start()
            closers.append(t)
        deadline = time.monotonic() + float(self.config.close_timeout_s) + 1.0
        for conn, t in zip(conns, closers):
            t.join(timeout=max(0.0, deadline - time.monotonic()))
            if t.is_alive():
                self.log.warning("Close handshake timed out cid=%s; aborting", conn.cid)
                self._terminate(conn)

        if self._server is not None:
            self._server.shutdown()

        self.log.info(self.format_stats())
        self.history.clear()
        self.log.info("Relay stopped (%d connection(s) closed)", len(conns))

    def __enter__(self) -> RelayService:
        self.start()
        return self

    def __exit__(self, *exc: Any) -> None:
        self.stop()
