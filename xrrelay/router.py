from __future__ import annotations

import logging
from typing import Any

from .codec import decode
from .config import RelayRuntimeConfig
from .constants import (
    PRIORITY_NORMAL,
    T_CLEAR_ACK,
    T_CONTROL_COMMAND,
    T_MESSAGE_CLEARED,
    T_STATUS_REPORT,
    Role,
)
from .envelope import (
    ChatMessage,
    ClearConfirmation,
    ClearMessages,
    ControlCommand,
    Identification,
    Signal,
    StatusReport,
    UnknownMessageType,
    make_envelope,
    parse_envelope,
)
from .history import HistoryBuffer
from .messages import MessageHelper
from .session import Connection, ConnectionRegistry
from .stats import StatsManager
from .util import now_iso, now_ms


def _sender_label(conn: Connection) -> str | None:
    return conn.xr_id or conn.device_name


class MessageRouter:
    """
    Classifies inbound frames and fans them out.

    This class is responsible for:
    - Decoding and validating frames into envelope variants
    - Dispatching by type (identification, chat, clear, signaling, control, status)
    - Choosing recipients per type (all, all-but-sender, role, target id)
    - Rate limiting

    Nothing is ever sent back to a client to report a problem: bad, unknown
    and unroutable frames are logged and dropped.
    """

    def __init__(
        self,
        config: RelayRuntimeConfig,
        registry: ConnectionRegistry,
        history: HistoryBuffer,
        messages: MessageHelper,
        stats: StatsManager,
    ) -> None:
        self.config = config
        self.registry = registry
        self.history = history
        self.messages = messages
        self.stats = stats
        self.log = logging.getLogger("xrrelay.router")

    def route_frame(self, conn: Connection, data: str | bytes) -> None:
        """Main entry point for one inbound frame from ``conn``."""
        if conn not in self.registry:
            return

        self.stats.inc("frames_in")
        self.stats.inc("bytes_in", len(data))

        if not self.registry.refill_and_take(conn):
            self.stats.inc("rate_limited")
            self.log.debug("Rate limited cid=%s (%s)", conn.cid, conn.label)
            return

        try:
            env = decode(data)
            msg = parse_envelope(env)
        except UnknownMessageType as e:
            self.stats.inc("unknown_types")
            self.log.warning(
                "Unknown type %r from cid=%s (%s); dropped", e.msg_type, conn.cid, conn.label
            )
            return
        except (TypeError, ValueError) as e:
            # json.JSONDecodeError is a ValueError.
            self.stats.inc("frames_bad")
            self.log.warning(
                "Bad frame from cid=%s (%s) bytes=%s err=%s; dropped",
                conn.cid,
                conn.label,
                len(data),
                e,
            )
            return

        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug(
                "RX cid=%s (%s) %s bytes=%s",
                conn.cid,
                conn.label,
                type(msg).__name__,
                len(data),
            )

        if isinstance(msg, Identification):
            self._handle_identification(conn, msg)
        elif isinstance(msg, ChatMessage):
            self._handle_message(conn, msg)
        elif isinstance(msg, ClearMessages):
            self._handle_clear_messages(conn, msg)
        elif isinstance(msg, ClearConfirmation):
            self._handle_clear_confirmation(conn, msg)
        elif isinstance(msg, Signal):
            self._handle_signal(conn, msg)
        elif isinstance(msg, ControlCommand):
            self._handle_control_command(conn, msg)
        elif isinstance(msg, StatusReport):
            self._handle_status_report(conn, msg)

    def _handle_identification(self, conn: Connection, msg: Identification) -> None:
        with self.registry.lock:
            if not self.registry.identify(conn, msg.device_name, msg.xr_id):
                return
            self.stats.inc("identifications")
            self.messages.broadcast_device_list()

    def _handle_message(self, conn: Connection, msg: ChatMessage) -> None:
        fields: dict[str, Any] = dict(msg.fields)
        if fields.get("sender") is None and conn.device_name:
            fields["sender"] = conn.device_name
        if fields.get("xrId") is None and conn.xr_id:
            fields["xrId"] = conn.xr_id
        fields.setdefault("priority", PRIORITY_NORMAL)

        with self.registry.lock:
            stored = self.history.append(fields)
            sent = self.messages.broadcast_identified_except(conn, stored)

        self.stats.inc("msgs_forwarded", sent)
        self.log.info(
            "Message id=%s from %s priority=%s recipients=%s",
            stored["id"],
            conn.label,
            stored.get("priority"),
            sent,
        )

    def _handle_clear_messages(self, conn: Connection, msg: ClearMessages) -> None:
        # Cosmetic: history is kept for late-joiner replay.
        event = make_envelope(T_MESSAGE_CLEARED, by=msg.by, messageId=now_ms())
        sent = self.messages.broadcast_all(event)
        self.log.info("Clear requested by %r recipients=%s", msg.by, sent)

    def _handle_clear_confirmation(self, conn: Connection, msg: ClearConfirmation) -> None:
        event = make_envelope(T_CLEAR_ACK, by=msg.device, timestamp=now_iso())
        sent = self.messages.send_to_role(Role.CONTROL, event)
        if not sent:
            self.log.info("Clear confirmation from %r: no control device connected", msg.device)

    def _handle_signal(self, conn: Connection, msg: Signal) -> None:
        env = dict(msg.fields)
        if env.get("from") is None and _sender_label(conn):
            env["from"] = _sender_label(conn)

        if msg.to is None:
            sent = self.messages.broadcast_except(conn, env)
            self.log.info(
                "Signal %s from %r without target, broadcast recipients=%s",
                msg.type,
                env.get("from"),
                sent,
            )
        else:
            sent = self.messages.send_to_target(conn, msg.to, env)
            if not sent:
                self.stats.inc("signals_unroutable")
                self.log.warning(
                    "Signal %s from %r: no connection with xrId/deviceName %r; dropped",
                    msg.type,
                    env.get("from"),
                    msg.to,
                )
                return
            self.log.info(
                "Signal %s from %r to %r recipients=%s",
                msg.type,
                env.get("from"),
                msg.to,
                sent,
            )
        self.stats.inc("signals_forwarded", sent)

    def _handle_control_command(self, conn: Connection, msg: ControlCommand) -> None:
        sender = msg.sender or _sender_label(conn)
        event = make_envelope(T_CONTROL_COMMAND, command=msg.command, **{"from": sender})
        sent = self.messages.broadcast_all(event)
        self.stats.inc("control_commands")
        self.log.info("Control command %r from %r recipients=%s", msg.command, sender, sent)

    def _handle_status_report(self, conn: Connection, msg: StatusReport) -> None:
        sender = msg.sender or _sender_label(conn)
        event = make_envelope(
            T_STATUS_REPORT,
            status=msg.status,
            timestamp=now_iso(),
            **{"from": sender},
        )
        sent = self.messages.send_to_role(Role.CONTROL, event)
        self.stats.inc("status_reports")
        self.log.info("Status report from %r recipients=%s", sender, sent)
