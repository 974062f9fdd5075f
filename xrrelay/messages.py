"""Outbound event construction and fan-out helpers for the relay."""

from __future__ import annotations

import logging
from typing import Any, Iterable

from .codec import encode
from .constants import T_DEVICE_LIST, T_MESSAGE_HISTORY, Role
from .envelope import make_envelope
from .session import Connection, ConnectionRegistry
from .stats import StatsManager


class MessageHelper:
    """
    Encodes outbound events and queues them on recipients' outboxes.

    Handles:
    - Delivery to a single connection (non-blocking, dropped when the outbox is full)
    - Fan-out policies: all, all-but-sender, identified-but-sender, role, target id
    - The participant list broadcast (session entry/exit notifier)
    - History replay for new connections

    Fan-out runs with the registry lock held, so frames reach each recipient's
    outbox in the order they were accepted.
    """

    def __init__(self, registry: ConnectionRegistry, stats: StatsManager) -> None:
        self.registry = registry
        self.stats = stats
        self.log = logging.getLogger("xrrelay.relay")

    def deliver(self, conn: Connection, payload: str) -> bool:
        if conn.enqueue(payload):
            self.stats.inc("bytes_out", len(payload))
            return True
        self.stats.inc("send_dropped")
        self.log.warning(
            "Dropped outbound frame cid=%s (%s) bytes=%s closed=%s",
            conn.cid,
            conn.label,
            len(payload),
            conn.closed.is_set(),
        )
        return False

    def _fan_out(self, recipients: Iterable[Connection], env: dict) -> int:
        payload = encode(env)
        return sum(1 for c in recipients if self.deliver(c, payload))

    def broadcast_all(self, env: dict) -> int:
        with self.registry.lock:
            return self._fan_out(self.registry.connections(), env)

    def broadcast_except(self, sender: Connection, env: dict) -> int:
        with self.registry.lock:
            return self._fan_out(self.registry.find(lambda c: c is not sender), env)

    def broadcast_identified_except(self, sender: Connection, env: dict) -> int:
        with self.registry.lock:
            return self._fan_out(
                self.registry.find(lambda c: c is not sender and c.identified), env
            )

    def send_to_role(self, role: Role, env: dict) -> int:
        with self.registry.lock:
            return self._fan_out(self.registry.find(lambda c: c.role is role), env)

    def send_to_target(self, sender: Connection, target: str, env: dict) -> int:
        """Deliver to every identified connection whose xrId or deviceName is ``target``."""
        with self.registry.lock:
            return self._fan_out(
                self.registry.find(lambda c: c is not sender and c.matches(target)),
                env,
            )

    def broadcast_device_list(self) -> list[dict[str, Any]]:
        with self.registry.lock:
            devices = self.registry.participants()
            sent = self.broadcast_all(make_envelope(T_DEVICE_LIST, devices=devices))
        self.log.debug("device_list devices=%s recipients=%s", len(devices), sent)
        return devices

    def send_history(self, conn: Connection, messages: list[dict[str, Any]]) -> bool:
        if not messages:
            return False
        return self.deliver(conn, encode(make_envelope(T_MESSAGE_HISTORY, messages=messages)))
