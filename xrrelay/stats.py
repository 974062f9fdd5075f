"""Statistics tracking and reporting for the relay."""

from __future__ import annotations

import threading
import time
from typing import Any

_COUNTERS = (
    "frames_in",
    "frames_bad",
    "bytes_in",
    "bytes_out",
    "unknown_types",
    "rate_limited",
    "identifications",
    "msgs_forwarded",
    "signals_forwarded",
    "signals_unroutable",
    "control_commands",
    "status_reports",
    "pings_out",
    "pongs_in",
    "evictions",
    "send_dropped",
)


class StatsManager:
    """
    Lifetime counters for the relay.

    Counters only ever grow after startup; ``snapshot`` returns a copy.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.started_wall_time: float | None = None
        self.started_monotonic: float | None = None
        self._counters: dict[str, int] = dict.fromkeys(_COUNTERS, 0)

    def set_start_time(self) -> None:
        self.started_wall_time = time.time()
        self.started_monotonic = time.monotonic()

    def inc(self, key: str, delta: int = 1) -> None:
        with self._lock:
            self._counters[key] = self._counters.get(key, 0) + int(delta)

    def get(self, key: str) -> int:
        with self._lock:
            return self._counters.get(key, 0)

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counters)

    def uptime_s(self) -> float:
        if self.started_monotonic is None:
            return 0.0
        return time.monotonic() - self.started_monotonic

    def format_stats(self, sessions: dict[str, Any], history_len: int) -> str:
        """One-line summary suitable for the log."""
        from . import __version__

        c = self.snapshot()
        parts = [
            f"xrrelay {__version__} stats",
            f"uptime_s={self.uptime_s():.1f}",
            "clients_total={} identified={} control={} display={} viewer={}".format(
                sessions.get("total", 0),
                sessions.get("identified", 0),
                sessions.get("control", 0),
                sessions.get("display", 0),
                sessions.get("viewer", 0),
            ),
            f"history={history_len}",
            "io: frames_in={} frames_bad={} bytes_in={} bytes_out={} send_dropped={}".format(
                c["frames_in"],
                c["frames_bad"],
                c["bytes_in"],
                c["bytes_out"],
                c["send_dropped"],
            ),
            "events: msgs_fwd={} signals_fwd={} signals_unroutable={} control={} "
            "status={} unknown={} rate_limited={}".format(
                c["msgs_forwarded"],
                c["signals_forwarded"],
                c["signals_unroutable"],
                c["control_commands"],
                c["status_reports"],
                c["unknown_types"],
                c["rate_limited"],
            ),
            "liveness: pings_out={} pongs_in={} evictions={}".format(
                c["pings_out"], c["pongs_in"], c["evictions"]
            ),
        ]
        return " | ".join(parts)
