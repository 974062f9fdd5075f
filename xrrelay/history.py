"""Bounded chat history replayed to late joiners."""

from __future__ import annotations

import threading
import time
from collections import deque
from typing import Any

from .constants import HISTORY_CAPACITY
from .util import now_iso


class HistoryBuffer:
    """
    Append-only log of the most recent chat messages.

    Each appended message gets a server-assigned ``id`` and ``timestamp``.
    Ids follow wall-clock milliseconds but are bumped when needed so they
    stay strictly increasing. Once ``capacity`` is exceeded the oldest entry
    is evicted.
    """

    def __init__(self, capacity: int = HISTORY_CAPACITY) -> None:
        if capacity <= 0:
            raise ValueError("history capacity must be positive")
        self.capacity = int(capacity)
        self._lock = threading.Lock()
        self._items: deque[dict[str, Any]] = deque(maxlen=self.capacity)
        self._last_id = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def _next_id(self) -> int:
        mid = max(int(time.time() * 1000), self._last_id + 1)
        self._last_id = mid
        return mid

    def append(self, message: dict[str, Any]) -> dict[str, Any]:
        """Store a copy of ``message`` and return the stored copy."""
        with self._lock:
            stored = dict(message)
            stored["id"] = self._next_id()
            stored["timestamp"] = now_iso()
            self._items.append(stored)
            return dict(stored)

    def recent(self, k: int) -> list[dict[str, Any]]:
        if k <= 0:
            return []
        with self._lock:
            items = list(self._items)
        return [dict(m) for m in items[-k:]]

    def clear(self) -> None:
        with self._lock:
            self._items.clear()
