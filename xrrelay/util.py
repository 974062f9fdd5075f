from __future__ import annotations

import time
from datetime import datetime, timezone

from .constants import DEVICE_NAME_MAX_CHARS


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace(
        "+00:00", "Z"
    )


def normalize_label(value, *, max_chars: int = DEVICE_NAME_MAX_CHARS) -> str | None:
    """Clean up a self-declared device name or endpoint id.

    Returns None for anything that is not a usable label.
    """
    if not isinstance(value, str):
        return None

    s = value.strip()
    if not s:
        return None

    if max_chars > 0 and len(s) > int(max_chars):
        return None

    # Keep this conservative: avoid embedded newlines or NUL, which frequently
    # cause UI/log formatting issues.
    if "\n" in s or "\r" in s or "\x00" in s:
        return None

    return s


def now_ms() -> int:
    return int(time.time() * 1000)
