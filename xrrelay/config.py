from __future__ import annotations

from dataclasses import asdict, dataclass, replace

from .constants import HEARTBEAT_INTERVAL_S, HISTORY_CAPACITY, HISTORY_REPLAY


@dataclass(frozen=True)
class RelayRuntimeConfig:
    config_path: str | None = None
    host: str = "0.0.0.0"
    port: int = 8080
    history_capacity: int = HISTORY_CAPACITY
    history_replay: int = HISTORY_REPLAY
    heartbeat_interval_s: float = HEARTBEAT_INTERVAL_S
    max_frame_bytes: int = 1024 * 1024  # SDP offers can be large
    close_timeout_s: float = 5.0
    outbox_max_frames: int = 256
    rate_limit_msgs_per_minute: int = 0
    control_identities: tuple[str, ...] = ("Desktop App", "Desktop", "XR-1238")
    display_identities: tuple[str, ...] = ("XR Glasses Emulator", "XR Glasses")
    stats_interval_s: float = 0.0
    log_level: str = "INFO"
    log_websockets_level: str = "WARNING"
    log_console: bool = True
    log_file: str | None = None
    log_format: str = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
    log_datefmt: str | None = None


def load_toml(path: str) -> dict:
    import tomllib

    with open(path, "rb") as f:
        data = tomllib.load(f)
    return data if isinstance(data, dict) else {}


def apply_config_data(base: RelayRuntimeConfig, data: dict) -> RelayRuntimeConfig:
    relay = data.get("relay") if isinstance(data, dict) else None
    if isinstance(relay, dict):
        data = {**data, **relay}

    log_table = data.get("logging") if isinstance(data, dict) else None
    if isinstance(log_table, dict):
        mapped: dict[str, object] = {}
        if "level" in log_table:
            mapped["log_level"] = log_table.get("level")
        if "websockets_level" in log_table:
            mapped["log_websockets_level"] = log_table.get("websockets_level")
        if "console" in log_table:
            mapped["log_console"] = log_table.get("console")
        if "file" in log_table:
            mapped["log_file"] = log_table.get("file")
        if "format" in log_table:
            mapped["log_format"] = log_table.get("format")
        if "datefmt" in log_table:
            mapped["log_datefmt"] = log_table.get("datefmt")
        data = {**data, **mapped}

    roles = data.get("roles") if isinstance(data, dict) else None
    if isinstance(roles, dict):
        mapped = {}
        if "control" in roles:
            mapped["control_identities"] = roles.get("control")
        if "display" in roles:
            mapped["display_identities"] = roles.get("display")
        data = {**data, **mapped}

    allowed = set(asdict(base).keys())
    # This identifies where the file came from; do not let the file override it.
    allowed.discard("config_path")
    updates = {k: v for k, v in data.items() if k in allowed}

    for list_key in ("control_identities", "display_identities"):
        if list_key in updates and isinstance(updates[list_key], list):
            updates[list_key] = tuple(str(x) for x in updates[list_key])

    if "log_file" in updates and updates["log_file"] == "":
        updates["log_file"] = None
    if "log_datefmt" in updates and updates["log_datefmt"] == "":
        updates["log_datefmt"] = None

    return replace(base, **updates) if updates else base
