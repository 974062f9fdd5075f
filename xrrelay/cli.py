from __future__ import annotations

import argparse
import os
import sys
from dataclasses import replace
from pathlib import Path

from .config import RelayRuntimeConfig, apply_config_data, load_toml
from .logging_config import configure_logging
from .paths import default_config_path, ensure_private_dir
from .service import RelayService


def _write_default_config(config_path: str) -> None:
    cfg_dir = os.path.dirname(config_path)
    if cfg_dir:
        ensure_private_dir(Path(cfg_dir))

    d = RelayRuntimeConfig()
    content = f"""# xrrelay configuration (TOML)
#
# This file was created on first run.
# Edit it, then start xrrelay again.

[relay]

# Address and port the WebSocket relay listens on.
# 0.0.0.0 accepts connections from any interface (LAN, tunnels).
host = {d.host!r}
port = {d.port}

# Chat history kept in memory for late joiners (not persisted).
# history_replay messages are sent to every new connection.
history_capacity = {d.history_capacity}
history_replay = {d.history_replay}

# Liveness checks (0 disables).
# Each cycle pings every connection; a connection that has not answered the
# previous ping by the next cycle is closed.
heartbeat_interval_s = {d.heartbeat_interval_s}

# Limits.
# max_frame_bytes bounds a single inbound WebSocket message (SDP offers can be
# tens of KiB). outbox_max_frames bounds how many frames may queue for a slow
# client before further frames to it are dropped.
max_frame_bytes = {d.max_frame_bytes}
outbox_max_frames = {d.outbox_max_frames}
close_timeout_s = {d.close_timeout_s}

# Per-connection inbound rate limit (0 disables).
rate_limit_msgs_per_minute = {d.rate_limit_msgs_per_minute}

# Log a one-line stats summary every N seconds (0 disables).
stats_interval_s = {d.stats_interval_s}

[roles]

# Identities (deviceName or xrId) treated as the control device. Control devices
# receive status reports and clear confirmations.
control = {list(d.control_identities)!r}

# Identities treated as the wearable display.
display = {list(d.display_identities)!r}

[logging]

# Log level for xrrelay itself.
level = "INFO"

# Log level for the websockets library.
websockets_level = "WARNING"

# Log to stderr (systemd/journald friendly).
console = true

# Optional file path for logs (leave empty to disable).
file = ""

# Log format and optional date format.
format = {d.log_format!r}
datefmt = ""
"""

    with open(config_path, "w", encoding="utf-8") as f:
        f.write(content)


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="xrrelay", description="Run the XR messaging and WebRTC signaling relay"
    )

    p.add_argument(
        "--config",
        default=str(default_config_path()),
        help="Path to a TOML config file (created on first run)",
    )
    p.add_argument(
        "--no-config",
        action="store_true",
        help="Ignore the config file and run on built-in defaults plus flags",
    )

    p.add_argument("--host", default=None, help="Listen address (default: 0.0.0.0)")
    p.add_argument("--port", type=int, default=None, help="Listen port (default: 8080)")

    p.add_argument(
        "--heartbeat-interval",
        type=float,
        default=None,
        help="Seconds between liveness pings (0 disables)",
    )
    p.add_argument(
        "--history-capacity",
        type=int,
        default=None,
        help="Number of chat messages kept for replay",
    )
    p.add_argument(
        "--rate-limit-msgs-per-minute",
        type=int,
        default=None,
        help="Per-connection inbound message rate limit (0 disables)",
    )
    p.add_argument(
        "--stats-interval",
        type=float,
        default=None,
        help="Seconds between stats log lines (0 disables)",
    )

    p.add_argument(
        "--log-level",
        default=None,
        help="Logging level override (DEBUG, INFO, WARNING, ERROR). Default comes from config.",
    )
    p.add_argument(
        "--log-file",
        default=None,
        help="Log file path override (empty disables file logging). Default comes from config.",
    )

    return p


def build_config(args: argparse.Namespace) -> RelayRuntimeConfig:
    cfg = RelayRuntimeConfig()

    if not args.no_config:
        config_path = str(args.config)
        cfg = replace(cfg, config_path=config_path)
        cfg = apply_config_data(cfg, load_toml(config_path))

    if args.host is not None:
        cfg = replace(cfg, host=str(args.host))
    if args.port is not None:
        cfg = replace(cfg, port=int(args.port))
    if args.heartbeat_interval is not None:
        cfg = replace(cfg, heartbeat_interval_s=float(args.heartbeat_interval))
    if args.history_capacity is not None:
        cfg = replace(cfg, history_capacity=int(args.history_capacity))
    if args.rate_limit_msgs_per_minute is not None:
        cfg = replace(
            cfg, rate_limit_msgs_per_minute=int(args.rate_limit_msgs_per_minute)
        )
    if args.stats_interval is not None:
        cfg = replace(cfg, stats_interval_s=float(args.stats_interval))

    if args.log_level is not None:
        cfg = replace(cfg, log_level=str(args.log_level))
    if args.log_file is not None:
        cfg = replace(cfg, log_file=str(args.log_file) if str(args.log_file) else None)

    return cfg


def main(argv: list[str] | None = None) -> None:
    args = _build_arg_parser().parse_args(sys.argv[1:] if argv is None else argv)

    if not args.no_config and not os.path.exists(str(args.config)):
        _write_default_config(str(args.config))
        print(
            "Created default xrrelay config. Edit it before starting:\n"
            f"- Config: {args.config}\n"
            "\nThen re-run xrrelay.",
            file=sys.stderr,
        )
        raise SystemExit(0)

    cfg = build_config(args)

    configure_logging(cfg, override_level=args.log_level, override_file=args.log_file)

    svc = RelayService(cfg)
    svc.start()
    svc.run_forever()


if __name__ == "__main__":
    main()
