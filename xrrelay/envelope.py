"""Inbound envelope variants and validation.

Every frame a client sends is a JSON object with a string ``type``. Known types
decode into one of the frozen dataclasses below; anything else is rejected with
``TypeError``/``ValueError`` (or ``UnknownMessageType`` for an unrecognised
``type``) so the router can drop it without touching shared state.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

from .constants import (
    PRIORITIES,
    SIGNALING_TYPES,
    T_CLEAR_CONFIRMATION,
    T_CLEAR_MESSAGES,
    T_CONTROL_COMMAND,
    T_ICE_CANDIDATE,
    T_IDENTIFICATION,
    T_MESSAGE,
    T_STATUS_REPORT,
    TYPE_ALIASES,
)
from .util import normalize_label


class UnknownMessageType(ValueError):
    def __init__(self, msg_type: str) -> None:
        super().__init__(f"unknown message type {msg_type!r}")
        self.msg_type = msg_type


@dataclass(frozen=True)
class Identification:
    device_name: str
    xr_id: str | None


@dataclass(frozen=True)
class ChatMessage:
    text: str
    # Full inbound object; extra fields are forwarded verbatim.
    fields: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ClearMessages:
    by: str


@dataclass(frozen=True)
class ClearConfirmation:
    device: str


@dataclass(frozen=True)
class Signal:
    type: str
    sender: str | None
    to: str | None
    fields: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ControlCommand:
    command: Any
    sender: str | None


@dataclass(frozen=True)
class StatusReport:
    status: Any
    sender: str | None


Envelope = Union[
    Identification,
    ChatMessage,
    ClearMessages,
    ClearConfirmation,
    Signal,
    ControlCommand,
    StatusReport,
]


def make_envelope(msg_type: str, **fields: Any) -> dict:
    env: dict[str, Any] = {"type": str(msg_type)}
    for k, v in fields.items():
        if v is not None:
            env[k] = v
    return env


def validate_envelope(env: Any) -> str:
    """Check the parts every frame shares and return its canonical type."""
    if not isinstance(env, dict):
        raise TypeError("envelope must be a JSON object")

    if "type" not in env:
        raise ValueError("missing type")

    t = env["type"]
    if not isinstance(t, str):
        raise TypeError("type must be a string")
    if not t:
        raise ValueError("type must not be empty")

    return TYPE_ALIASES.get(t, t)


def _optional_label(env: dict, key: str) -> str | None:
    value = env.get(key)
    if value is None:
        return None
    # Numeric ids (``"xrId": 1238``) are accepted and matched as text.
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        value = str(value)
    if not isinstance(value, str):
        raise TypeError(f"{key} must be a string or number")
    return normalize_label(value)


def _required_label(env: dict, key: str) -> str:
    value = env.get(key)
    if value is None:
        raise ValueError(f"missing {key}")
    if not isinstance(value, str):
        raise TypeError(f"{key} must be a string")
    label = normalize_label(value)
    if label is None:
        raise ValueError(f"invalid {key}")
    return label


def _required_payload(env: dict, key: str) -> Any:
    if env.get(key) is None:
        raise ValueError(f"missing {key}")
    return env[key]


def parse_envelope(env: Any) -> Envelope:
    t = validate_envelope(env)

    if t == T_IDENTIFICATION:
        return Identification(
            device_name=_required_label(env, "deviceName"),
            xr_id=_optional_label(env, "xrId"),
        )

    if t == T_MESSAGE:
        text = env.get("text")
        if not isinstance(text, str):
            raise TypeError("text must be a string")
        priority = env.get("priority")
        if priority is not None and priority not in PRIORITIES:
            raise ValueError(f"unsupported priority {priority!r}")
        return ChatMessage(text=text, fields=dict(env))

    if t == T_CLEAR_MESSAGES:
        return ClearMessages(by=_required_label(env, "by"))

    if t == T_CLEAR_CONFIRMATION:
        return ClearConfirmation(device=_required_label(env, "device"))

    if t in SIGNALING_TYPES:
        payload_key = "candidate" if t == T_ICE_CANDIDATE else "sdp"
        _required_payload(env, payload_key)
        fields = dict(env)
        fields["type"] = t
        return Signal(
            type=t,
            sender=_optional_label(env, "from"),
            to=_optional_label(env, "to"),
            fields=fields,
        )

    if t == T_CONTROL_COMMAND:
        return ControlCommand(
            command=_required_payload(env, "command"),
            sender=_optional_label(env, "from"),
        )

    if t == T_STATUS_REPORT:
        return StatusReport(
            status=_required_payload(env, "status"),
            sender=_optional_label(env, "from"),
        )

    raise UnknownMessageType(t)
