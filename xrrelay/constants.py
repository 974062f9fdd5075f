# Relay protocol constants (message types and defaults)

from __future__ import annotations

from enum import Enum

# Inbound message types
T_IDENTIFICATION = "identification"
T_MESSAGE = "message"
T_CLEAR_MESSAGES = "clear-messages"
T_CLEAR_CONFIRMATION = "clear_confirmation"
T_OFFER = "offer"
T_ANSWER = "answer"
T_ICE_CANDIDATE = "ice-candidate"
T_CONTROL_COMMAND = "control-command"
T_CONTROL_COMMAND_ALIAS = "control_command"
T_STATUS_REPORT = "status_report"

# Outbound-only message types
T_MESSAGE_HISTORY = "message_history"
T_MESSAGE_CLEARED = "message-cleared"
# Sent to control devices when a display confirms a clear.
T_CLEAR_ACK = "message_cleared"
T_DEVICE_LIST = "device_list"

SIGNALING_TYPES = frozenset({T_OFFER, T_ANSWER, T_ICE_CANDIDATE})

# Aliases collapse onto the canonical spelling before dispatch.
TYPE_ALIASES = {T_CONTROL_COMMAND_ALIAS: T_CONTROL_COMMAND}

PRIORITY_NORMAL = "normal"
PRIORITY_URGENT = "urgent"
PRIORITIES = frozenset({PRIORITY_NORMAL, PRIORITY_URGENT})

HISTORY_CAPACITY = 100
HISTORY_REPLAY = 10

HEARTBEAT_INTERVAL_S = 30.0

DEVICE_NAME_MAX_CHARS = 128


class Role(str, Enum):
    CONTROL = "control"
    DISPLAY = "display"
    VIEWER = "viewer"
    UNIDENTIFIED = "unidentified"
