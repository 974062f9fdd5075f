import pytest

from xrrelay.envelope import (
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
    validate_envelope,
)


def test_make_envelope_omits_none_fields() -> None:
    env = make_envelope("control-command", command="mute", **{"from": None})
    assert env == {"type": "control-command", "command": "mute"}


def test_validate_rejects_non_object() -> None:
    with pytest.raises(TypeError):
        validate_envelope(["type", "message"])
    with pytest.raises(TypeError):
        validate_envelope("message")


def test_validate_rejects_missing_or_bad_type() -> None:
    with pytest.raises(ValueError):
        validate_envelope({"text": "hi"})
    with pytest.raises(TypeError):
        validate_envelope({"type": 7})
    with pytest.raises(ValueError):
        validate_envelope({"type": ""})


def test_validate_maps_control_command_alias() -> None:
    assert validate_envelope({"type": "control_command"}) == "control-command"


def test_parse_identification() -> None:
    msg = parse_envelope(
        {"type": "identification", "deviceName": " Desktop App ", "xrId": "XR-1238"}
    )
    assert msg == Identification(device_name="Desktop App", xr_id="XR-1238")


def test_parse_identification_without_xr_id() -> None:
    msg = parse_envelope({"type": "identification", "deviceName": "Viewer"})
    assert msg == Identification(device_name="Viewer", xr_id=None)


def test_parse_identification_accepts_numeric_xr_id() -> None:
    msg = parse_envelope({"type": "identification", "deviceName": "XR Glasses", "xrId": 1238})
    assert msg == Identification(device_name="XR Glasses", xr_id="1238")

    offer = parse_envelope({"type": "offer", "sdp": "v=0", "to": 1238})
    assert offer.to == "1238"


def test_parse_identification_requires_device_name() -> None:
    with pytest.raises(ValueError):
        parse_envelope({"type": "identification", "xrId": "XR-1"})
    with pytest.raises(ValueError):
        parse_envelope({"type": "identification", "deviceName": "   "})
    with pytest.raises(TypeError):
        parse_envelope({"type": "identification", "deviceName": 12})


def test_parse_message_keeps_passthrough_fields() -> None:
    env = {"type": "message", "text": "hi", "color": "red", "priority": "urgent"}
    msg = parse_envelope(env)
    assert isinstance(msg, ChatMessage)
    assert msg.text == "hi"
    assert msg.fields == env
    assert msg.fields is not env


def test_parse_message_contract() -> None:
    with pytest.raises(TypeError):
        parse_envelope({"type": "message"})
    with pytest.raises(ValueError):
        parse_envelope({"type": "message", "text": "hi", "priority": "shouty"})


def test_parse_clear_events() -> None:
    assert parse_envelope({"type": "clear-messages", "by": "Desktop"}) == ClearMessages(
        by="Desktop"
    )
    assert parse_envelope(
        {"type": "clear_confirmation", "device": "XR Glasses"}
    ) == ClearConfirmation(device="XR Glasses")
    with pytest.raises(ValueError):
        parse_envelope({"type": "clear-messages"})


def test_parse_signals() -> None:
    offer = parse_envelope({"type": "offer", "sdp": "v=0", "from": "C-1", "to": "D-1"})
    assert isinstance(offer, Signal)
    assert (offer.type, offer.sender, offer.to) == ("offer", "C-1", "D-1")
    assert offer.fields["sdp"] == "v=0"

    cand = {"candidate": "candidate:1 1 udp", "sdpMid": "0", "sdpMLineIndex": 0}
    ice = parse_envelope({"type": "ice-candidate", "candidate": cand})
    assert isinstance(ice, Signal)
    assert ice.to is None
    assert ice.fields["candidate"] == cand


def test_parse_signal_requires_payload() -> None:
    with pytest.raises(ValueError):
        parse_envelope({"type": "answer", "to": "C-1"})
    with pytest.raises(ValueError):
        parse_envelope({"type": "ice-candidate", "sdp": "v=0"})
    with pytest.raises(TypeError):
        parse_envelope({"type": "offer", "sdp": "v=0", "to": {"xrId": "C-1"}})
    with pytest.raises(TypeError):
        parse_envelope({"type": "offer", "sdp": "v=0", "to": True})


def test_parse_control_and_status() -> None:
    cmd = parse_envelope({"type": "control_command", "command": "mute", "to": "D-1"})
    assert cmd == ControlCommand(command="mute", sender=None)

    rep = parse_envelope({"type": "status_report", "status": {"battery": 80}, "from": "D-1"})
    assert rep == StatusReport(status={"battery": 80}, sender="D-1")

    with pytest.raises(ValueError):
        parse_envelope({"type": "status_report"})


def test_parse_unknown_type() -> None:
    with pytest.raises(UnknownMessageType) as exc:
        parse_envelope({"type": "selfie"})
    assert exc.value.msg_type == "selfie"
    assert isinstance(exc.value, ValueError)
