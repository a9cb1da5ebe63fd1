"""
Tests for the simulator event framing.
"""

import json

import pytest

from bridge.protocol import (
    MANUAL_MESSAGE,
    ProtocolError,
    encode_event,
    extract_event_json,
    is_event_frame,
    parse_event,
)


def test_parse_telemetry_frame():
    frame = '42["telemetry",{"ptsx":[1,2],"ptsy":[3,4],"x":0.5,"y":-1,"psi":0.1,"speed":12}]'
    event, payload = parse_event(frame)

    assert event == "telemetry"
    assert payload["ptsx"] == [1, 2]
    assert payload["speed"] == 12


def test_null_payload_is_manual_mode():
    assert extract_event_json('42["telemetry",null]') is None
    assert parse_event('42["telemetry",null]') == (None, None)


def test_is_event_frame():
    assert is_event_frame('42["telemetry",{}]')
    assert not is_event_frame("2")
    assert not is_event_frame("42")
    assert not is_event_frame('0{"sid":"abc"}')


def test_malformed_frames_raise():
    with pytest.raises(ProtocolError):
        parse_event("3pong")
    with pytest.raises(ProtocolError):
        parse_event("42telemetry")
    with pytest.raises(ProtocolError):
        parse_event('42["telemetry",{bad json}]')
    with pytest.raises(ProtocolError):
        parse_event("42[1,2]")


def test_encode_event():
    frame = encode_event("steer", {"steering_angle": -0.25, "throttle": 0.5})

    assert frame.startswith('42["steer",')
    assert " " not in frame
    assert json.loads(frame[2:]) == ["steer", {"steering_angle": -0.25, "throttle": 0.5}]


def test_manual_message():
    assert parse_event(MANUAL_MESSAGE) == ("manual", {})
