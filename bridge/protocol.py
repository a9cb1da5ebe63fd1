"""
Event framing used by the driving simulator over its websocket.

Messages are socket.io event packets: the prefix "42" (4 = message,
2 = event) followed by a JSON array ["event_name", payload].
A payload of null means the simulator is in manual mode.
"""

import json
from typing import Any, Optional, Tuple

EVENT_PREFIX = "42"
TELEMETRY_EVENT = "telemetry"
STEER_EVENT = "steer"
MANUAL_MESSAGE = '42["manual",{}]'


class ProtocolError(ValueError):
    """Frame looked like an event but could not be decoded."""


def is_event_frame(message: str) -> bool:
    return len(message) > 2 and message.startswith(EVENT_PREFIX)


def extract_event_json(message: str) -> Optional[str]:
    """
    Return the JSON array part of an event frame, or None for manual mode.

    Manual-mode frames carry "null" instead of a payload object.
    """
    if "null" in message:
        return None
    start = message.find("[")
    end = message.rfind("]")
    if start == -1 or end == -1 or end < start:
        raise ProtocolError(f"no event array in frame: {message[:80]!r}")
    return message[start:end + 1]


def parse_event(message: str) -> Tuple[Optional[str], Optional[Any]]:
    """
    Decode an event frame.

    Returns:
        (event_name, payload); (None, None) for a manual-mode frame

    Raises:
        ProtocolError: not an event frame or malformed JSON
    """
    if not is_event_frame(message):
        raise ProtocolError(f"not an event frame: {message[:80]!r}")
    body = extract_event_json(message)
    if body is None:
        return None, None
    try:
        decoded = json.loads(body)
    except json.JSONDecodeError as exc:
        raise ProtocolError(f"malformed event JSON: {exc}") from exc
    if not isinstance(decoded, list) or not decoded or not isinstance(decoded[0], str):
        raise ProtocolError(f"unexpected event body: {body[:80]!r}")
    payload = decoded[1] if len(decoded) > 1 else None
    return decoded[0], payload


def encode_event(event: str, payload: Any) -> str:
    """Build an event frame, e.g. 42["steer",{...}]."""
    return EVENT_PREFIX + json.dumps([event, payload], separators=(",", ":"))
