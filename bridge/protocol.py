"""
Event framing used by the driving simulator's socket connection.

A frame starting with "42" carries an event: 42["telemetry",{...}] from the
simulator, 42["steer",{...}] or 42["manual",{}] back to it.
"""

import json
from typing import Any, Dict, Optional, Tuple

from control.errors import InputError

EVENT_PREFIX = "42"
MANUAL_EVENT = EVENT_PREFIX + '["manual",{}]'


def is_event_frame(frame: str) -> bool:
    return len(frame) > 2 and frame.startswith(EVENT_PREFIX)


def extract_event_payload(frame: str) -> str:
    """
    JSON array text of an event frame, or "" when the frame has no data.

    A frame containing "null" means the simulator is in manual mode.
    """
    if "null" in frame:
        return ""
    start = frame.find("[")
    end = frame.rfind("}]")
    if start != -1 and end != -1:
        return frame[start:end + 2]
    return ""


def parse_event(frame: str) -> Optional[Tuple[str, Dict[str, Any]]]:
    """
    Decode an event frame.

    Returns:
        (event_name, payload) or None when the frame carries no data

    Raises:
        InputError: Payload is not a ["name", {...}] JSON array
    """
    payload = extract_event_payload(frame)
    if not payload:
        return None
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise InputError(f"Malformed event payload: {e}") from e
    if not isinstance(data, list) or not data or not isinstance(data[0], str):
        raise InputError("Event payload must be a [name, data] array")
    body = data[1] if len(data) > 1 else {}
    if not isinstance(body, dict):
        raise InputError(f"Event '{data[0]}' data must be an object")
    return data[0], body


def format_event(name: str, payload: Dict[str, Any]) -> str:
    return EVENT_PREFIX + json.dumps([name, payload], separators=(",", ":"))
