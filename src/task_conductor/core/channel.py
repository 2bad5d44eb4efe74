"""Control-channel framing between the supervisor and agent processes.

Messages are single-line JSON objects of the form
``{"type": "<kind>", "data": {...}}``. Agents write them to stdout; the
supervisor writes them to the agent's stdin.
"""

import json

from task_conductor.core.errors import ChannelError

HEARTBEAT = "heartbeat"
PROGRESS = "progress"
LOG = "log"
ERROR = "error"
SHUTDOWN = "shutdown"

MESSAGE_TYPES = {HEARTBEAT, PROGRESS, LOG, ERROR, SHUTDOWN}


def encode_message(msg_type: str, data: dict | None = None) -> str:
    """Serialize a message as one newline-terminated line."""
    if msg_type not in MESSAGE_TYPES:
        raise ChannelError(f"Unknown message type: {msg_type}")
    return json.dumps({"type": msg_type, "data": data or {}}, default=str) + "\n"


def decode_message(line: str) -> dict:
    """Parse one line from the channel. Raises ChannelError on malformed input."""
    try:
        message = json.loads(line)
    except json.JSONDecodeError as e:
        raise ChannelError(f"Malformed message: {line[:200]!r}") from e
    if not isinstance(message, dict) or not isinstance(message.get("type"), str):
        raise ChannelError(f"Message without a type: {line[:200]!r}")
    data = message.get("data")
    if data is None:
        message["data"] = {}
    elif not isinstance(data, dict):
        raise ChannelError(f"Message data must be an object: {line[:200]!r}")
    return message
