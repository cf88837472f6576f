"""Server-sent events encoding for agent turns.

Frames are ``event: <type>\\ndata: <json>\\n\\n``. The server side hands
dicts to sse-starlette's EventSourceResponse; ``encode_sse_frame`` gives
the raw text form, and SSEFrameParser reassembles frames from a line
stream on the client side.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from agentdesk.agent.events import OutboundEvent, OutboundType

logger = logging.getLogger(__name__)

SSE_LINE_SEPARATOR = "\n"

# Outbound tag -> SSE event name
SSE_EVENT_NAMES: dict[OutboundType, str] = {
    OutboundType.message: "message",
    OutboundType.typing: "typing",
    OutboundType.feedback: "feedback",
    OutboundType.tool: "tool",
    OutboundType.fallback: "fallback",
    OutboundType.error: "error",
    OutboundType.interrupted: "interrupted",
    OutboundType.session_end: "session_end",
    OutboundType.tts_chunk: "tts_chunk",
}


def to_sse_message(event: OutboundEvent) -> dict[str, str]:
    """Dict form consumed by EventSourceResponse."""
    return {
        "event": SSE_EVENT_NAMES[event.type],
        "data": json.dumps(event.data),
    }


def encode_sse_frame(event_type: str, data: dict[str, Any]) -> str:
    """Raw SSE frame text."""
    return f"event: {event_type}\ndata: {json.dumps(data)}\n\n"


@dataclass
class SSEFrame:
    event: str
    data: dict[str, Any] = field(default_factory=dict)


class SSEFrameParser:
    """Incremental SSE parser fed one line at a time.

    Multi-line ``data:`` fields are joined with newlines, comment lines
    (``:`` prefix, used for keepalive pings) are ignored, and a blank line
    dispatches the pending frame. Frames whose data is not a JSON object
    are skipped with a warning.
    """

    def __init__(self) -> None:
        self._event = ""
        self._data_lines: list[str] = []

    def feed_line(self, line: str) -> SSEFrame | None:
        line = line.rstrip("\r\n")
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None

        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            self._event = value
        elif name == "data":
            self._data_lines.append(value)
        return None

    def flush(self) -> SSEFrame | None:
        """Dispatch a trailing frame not followed by a blank line."""
        return self._dispatch()

    def _dispatch(self) -> SSEFrame | None:
        if not self._data_lines:
            self._event = ""
            return None
        event = self._event or "message"
        raw = "\n".join(self._data_lines)
        self._event = ""
        self._data_lines = []
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Skipping SSE frame %s with invalid JSON", event)
            return None
        if not isinstance(data, dict):
            logger.warning("Skipping SSE frame %s with non-object data", event)
            return None
        return SSEFrame(event=event, data=data)


def parse_sse_text(text: str) -> list[SSEFrame]:
    """Parse a complete SSE body into frames."""
    parser = SSEFrameParser()
    frames: list[SSEFrame] = []
    for line in text.splitlines():
        frame = parser.feed_line(line)
        if frame is not None:
            frames.append(frame)
    trailing = parser.flush()
    if trailing is not None:
        frames.append(trailing)
    return frames
