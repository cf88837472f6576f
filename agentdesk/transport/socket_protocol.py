"""Websocket frame protocol for agent sessions.

Every frame is a JSON object ``{"event": <name>, "data": {...}}`` with an
optional integer ``ackId``. A client frame carrying ``ackId`` is answered
by one ``ack`` frame echoing the id. Event names are namespaced
(``session:*``, ``agent:*``) and payload field names match the SSE
encoding.
"""

import json
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from agentdesk.agent.events import OutboundEvent, OutboundType


class ClientEvent(str, Enum):
    """Events sent by the client."""

    session_start = "session:start"
    session_end = "session:end"
    agent_send = "agent:send"
    agent_interrupt = "agent:interrupt"
    user_typing = "user:typing"


class ServerEvent(str, Enum):
    """Events sent by the server."""

    connection_status = "connection:status"
    session_started = "session:started"
    session_error = "session:error"
    session_ended = "session:ended"
    agent_message = "agent:message"
    agent_typing = "agent:typing"
    agent_feedback = "agent:feedback"
    agent_tool = "agent:tool"
    agent_error = "agent:error"
    agent_interrupted = "agent:interrupted"
    agent_fallback = "agent:fallback"
    agent_tts = "agent:tts"
    ack = "ack"


# Outbound tag -> socket event name
SOCKET_EVENT_NAMES: dict[OutboundType, ServerEvent] = {
    OutboundType.message: ServerEvent.agent_message,
    OutboundType.typing: ServerEvent.agent_typing,
    OutboundType.feedback: ServerEvent.agent_feedback,
    OutboundType.tool: ServerEvent.agent_tool,
    OutboundType.fallback: ServerEvent.agent_fallback,
    OutboundType.error: ServerEvent.agent_error,
    OutboundType.interrupted: ServerEvent.agent_interrupted,
    OutboundType.session_end: ServerEvent.session_ended,
    OutboundType.tts_chunk: ServerEvent.agent_tts,
}


class FrameError(ValueError):
    """A received frame could not be decoded."""


class SocketFrame(BaseModel):
    """One websocket frame."""

    model_config = ConfigDict(populate_by_name=True)

    event: str = Field(..., min_length=1)
    data: dict[str, Any] = Field(default_factory=dict)
    ack_id: int | None = Field(default=None, alias="ackId")

    def to_wire(self) -> dict[str, Any]:
        frame: dict[str, Any] = {"event": self.event, "data": self.data}
        if self.ack_id is not None:
            frame["ackId"] = self.ack_id
        return frame


def decode_frame(raw: str | bytes) -> SocketFrame:
    """Parse and validate a raw frame.

    Raises:
        FrameError: If the frame is not a JSON object of the expected shape.
    """
    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise FrameError(f"Invalid JSON frame: {e}") from e
    if not isinstance(payload, dict):
        raise FrameError("Frame must be a JSON object")
    if payload.get("data") is None:
        payload["data"] = {}
    try:
        return SocketFrame.model_validate(payload)
    except ValidationError as e:
        raise FrameError(f"Invalid frame: {e.errors()[0].get('msg', 'invalid')}") from e


def encode_frame(
    event: str | Enum, data: dict[str, Any] | None = None, ack_id: int | None = None
) -> dict[str, Any]:
    """Build a frame dict ready for ``send_json``."""
    name = event.value if isinstance(event, Enum) else event
    return SocketFrame(event=name, data=data or {}, ackId=ack_id).to_wire()


def outbound_frame(event: OutboundEvent) -> dict[str, Any]:
    """Frame for a relayed turn event."""
    return encode_frame(SOCKET_EVENT_NAMES[event.type], event.data)


def ack_frame(ack_id: int, **payload: Any) -> dict[str, Any]:
    """Acknowledgement answering a client frame."""
    return encode_frame(ServerEvent.ack, payload, ack_id=ack_id)
