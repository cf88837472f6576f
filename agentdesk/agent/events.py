"""Event vocabulary for agent turns.

Two tagged unions live here. Generator events are what the tool-calling
response generator yields during a turn; stream exhaustion is the
completion signal and has no event of its own. Outbound events are what
the session layer hands to a transport; each transport maps the tag to its
own wire name through a lookup table.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union


class FeedbackKind(str, Enum):
    """Progress indicator categories shown while the agent works."""

    thinking = "thinking"
    progress = "progress"
    waiting = "waiting"


# Generator -> session manager


@dataclass(frozen=True)
class ChunkEvent:
    """A fragment of assistant text, forwarded as-is."""

    content: str
    type: str = field(default="chunk", init=False)


@dataclass(frozen=True)
class FeedbackEvent:
    """Progress message while a tool runs."""

    kind: FeedbackKind
    message: str
    tool_name: str | None = None
    type: str = field(default="feedback", init=False)


@dataclass(frozen=True)
class ToolStartEvent:
    tool_name: str
    type: str = field(default="tool_start", init=False)


@dataclass(frozen=True)
class ToolEndEvent:
    tool_name: str
    success: bool
    type: str = field(default="tool_end", init=False)


@dataclass(frozen=True)
class ErrorEvent:
    """Recoverable failure inside the generator. Not terminal."""

    error: str
    type: str = field(default="error", init=False)


@dataclass(frozen=True)
class SessionEndEvent:
    """The agent decided the conversation is over."""

    message: str
    reason: str | None = None
    type: str = field(default="session_end", init=False)


GeneratorEvent = Union[
    ChunkEvent,
    FeedbackEvent,
    ToolStartEvent,
    ToolEndEvent,
    ErrorEvent,
    SessionEndEvent,
]


# Session manager -> transport


class OutboundType(str, Enum):
    """Tags of events delivered to a connected client."""

    message = "message"
    typing = "typing"
    feedback = "feedback"
    tool = "tool"
    fallback = "fallback"
    error = "error"
    interrupted = "interrupted"
    session_end = "session_end"
    tts_chunk = "tts_chunk"


@dataclass(frozen=True)
class OutboundEvent:
    """One client-facing event with its JSON payload.

    Payload field names are shared by every transport encoding.
    """

    type: OutboundType
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def message(cls, chunk: str, is_complete: bool = False) -> "OutboundEvent":
        return cls(OutboundType.message, {"chunk": chunk, "isComplete": is_complete})

    @classmethod
    def typing(cls, is_typing: bool) -> "OutboundEvent":
        return cls(OutboundType.typing, {"isTyping": is_typing})

    @classmethod
    def feedback(
        cls, kind: FeedbackKind | str, message: str, tool_name: str | None = None
    ) -> "OutboundEvent":
        data: dict[str, Any] = {"type": FeedbackKind(kind).value, "message": message}
        if tool_name is not None:
            data["toolName"] = tool_name
        return cls(OutboundType.feedback, data)

    @classmethod
    def tool_start(cls, tool_name: str) -> "OutboundEvent":
        return cls(OutboundType.tool, {"status": "start", "toolName": tool_name})

    @classmethod
    def tool_end(cls, tool_name: str, success: bool) -> "OutboundEvent":
        return cls(
            OutboundType.tool,
            {"status": "end", "toolName": tool_name, "success": success},
        )

    @classmethod
    def fallback(cls, message: str, speak: bool = True) -> "OutboundEvent":
        return cls(OutboundType.fallback, {"message": message, "speak": speak})

    @classmethod
    def error(cls, error: str) -> "OutboundEvent":
        return cls(OutboundType.error, {"error": error})

    @classmethod
    def interrupted(cls) -> "OutboundEvent":
        return cls(OutboundType.interrupted, {})

    @classmethod
    def session_end(cls, message: str, reason: str | None = None) -> "OutboundEvent":
        data: dict[str, Any] = {"message": message}
        if reason is not None:
            data["reason"] = reason
        return cls(OutboundType.session_end, data)

    @classmethod
    def tts_chunk(cls, text: str, is_final: bool = False) -> "OutboundEvent":
        return cls(OutboundType.tts_chunk, {"text": text, "isFinal": is_final})
