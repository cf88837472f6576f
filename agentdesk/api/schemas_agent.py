"""Pydantic schemas for the agent session API.

Field names on the wire are camelCase to match the event payloads; the
models accept either form on input.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class StartSessionRequest(BaseModel):
    """Request for opening a session with an access link token."""

    token: str = Field(..., min_length=1, description="Access link token")


class SessionInfo(_CamelModel):
    """Public description of a live session."""

    session_id: str = Field(..., alias="sessionId")
    conversation_id: str = Field(..., alias="conversationId")
    business_id: str = Field(..., alias="businessId")
    settings: dict[str, Any] = Field(default_factory=dict)


class StartSessionResponse(_CamelModel):
    """Response for a successful session start."""

    success: bool = True
    session: SessionInfo
    welcome_message: str = Field(..., alias="welcomeMessage")


class SessionErrorResponse(_CamelModel):
    """Response for a refused session start."""

    success: bool = False
    error: str
    reason: str | None = None
    error_code: str | None = Field(default=None, alias="errorCode")


class ChatRequest(_CamelModel):
    """Request for running one assistant turn."""

    session_id: str = Field(..., alias="sessionId", min_length=1)
    message: str = Field(..., min_length=1, description="User message text")
    tts: bool = Field(default=True, description="Also stream tts_chunk events")


class EndSessionResponse(BaseModel):
    """Response for ending a session."""

    success: bool


class ConversationMessage(_CamelModel):
    """A single stored message."""

    id: str
    role: str
    content: str
    sequence: int
    created_at: str = Field(..., alias="createdAt")


class ConversationMessagesResponse(_CamelModel):
    """Response for a conversation's stored history."""

    conversation_id: str = Field(..., alias="conversationId")
    status: str
    messages: list[ConversationMessage]
