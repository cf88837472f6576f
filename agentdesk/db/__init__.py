"""Database module for AgentDesk links, conversations and messages."""

from agentdesk.db.connection import (
    SessionLocal,
    engine,
    get_db,
    get_db_context,
    init_db,
)
from agentdesk.db.models import (
    AgentConversation,
    AgentLink,
    AgentMessage,
    ConversationStatus,
    LinkStatus,
    LinkType,
    MessageRole,
)

__all__ = [
    # Models
    "AgentLink",
    "AgentConversation",
    "AgentMessage",
    # Enums
    "LinkType",
    "LinkStatus",
    "ConversationStatus",
    "MessageRole",
    # Connection
    "engine",
    "SessionLocal",
    "get_db",
    "get_db_context",
    "init_db",
]
