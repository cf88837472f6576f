"""Service layer for AgentDesk.

Provides link policy enforcement, conversation persistence and the
in-memory agent session lifecycle.
"""

from agentdesk.services.access_link_service import AccessLinkService
from agentdesk.services.conversation_persistence_service import (
    ConversationPersistenceService,
)

__all__ = [
    "AccessLinkService",
    "ConversationPersistenceService",
]
