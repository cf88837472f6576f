"""Persistence service for agent conversations and messages.

Thin layer between the session manager and SQLAlchemy models. All
conversation reads and writes go through this service. Messages are
append-only; ``message_count`` is bumped with a server-side increment so
concurrent writers never lose an update.
"""

import json
import logging
import math
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import update
from sqlalchemy.orm import Session

from agentdesk.db.models import (
    AgentConversation,
    AgentMessage,
    ConversationStatus,
    MessageRole,
    generate_uuid,
    parse_iso,
    utc_now_iso,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConversationEnd:
    """Outcome of closing a conversation.

    Attributes:
        conversation_id: The closed conversation.
        agent_link_id: Link the conversation was opened with, if any.
        duration_seconds: Whole seconds between start and end.
        minutes_used: Duration rounded up to whole minutes.
    """

    conversation_id: str
    agent_link_id: str | None
    duration_seconds: int
    minutes_used: int


def compute_duration_seconds(started_at: str, ended_at: datetime) -> int:
    """Floor of the elapsed seconds between two instants, never negative."""
    elapsed = (ended_at - parse_iso(started_at)).total_seconds()
    return max(0, math.floor(elapsed))


class ConversationPersistenceService:
    """CRUD operations for agent conversations and their messages.

    Args:
        db: SQLAlchemy session (sync).
    """

    def __init__(self, db: Session) -> None:
        self._db = db

    def create_conversation(
        self,
        business_id: str,
        session_id: str,
        agent_link_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AgentConversation:
        """Create a new active conversation row.

        Args:
            business_id: Business the agent speaks for.
            session_id: Runtime session identifier.
            agent_link_id: Link used to start the conversation.
            metadata: Optional JSON-serializable metadata.

        Returns:
            The created AgentConversation.
        """
        now = utc_now_iso()
        conversation = AgentConversation(
            id=generate_uuid(),
            business_id=business_id,
            agent_link_id=agent_link_id,
            session_id=session_id,
            status=ConversationStatus.active.value,
            started_at=now,
            metadata_json=json.dumps(metadata) if metadata else None,
            actions_json=json.dumps([]),
        )
        self._db.add(conversation)
        self._db.commit()
        return conversation

    def get_conversation(self, conversation_id: str) -> AgentConversation | None:
        """Get a conversation by id."""
        return self._db.get(AgentConversation, conversation_id)

    def add_message(
        self,
        conversation_id: str,
        role: MessageRole | str,
        content: str,
        tokens_used: int = 0,
    ) -> AgentMessage:
        """Append a message with the next sequence number.

        Args:
            conversation_id: Parent conversation ID.
            role: 'user' or 'assistant'.
            content: Message text.
            tokens_used: Reported token usage.

        Returns:
            The created AgentMessage.
        """
        # Note: For SQLite with single-writer semantics, SELECT+INSERT
        # is safe within a single transaction.
        max_seq = (
            self._db.query(AgentMessage.sequence)
            .filter_by(conversation_id=conversation_id)
            .order_by(AgentMessage.sequence.desc())
            .first()
        )
        next_seq = (max_seq[0] + 1) if max_seq else 1

        msg = AgentMessage(
            id=generate_uuid(),
            conversation_id=conversation_id,
            role=MessageRole(role).value,
            content=content,
            tokens_used=tokens_used,
            sequence=next_seq,
        )
        self._db.add(msg)
        self._db.execute(
            update(AgentConversation)
            .where(AgentConversation.id == conversation_id)
            .values(
                message_count=AgentConversation.message_count + 1,
                updated_at=utc_now_iso(),
            )
            .execution_options(synchronize_session=False)
        )
        self._db.commit()
        return msg

    def get_messages(self, conversation_id: str) -> list[AgentMessage]:
        """All messages of a conversation in creation order."""
        return (
            self._db.query(AgentMessage)
            .filter_by(conversation_id=conversation_id)
            .order_by(AgentMessage.sequence)
            .all()
        )

    def get_history(self, conversation_id: str) -> list[dict[str, str]]:
        """Ordered ``{role, content}`` pairs for the response generator."""
        return [
            {"role": m.role, "content": m.content}
            for m in self.get_messages(conversation_id)
            if m.role in (MessageRole.user.value, MessageRole.assistant.value)
        ]

    def get_conversation_with_messages(
        self, conversation_id: str
    ) -> dict[str, Any] | None:
        """Load a conversation with its messages for display.

        Returns:
            Dict with 'conversation' and 'messages' keys, or None if not found.
        """
        conversation = self.get_conversation(conversation_id)
        if conversation is None:
            return None
        self._db.refresh(conversation)

        messages = [
            {
                "id": m.id,
                "role": m.role,
                "content": m.content,
                "tokens_used": m.tokens_used,
                "sequence": m.sequence,
                "created_at": m.created_at,
            }
            for m in self.get_messages(conversation_id)
        ]
        return {
            "conversation": self._summary(conversation),
            "messages": messages,
        }

    def list_conversations(
        self,
        business_id: str,
        agent_link_id: str | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        """List a business's conversations, newest first.

        Args:
            business_id: Business to list for.
            agent_link_id: Restrict to one link when given.
            limit: Maximum rows.
        """
        query = self._db.query(AgentConversation).filter_by(business_id=business_id)
        if agent_link_id is not None:
            query = query.filter_by(agent_link_id=agent_link_id)
        query = query.order_by(AgentConversation.created_at.desc()).limit(limit)
        return [self._summary(c) for c in query.all()]

    def end_conversation(
        self, conversation_id: str, ended_at: datetime | None = None
    ) -> ConversationEnd | None:
        """Mark a conversation completed and compute its duration.

        The ``active -> completed`` transition is a guarded UPDATE, so only
        the first caller gets a result; later calls return None.

        Args:
            conversation_id: Conversation to close.
            ended_at: End instant (defaults to current UTC time).

        Returns:
            ConversationEnd for the caller that closed it, else None.
        """
        conversation = self.get_conversation(conversation_id)
        if conversation is None:
            logger.warning("end_conversation: %s not found", conversation_id)
            return None

        ended_at = ended_at or datetime.now(UTC)
        duration = compute_duration_seconds(conversation.started_at, ended_at)
        result = self._db.execute(
            update(AgentConversation)
            .where(
                AgentConversation.id == conversation_id,
                AgentConversation.status == ConversationStatus.active.value,
            )
            .values(
                status=ConversationStatus.completed.value,
                ended_at=ended_at.isoformat(),
                duration_seconds=duration,
                updated_at=utc_now_iso(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self._db.rollback()
            return None
        self._db.commit()
        self._db.refresh(conversation)

        return ConversationEnd(
            conversation_id=conversation_id,
            agent_link_id=conversation.agent_link_id,
            duration_seconds=duration,
            minutes_used=math.ceil(duration / 60),
        )

    def record_action(self, conversation_id: str, action: dict[str, Any]) -> bool:
        """Append an action to the conversation's action list.

        Returns:
            True if the conversation exists and was updated.
        """
        conversation = self.get_conversation(conversation_id)
        if conversation is None:
            return False
        actions = self._load_json_list(conversation.actions_json, conversation.id)
        actions.append(action)
        conversation.actions_json = json.dumps(actions)
        conversation.updated_at = utc_now_iso()
        self._db.commit()
        return True

    def _summary(self, conversation: AgentConversation) -> dict[str, Any]:
        metadata = None
        if conversation.metadata_json:
            try:
                metadata = json.loads(conversation.metadata_json)
            except (json.JSONDecodeError, TypeError):
                logger.warning("Corrupted metadata_json for conversation %s", conversation.id)
        return {
            "id": conversation.id,
            "business_id": conversation.business_id,
            "agent_link_id": conversation.agent_link_id,
            "session_id": conversation.session_id,
            "status": conversation.status,
            "started_at": conversation.started_at,
            "ended_at": conversation.ended_at,
            "duration_seconds": conversation.duration_seconds,
            "message_count": conversation.message_count,
            "metadata": metadata,
            "actions_taken": self._load_json_list(
                conversation.actions_json, conversation.id
            ),
        }

    @staticmethod
    def _load_json_list(raw: str | None, conversation_id: str) -> list[Any]:
        if not raw:
            return []
        try:
            value = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.warning("Corrupted actions_json for conversation %s", conversation_id)
            return []
        return value if isinstance(value, list) else []
