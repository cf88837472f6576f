"""SQLAlchemy ORM models for the AgentDesk state database.

This module defines the persisted side of an agent session: access links
that gate entry to the agent, the conversations opened through them, and
the append-only message log of each conversation. Uses SQLAlchemy 2.0
style with Mapped and mapped_column.
"""

from datetime import UTC, datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
)


def generate_uuid() -> str:
    """Generate a UUID4 string for primary keys."""
    return str(uuid4())


def generate_link_token() -> str:
    """Generate an unguessable access link token (``ag_`` + 32 hex chars)."""
    return f"ag_{uuid4().hex}"


def utc_now_iso() -> str:
    """Generate current UTC timestamp in ISO8601 format."""
    return datetime.now(UTC).isoformat()


def parse_iso(value: str) -> datetime:
    """Parse an ISO8601 timestamp, treating naive values as UTC."""
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


# Enums matching the database schema constraints


class LinkType(str, Enum):
    """Usage policy of an access link."""

    single_use = "single_use"
    multi_use = "multi_use"


class LinkStatus(str, Enum):
    """Status values for access links.

    Lifecycle: active -> expired | exhausted | cancelled
    A link that has left ``active`` is never revived by the session flow.
    """

    active = "active"
    expired = "expired"
    exhausted = "exhausted"
    cancelled = "cancelled"


class ConversationStatus(str, Enum):
    """Status values for agent conversations.

    Lifecycle: active -> completed
    """

    active = "active"
    completed = "completed"


class MessageRole(str, Enum):
    """Speaker of a persisted conversation message."""

    user = "user"
    assistant = "assistant"


# SQLAlchemy Base


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# Models


class AgentLink(Base):
    """Shareable, policy-constrained entry point into the agent.

    Attributes:
        id: UUID primary key.
        token: Opaque unguessable token embedded in the public URL.
        business_id: Owning business identifier.
        name: Display name for administrators.
        type: single_use or multi_use.
        status: active, expired, exhausted or cancelled.
        current_uses: Number of consumed sessions.
        max_uses: Session cap (None = unlimited).
        minutes_used: Accumulated conversation minutes.
        max_minutes: Minute cap (None = unlimited).
        expires_at: ISO8601 expiry instant (None = never).
        settings: JSON blob (assistant_name, welcome_message, model, ...).
        created_at: ISO8601 creation timestamp.
        updated_at: ISO8601 last-update timestamp.
    """

    __tablename__ = "agent_links"
    __table_args__ = (
        Index("ix_agent_links_business", "business_id"),
        Index("ix_agent_links_status", "status"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    token: Mapped[str] = mapped_column(
        String(64), nullable=False, unique=True, default=generate_link_token
    )
    business_id: Mapped[str] = mapped_column(String(36), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    type: Mapped[str] = mapped_column(
        String(20), nullable=False, default=LinkType.multi_use.value
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=LinkStatus.active.value
    )

    # Usage counters
    current_uses: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_uses: Mapped[int | None] = mapped_column(Integer, nullable=True)
    minutes_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)

    expires_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    settings_json: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    conversations: Mapped[list["AgentConversation"]] = relationship(
        "AgentConversation", back_populates="link"
    )

    def __repr__(self) -> str:
        return (
            f"<AgentLink(id={self.id!r}, type={self.type!r}, "
            f"status={self.status!r}, uses={self.current_uses})>"
        )


class AgentConversation(Base):
    """One logical chat session opened through an access link.

    Attributes:
        id: UUID primary key.
        business_id: Business the agent speaks for.
        agent_link_id: FK to the link used to start it (nullable).
        session_id: Runtime session identifier.
        status: active or completed.
        started_at: ISO8601 start instant.
        ended_at: ISO8601 end instant (None while active).
        duration_seconds: Whole seconds between start and end, set at end.
        message_count: Number of persisted messages (only ever incremented).
        metadata_json: Free-form JSON metadata.
        actions_json: JSON list of actions the agent took.
    """

    __tablename__ = "agent_conversations"
    __table_args__ = (
        Index("ix_agentconv_business_created", "business_id", "created_at"),
        Index("ix_agentconv_link", "agent_link_id"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    business_id: Mapped[str] = mapped_column(String(36), nullable=False)
    agent_link_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("agent_links.id", ondelete="SET NULL"),
        nullable=True,
    )
    session_id: Mapped[str] = mapped_column(String(36), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ConversationStatus.active.value
    )
    started_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    ended_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    duration_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    message_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    metadata_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    actions_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    link: Mapped["AgentLink | None"] = relationship(
        "AgentLink", back_populates="conversations"
    )
    messages: Mapped[list["AgentMessage"]] = relationship(
        "AgentMessage",
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="AgentMessage.sequence",
    )

    def __repr__(self) -> str:
        return (
            f"<AgentConversation(id={self.id!r}, status={self.status!r}, "
            f"messages={self.message_count})>"
        )


class AgentMessage(Base):
    """One turn in a conversation.

    Attributes:
        id: UUID primary key.
        conversation_id: FK to AgentConversation.
        role: user or assistant.
        content: Message text.
        tokens_used: Token usage reported for the message (default 0).
        sequence: Ordering within the conversation (monotonically increasing).
        created_at: ISO8601 creation timestamp.
    """

    __tablename__ = "agent_messages"
    __table_args__ = (
        UniqueConstraint("conversation_id", "sequence", name="uq_agentmsg_conv_seq"),
        Index("ix_agentmsg_conv_seq", "conversation_id", "sequence"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    conversation_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("agent_conversations.id", ondelete="CASCADE"),
        nullable=False,
    )
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    tokens_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    conversation: Mapped["AgentConversation"] = relationship(
        "AgentConversation", back_populates="messages"
    )

    def __repr__(self) -> str:
        return (
            f"<AgentMessage(id={self.id!r}, role={self.role!r}, "
            f"seq={self.sequence})>"
        )
