"""Tests for agent link, conversation and message models."""

from datetime import UTC, datetime

import pytest
from sqlalchemy.exc import IntegrityError

from agentdesk.db.models import (
    AgentConversation,
    AgentLink,
    AgentMessage,
    ConversationStatus,
    LinkStatus,
    LinkType,
    generate_link_token,
    parse_iso,
)


class TestHelpers:
    def test_link_token_prefix_and_uniqueness(self):
        a, b = generate_link_token(), generate_link_token()
        assert a.startswith("ag_")
        assert a != b

    def test_parse_iso_treats_naive_as_utc(self):
        parsed = parse_iso("2026-01-02T03:04:05")
        assert parsed.tzinfo is not None
        assert parsed == datetime(2026, 1, 2, 3, 4, 5, tzinfo=UTC)

    def test_parse_iso_keeps_offset(self):
        parsed = parse_iso("2026-01-02T03:04:05+02:00")
        assert parsed == datetime(2026, 1, 2, 1, 4, 5, tzinfo=UTC)


class TestAgentLink:
    def test_defaults(self, db_session):
        link = AgentLink(business_id="biz-1")
        db_session.add(link)
        db_session.commit()

        assert link.id
        assert link.token.startswith("ag_")
        assert link.type == LinkType.multi_use.value
        assert link.status == LinkStatus.active.value
        assert link.current_uses == 0
        assert link.minutes_used == 0
        assert link.max_uses is None

    def test_token_is_unique(self, db_session):
        db_session.add(AgentLink(business_id="biz-1", token="ag_same"))
        db_session.commit()
        db_session.add(AgentLink(business_id="biz-1", token="ag_same"))
        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()


class TestConversationMessages:
    def _conversation(self, db_session) -> AgentConversation:
        conversation = AgentConversation(
            business_id="biz-1",
            session_id="s-1",
            status=ConversationStatus.active.value,
            started_at=datetime.now(UTC).isoformat(),
        )
        db_session.add(conversation)
        db_session.commit()
        return conversation

    def test_sequence_unique_per_conversation(self, db_session):
        conversation = self._conversation(db_session)
        db_session.add(
            AgentMessage(conversation_id=conversation.id, role="user", content="a", sequence=1)
        )
        db_session.commit()
        db_session.add(
            AgentMessage(conversation_id=conversation.id, role="user", content="b", sequence=1)
        )
        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()

    def test_messages_ordered_by_sequence(self, db_session):
        conversation = self._conversation(db_session)
        for seq, text in [(2, "second"), (1, "first")]:
            db_session.add(
                AgentMessage(
                    conversation_id=conversation.id, role="user", content=text, sequence=seq
                )
            )
        db_session.commit()
        db_session.refresh(conversation)

        assert [m.content for m in conversation.messages] == ["first", "second"]

    def test_deleting_conversation_cascades(self, db_session):
        conversation = self._conversation(db_session)
        db_session.add(
            AgentMessage(conversation_id=conversation.id, role="user", content="x", sequence=1)
        )
        db_session.commit()

        db_session.delete(conversation)
        db_session.commit()

        assert db_session.query(AgentMessage).count() == 0
