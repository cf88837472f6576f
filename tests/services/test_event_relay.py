"""Tests for TurnRelay ordering, tool state and terminal signals."""

import asyncio
import logging

import pytest

from agentdesk.agent.events import (
    ChunkEvent,
    ErrorEvent,
    FeedbackEvent,
    FeedbackKind,
    OutboundEvent,
    OutboundType,
    SessionEndEvent,
    ToolEndEvent,
    ToolStartEvent,
)
from agentdesk.services.agent_session_manager import AgentSession
from agentdesk.services.event_relay import TurnOutcome, TurnRelay


class RecordingSink:
    def __init__(self) -> None:
        self.events: list[OutboundEvent] = []

    async def emit(self, event: OutboundEvent) -> None:
        self.events.append(event)

    @property
    def types(self) -> list[str]:
        return [e.type.value for e in self.events]


@pytest.fixture
def session() -> AgentSession:
    return AgentSession("s-1", "c-1", "biz-1", "link-1", {"assistant_name": "Ana"})


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


class TestRelay:
    @pytest.mark.asyncio
    async def test_chunks_relayed_in_order_without_coalescing(self, session, sink):
        relay = TurnRelay(session, sink)
        for part in ["Hel", "lo", " world"]:
            await relay.relay(ChunkEvent(part))

        assert [e.data["chunk"] for e in sink.events] == ["Hel", "lo", " world"]
        assert all(e.data["isComplete"] is False for e in sink.events)
        assert relay.text == "Hello world"
        assert relay.has_started_response

    @pytest.mark.asyncio
    async def test_tool_lifecycle_tracks_current_tool(self, session, sink):
        relay = TurnRelay(session, sink)

        await relay.relay(FeedbackEvent(FeedbackKind.thinking, "Checking...", "get_services"))
        await relay.relay(ToolStartEvent("get_services"))
        assert session.current_tool == "get_services"
        assert session.feedback == "Checking..."

        await relay.relay(ToolEndEvent("get_services", True))
        assert session.current_tool is None
        assert session.feedback is None

        assert sink.events[0].data == {
            "type": "thinking",
            "message": "Checking...",
            "toolName": "get_services",
        }
        assert sink.events[1].data == {"status": "start", "toolName": "get_services"}
        assert sink.events[2].data == {
            "status": "end",
            "toolName": "get_services",
            "success": True,
        }

    @pytest.mark.asyncio
    async def test_error_is_not_terminal(self, session, sink):
        relay = TurnRelay(session, sink)
        await relay.relay(ErrorEvent("model unavailable"))
        await relay.relay(ChunkEvent("still here"))

        assert sink.types == ["error", "message"]
        assert relay.terminal is None

    @pytest.mark.asyncio
    async def test_session_end_must_go_through_finish(self, session, sink):
        relay = TurnRelay(session, sink)
        with pytest.raises(ValueError):
            await relay.relay(SessionEndEvent("bye"))


class TestTerminal:
    @pytest.mark.asyncio
    async def test_complete_marker(self, session, sink):
        relay = TurnRelay(session, sink)
        assert await relay.finish(TurnOutcome.complete) is True
        assert sink.events[-1].data == {"chunk": "", "isComplete": True}

    @pytest.mark.asyncio
    async def test_second_terminal_dropped_and_logged(self, session, sink, caplog):
        relay = TurnRelay(session, sink)
        await relay.finish(TurnOutcome.interrupted)

        with caplog.at_level(logging.WARNING):
            assert await relay.finish(TurnOutcome.complete) is False
        await relay.emit(OutboundEvent.message("late"))

        assert sink.types == ["interrupted"]
        assert "Second terminal" in caplog.text

    @pytest.mark.asyncio
    async def test_tts_chunks_and_final_marker(self, session, sink):
        relay = TurnRelay(session, sink, tts=True)
        await relay.relay(ChunkEvent("See you on Monday "))
        await relay.finish(TurnOutcome.complete)
        relay.close()

        tts = [e.data for e in sink.events if e.type == OutboundType.tts_chunk]
        assert tts == [
            {"text": "See you on", "isFinal": False},
            {"text": "Monday", "isFinal": False},
            {"text": "", "isFinal": True},
        ]
        assert sink.events[-1].type == OutboundType.message

    @pytest.mark.asyncio
    async def test_interrupt_skips_tts_flush(self, session, sink):
        relay = TurnRelay(session, sink, tts=True)
        await relay.relay(ChunkEvent("partial answer"))
        await relay.finish(TurnOutcome.interrupted)
        relay.close()

        assert OutboundType.tts_chunk not in [e.type for e in sink.events]
        assert sink.types[-1] == "interrupted"


class TestFallbacks:
    @pytest.mark.asyncio
    async def test_fallback_when_no_text_arrives(self, session, sink):
        relay = TurnRelay(session, sink)
        relay.start_fallbacks((0.01,), session.assistant_name)
        await asyncio.sleep(0.05)
        relay.close()

        assert sink.types == ["fallback"]
        assert sink.events[0].data["speak"] is True

    @pytest.mark.asyncio
    async def test_first_chunk_cancels_fallbacks(self, session, sink):
        relay = TurnRelay(session, sink)
        relay.start_fallbacks((0.05,), session.assistant_name)
        await relay.relay(ChunkEvent("Hi"))
        await asyncio.sleep(0.08)
        relay.close()

        assert "fallback" not in sink.types
