"""Relay generator events to a connected client for one turn.

The relay sits between the response generator and a transport sink. It
forwards events in generation order, tracks the tool currently running,
accumulates assistant text for persistence, and guarantees at most one
terminal signal (complete, interrupted or session end) per turn.

It also owns two per-turn helpers that both transports share: waiting
fallbacks scheduled while no text has arrived, and the optional regrouping
of text into phrases for speech synthesis.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import TYPE_CHECKING, Protocol

from agentdesk.agent.events import (
    ChunkEvent,
    ErrorEvent,
    FeedbackEvent,
    GeneratorEvent,
    OutboundEvent,
    SessionEndEvent,
    ToolEndEvent,
    ToolStartEvent,
)
from agentdesk.agent.feedback import waiting_message
from agentdesk.services.tts_text_buffer import TtsTextBuffer

if TYPE_CHECKING:
    from agentdesk.services.agent_session_manager import AgentSession

logger = logging.getLogger(__name__)


class TurnSink(Protocol):
    """Destination of a turn's outbound events (an SSE queue or a socket)."""

    async def emit(self, event: OutboundEvent) -> None: ...


class TurnOutcome(str, Enum):
    """Terminal signal of a turn."""

    complete = "complete"
    interrupted = "interrupted"
    session_end = "session_end"


class TurnRelay:
    """Per-turn event forwarder.

    Args:
        session: Session whose tool/feedback state is tracked.
        sink: Transport sink receiving outbound events.
        tts: Also emit ``tts_chunk`` phrases for speech synthesis.
    """

    def __init__(
        self,
        session: "AgentSession",
        sink: TurnSink,
        tts: bool = False,
    ) -> None:
        self._session = session
        self._sink = sink
        self._parts: list[str] = []
        self._terminal: TurnOutcome | None = None
        self._fallback_tasks: list[asyncio.Task[None]] = []
        self._tts = TtsTextBuffer(self._emit_tts) if tts else None
        self.started_at = time.perf_counter()
        self.first_chunk_at: float | None = None

    @property
    def text(self) -> str:
        """Assistant text accumulated so far."""
        return "".join(self._parts)

    @property
    def has_started_response(self) -> bool:
        return self.first_chunk_at is not None

    @property
    def terminal(self) -> TurnOutcome | None:
        return self._terminal

    async def emit(self, event: OutboundEvent) -> None:
        """Send a non-terminal event unless the turn already ended."""
        if self._terminal is not None:
            logger.debug(
                "Dropping %s after %s for session %s",
                event.type.value,
                self._terminal.value,
                self._session.session_id,
            )
            return
        await self._sink.emit(event)

    async def relay(self, event: GeneratorEvent) -> None:
        """Forward one generator event. SessionEndEvent is handled by the caller."""
        if isinstance(event, ChunkEvent):
            if self.first_chunk_at is None:
                self.first_chunk_at = time.perf_counter()
                self.cancel_fallbacks()
            self._parts.append(event.content)
            await self.emit(OutboundEvent.message(event.content))
            if self._tts is not None:
                await self._tts.push_text(event.content)
        elif isinstance(event, FeedbackEvent):
            self._session.feedback = event.message
            await self.emit(
                OutboundEvent.feedback(event.kind, event.message, event.tool_name)
            )
        elif isinstance(event, ToolStartEvent):
            self._session.current_tool = event.tool_name
            await self.emit(OutboundEvent.tool_start(event.tool_name))
        elif isinstance(event, ToolEndEvent):
            self._session.current_tool = None
            self._session.feedback = None
            await self.emit(OutboundEvent.tool_end(event.tool_name, event.success))
        elif isinstance(event, ErrorEvent):
            logger.error(
                "Generator error for session %s: %s",
                self._session.session_id,
                event.error,
            )
            await self.emit(OutboundEvent.error(event.error))
        elif isinstance(event, SessionEndEvent):
            raise ValueError("SessionEndEvent is terminal; use finish()")
        else:
            logger.warning("Unknown generator event: %r", event)

    async def finish(self, outcome: TurnOutcome, event: OutboundEvent | None = None) -> bool:
        """Emit the turn's terminal signal exactly once.

        Args:
            outcome: Which terminal signal to send.
            event: Explicit terminal payload; derived from outcome when None.

        Returns:
            True if this call emitted the terminal, False if one was already sent.
        """
        if self._terminal is not None:
            logger.warning(
                "Second terminal %s dropped for session %s (already %s)",
                outcome.value,
                self._session.session_id,
                self._terminal.value,
            )
            return False

        self.cancel_fallbacks()
        if self._tts is not None:
            if outcome is TurnOutcome.interrupted:
                self._tts.destroy()
            else:
                await self._tts.flush()
                self._tts.destroy()
                await self._sink.emit(OutboundEvent.tts_chunk("", is_final=True))

        if event is None:
            if outcome is TurnOutcome.complete:
                event = OutboundEvent.message("", is_complete=True)
            elif outcome is TurnOutcome.interrupted:
                event = OutboundEvent.interrupted()
            else:
                event = OutboundEvent.session_end("")

        self._terminal = outcome
        await self._sink.emit(event)
        return True

    def start_fallbacks(self, delays: tuple[float, ...], assistant_name: str) -> None:
        """Schedule waiting messages for while no text has arrived."""
        for delay in delays:
            self._fallback_tasks.append(
                asyncio.create_task(self._fallback_after(delay, assistant_name))
            )

    def cancel_fallbacks(self) -> None:
        current = asyncio.current_task()
        for task in self._fallback_tasks:
            if task is not current and not task.done():
                task.cancel()
        self._fallback_tasks = []

    def close(self) -> None:
        """Release timers. Safe to call more than once."""
        self.cancel_fallbacks()
        if self._tts is not None:
            self._tts.destroy()

    async def _fallback_after(self, delay: float, assistant_name: str) -> None:
        await asyncio.sleep(delay)
        if self.has_started_response or self._terminal is not None:
            return
        logger.info(
            "Fallback after %.0fs with no response for session %s",
            delay,
            self._session.session_id,
        )
        await self.emit(OutboundEvent.fallback(waiting_message(delay, assistant_name)))

    async def _emit_tts(self, text: str) -> None:
        await self.emit(OutboundEvent.tts_chunk(text))
