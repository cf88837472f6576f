"""Agent session manager for per-connection lifecycle.

Manages in-memory agent sessions keyed by session ID. A session is opened
by presenting an access link token, lives as long as its connection, and
runs at most one assistant turn at a time. Each turn persists the user
message, streams the response generator's events to a transport sink
through a TurnRelay, and persists the assistant reply when the turn
completes normally.

Concurrency model: a single asyncio event loop. The ``is_processing``
flag is checked and set before the first ``await`` of a turn, so two
overlapping sends for one session can never both start generating.
Database work runs in a worker thread via ``asyncio.to_thread``.

Example:
    mgr = AgentSessionManager()
    result = await mgr.start("ag_...")
    await mgr.send(result.session.session_id, "Hi", sink)
    await mgr.remove(result.session.session_id)
"""

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractContextManager
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Protocol
from uuid import uuid4

from sqlalchemy.orm import Session

from agentdesk.agent.events import (
    GeneratorEvent,
    OutboundEvent,
    SessionEndEvent,
    ToolEndEvent,
)
from agentdesk.agent.generator import ToolCallingAgent
from agentdesk.agent.system_prompt import BusinessContextProvider, StaticBusinessContextProvider
from agentdesk.config import get_fallback_delays
from agentdesk.db.connection import get_db_context
from agentdesk.db.models import MessageRole
from agentdesk.errors import (
    AgentDeskError,
    AlreadyProcessingError,
    LinkRejectedError,
    LinkRejection,
    PersistenceFailure,
    SessionNotFoundError,
)
from agentdesk.services.access_link_service import AccessLinkService, link_settings
from agentdesk.services.conversation_persistence_service import (
    ConversationPersistenceService,
)
from agentdesk.services.event_relay import TurnOutcome, TurnRelay, TurnSink

logger = logging.getLogger(__name__)

DEFAULT_WELCOME_MESSAGE = "Hi! How can I help you?"
EMPTY_TURN_MESSAGE = (
    "Sorry, I couldn't come up with an answer. Could you rephrase your question?"
)

_CANCELLED = object()
_EXHAUSTED = object()


class ResponseGenerator(Protocol):
    """Anything that streams a turn as GeneratorEvents."""

    def stream_response(
        self, history: list[dict[str, Any]], cancel_event: asyncio.Event
    ) -> AsyncIterator[GeneratorEvent]: ...


def welcome_message_for(settings: dict[str, Any]) -> str:
    """Welcome text: configured message, else a greeting naming the assistant."""
    configured = (settings.get("welcome_message") or "").strip()
    if configured:
        return configured
    name = (settings.get("assistant_name") or "").strip()
    if name:
        return f"Hi! I'm {name}. How can I help you?"
    return DEFAULT_WELCOME_MESSAGE


class AgentSession:
    """One live agent session bound to a connection.

    Attributes:
        session_id: Unique runtime identifier.
        conversation_id: Persisted conversation receiving the messages.
        business_id: Business the agent speaks for.
        link_id: Access link used to open the session.
        settings: Snapshot of the link settings at start.
        is_processing: True while a turn is generating.
        cancel_event: Set to interrupt the running turn (None when idle).
        current_tool: Tool currently running, if any.
        feedback: Latest progress message, cleared when a tool ends.
        started_at: When the session was opened.
        ended: Whether the session has been ended.
    """

    def __init__(
        self,
        session_id: str,
        conversation_id: str,
        business_id: str,
        link_id: str | None,
        settings: dict[str, Any] | None = None,
    ) -> None:
        self.session_id = session_id
        self.conversation_id = conversation_id
        self.business_id = business_id
        self.link_id = link_id
        self.settings: dict[str, Any] = dict(settings or {})
        self.is_processing = False
        self.cancel_event: asyncio.Event | None = None
        self.current_tool: str | None = None
        self.feedback: str | None = None
        self.started_at = datetime.now(UTC)
        self.ended = False

    @property
    def assistant_name(self) -> str:
        return self.settings.get("assistant_name") or "the assistant"

    def to_public(self) -> dict[str, Any]:
        """Client-facing description of the session."""
        return {
            "sessionId": self.session_id,
            "conversationId": self.conversation_id,
            "businessId": self.business_id,
            "settings": {
                "assistantName": self.settings.get("assistant_name"),
            },
        }


@dataclass
class SessionStartResult:
    """Outcome of ``AgentSessionManager.start``.

    On failure ``error`` carries the user-facing message and ``reason`` the
    link rejection reason when the link was refused.
    """

    success: bool
    session: AgentSession | None = None
    welcome_message: str | None = None
    error: str | None = None
    reason: LinkRejection | None = None
    error_code: str | None = None


class AgentSessionManager:
    """Manages live agent sessions.

    Thread-safe for single-process usage (FastAPI's async loop).
    Not designed for multi-process deployment.

    Args:
        db_context: Factory returning a transactional SQLAlchemy session
            context manager (commit on exit, rollback on error).
        agent_factory: Builds the response generator for a session.
        context_provider: Business facts for the default generator.
        fallback_delays: Seconds before waiting fallbacks are emitted.
        clock: Source of the current UTC time (used for conversation end).
    """

    def __init__(
        self,
        db_context: Callable[[], AbstractContextManager[Session]] = get_db_context,
        agent_factory: Callable[[AgentSession], ResponseGenerator] | None = None,
        context_provider: BusinessContextProvider | None = None,
        fallback_delays: tuple[float, ...] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._db_context = db_context
        self._context_provider = context_provider or StaticBusinessContextProvider()
        self._agent_factory = agent_factory or self._default_agent
        self._fallback_delays = (
            fallback_delays if fallback_delays is not None else get_fallback_delays()
        )
        self._clock = clock or (lambda: datetime.now(UTC))
        self._sessions: dict[str, AgentSession] = {}

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def get_session(self, session_id: str) -> AgentSession | None:
        """Get a session without creating one. Returns None if not found."""
        return self._sessions.get(session_id)

    def list_sessions(self) -> list[str]:
        """List all live session IDs."""
        return list(self._sessions.keys())

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, token: str) -> SessionStartResult:
        """Open a session from an access link token.

        Validates the link, creates the conversation, persists the welcome
        message and registers the session. On rejection nothing is
        registered and the reason is returned as-is.

        Args:
            token: Access link token.

        Returns:
            SessionStartResult describing the new session or the failure.
        """
        session_id = str(uuid4())
        try:
            opened = await asyncio.to_thread(self._open_conversation, token, session_id)
        except LinkRejectedError as e:
            logger.info("Session start refused: reason=%s", e.reason.value)
            return SessionStartResult(
                success=False,
                error=str(e),
                reason=e.reason,
                error_code=e.error_code,
            )
        except Exception as e:
            logger.error("Session start failed: %s", e, exc_info=True)
            error = AgentDeskError.from_code("E-4001", details=str(e))
            return SessionStartResult(
                success=False, error=error.message, error_code=error.code
            )

        session = AgentSession(
            session_id=session_id,
            conversation_id=opened["conversation_id"],
            business_id=opened["business_id"],
            link_id=opened["link_id"],
            settings=opened["settings"],
        )
        self._sessions[session_id] = session
        logger.info(
            "Started agent session %s (conversation=%s, link=%s)",
            session_id,
            session.conversation_id,
            session.link_id,
        )
        return SessionStartResult(
            success=True,
            session=session,
            welcome_message=opened["welcome_message"],
        )

    def accept_turn(self, session_id: str) -> AgentSession:
        """Claim the session for a new turn.

        Synchronous on purpose: the check and the set happen without an
        intervening await.

        Raises:
            SessionNotFoundError: No live session under this id.
            AlreadyProcessingError: A turn is already running.
        """
        session = self._sessions.get(session_id)
        if session is None or session.ended:
            raise SessionNotFoundError(session_id)
        if session.is_processing:
            raise AlreadyProcessingError(session_id)
        session.is_processing = True
        session.cancel_event = asyncio.Event()
        return session

    async def send(
        self,
        session_id: str,
        message: str,
        sink: TurnSink,
        tts: bool = False,
    ) -> TurnOutcome:
        """Run one assistant turn for a user message.

        Raises:
            SessionNotFoundError: No live session under this id.
            AlreadyProcessingError: A turn is already running.
        """
        session = self.accept_turn(session_id)
        return await self.run_turn(session, message, sink, tts=tts)

    async def run_turn(
        self,
        session: AgentSession,
        message: str,
        sink: TurnSink,
        tts: bool = False,
    ) -> TurnOutcome:
        """Run a turn on a session already claimed with ``accept_turn``.

        Returns:
            The terminal outcome of the turn.
        """
        relay = TurnRelay(session, sink, tts=tts)
        outcome = TurnOutcome.complete
        session_end: SessionEndEvent | None = None
        failed = False
        cancel_event = session.cancel_event or asyncio.Event()
        released = False

        def release() -> None:
            # Turn guard is cleared before the terminal event is sent; runs once.
            nonlocal released
            if released:
                return
            released = True
            session.is_processing = False
            session.cancel_event = None
            session.current_tool = None
            session.feedback = None

        try:
            await relay.emit(OutboundEvent.typing(True))
            relay.start_fallbacks(self._fallback_delays, session.assistant_name)

            saved = await self._persist(
                "save_user_message",
                self._save_message,
                session.conversation_id,
                MessageRole.user,
                message,
            )
            history = await self._persist(
                "load_history", self._load_history, session.conversation_id
            )
            if history is None:
                history = []
            if saved is None:
                history.append({"role": MessageRole.user.value, "content": message})

            agent = self._agent_factory(session)
            stream = agent.stream_response(history, cancel_event)
            try:
                while True:
                    event = await self._next_event(stream, cancel_event)
                    if event is _CANCELLED:
                        outcome = TurnOutcome.interrupted
                        break
                    if event is _EXHAUSTED:
                        break
                    if isinstance(event, SessionEndEvent):
                        outcome = TurnOutcome.session_end
                        session_end = event
                        break
                    await relay.relay(event)
                    if isinstance(event, ToolEndEvent) and event.success:
                        await self._persist(
                            "record_action",
                            self._record_action,
                            session.conversation_id,
                            {"tool": event.tool_name, "at": self._clock().isoformat()},
                        )
            finally:
                aclose = getattr(stream, "aclose", None)
                if aclose is not None:
                    await aclose()

        except Exception as e:
            failed = True
            logger.error(
                "Turn failed for session %s: %s", session.session_id, e, exc_info=True
            )
            error = AgentDeskError.from_code("E-4003", details=str(e))
            await self._safe_emit(relay, OutboundEvent.error(error.message))

        try:
            if outcome is TurnOutcome.interrupted:
                logger.info("Turn interrupted for session %s", session.session_id)
                release()
                await relay.finish(TurnOutcome.interrupted)
            elif outcome is TurnOutcome.session_end and session_end is not None:
                await self._persist_assistant_text(
                    session, (relay.text + " " + session_end.message).strip()
                )
                await relay.finish(
                    TurnOutcome.session_end,
                    OutboundEvent.session_end(session_end.message, session_end.reason),
                )
                await self._close(session)
            else:
                text = relay.text
                if text.strip():
                    await self._persist_assistant_text(session, text)
                else:
                    logger.warning(
                        "Empty assistant response for session %s; nothing persisted",
                        session.session_id,
                    )
                    if not failed:
                        await relay.emit(OutboundEvent.message(EMPTY_TURN_MESSAGE))
                release()
                await relay.finish(TurnOutcome.complete)
        except Exception as e:
            logger.error(
                "Could not deliver end of turn for session %s: %s",
                session.session_id,
                e,
            )
        finally:
            relay.close()
            release()
            await self._safe_emit(None, OutboundEvent.typing(False), sink=sink)

            elapsed = time.perf_counter() - relay.started_at
            ttfb = (
                relay.first_chunk_at - relay.started_at
                if relay.first_chunk_at is not None
                else -1.0
            )
            logger.info(
                "agent_timing marker=turn_done session_id=%s outcome=%s "
                "chars=%d ttfb=%.3f elapsed=%.3f",
                session.session_id,
                outcome.value,
                len(relay.text),
                ttfb,
                elapsed,
            )

        return outcome

    def interrupt(self, session_id: str) -> bool:
        """Request cancellation of the running turn.

        Idempotent; a no-op for idle or unknown sessions.

        Returns:
            True if a running turn was signalled.
        """
        session = self._sessions.get(session_id)
        if session is None or not session.is_processing or session.cancel_event is None:
            return False
        session.cancel_event.set()
        logger.info("Interrupt requested for session %s", session_id)
        return True

    async def end(self, session_id: str) -> bool:
        """End the conversation and drop the session. Idempotent.

        Returns:
            True if a live session was ended.
        """
        session = self._sessions.get(session_id)
        if session is None:
            return False
        await self._close(session)
        return True

    async def remove(self, session_id: str) -> bool:
        """Interrupt any running turn, end the conversation, drop the session.

        Used on explicit session end and on connection loss.
        """
        self.interrupt(session_id)
        return await self.end(session_id)

    async def shutdown(self) -> None:
        """End every live session (application shutdown)."""
        for session_id in self.list_sessions():
            await self.remove(session_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _default_agent(self, session: AgentSession) -> ResponseGenerator:
        return ToolCallingAgent(
            business_id=session.business_id,
            session_id=session.session_id,
            settings=session.settings,
            context_provider=self._context_provider,
            conversation_id=session.conversation_id,
        )

    async def _close(self, session: AgentSession) -> None:
        if session.ended:
            return
        session.ended = True
        self._sessions.pop(session.session_id, None)
        await self._persist(
            "end_conversation",
            self._end_conversation,
            session.conversation_id,
            self._clock(),
        )
        logger.info("Ended agent session %s", session.session_id)

    @staticmethod
    async def _next_event(
        stream: AsyncIterator[GeneratorEvent], cancel_event: asyncio.Event
    ) -> Any:
        """Next generator event, or a marker for cancellation/exhaustion."""
        if cancel_event.is_set():
            return _CANCELLED
        next_task = asyncio.ensure_future(stream.__anext__())
        cancel_task = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {next_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            cancel_task.cancel()

        if next_task in done:
            try:
                return next_task.result()
            except StopAsyncIteration:
                return _EXHAUSTED

        next_task.cancel()
        try:
            await next_task
        except (asyncio.CancelledError, StopAsyncIteration):
            pass
        except Exception as e:
            logger.debug("Generator raised while being cancelled: %s", e)
        return _CANCELLED

    async def _persist(self, operation: str, fn: Callable[..., Any], *args: Any) -> Any:
        """Run a blocking store call in a worker thread, best effort.

        Failures are logged as PersistenceFailure and yield None.
        """
        try:
            return await asyncio.to_thread(fn, *args)
        except Exception as e:
            failure = PersistenceFailure(operation, e)
            logger.error(
                "persistence_failure operation=%s error=%s", failure.operation, failure
            )
            return None

    async def _persist_assistant_text(self, session: AgentSession, text: str) -> None:
        if text:
            await self._persist(
                "save_assistant_message",
                self._save_message,
                session.conversation_id,
                MessageRole.assistant,
                text,
            )

    @staticmethod
    async def _safe_emit(
        relay: TurnRelay | None,
        event: OutboundEvent,
        sink: TurnSink | None = None,
    ) -> None:
        try:
            if relay is not None:
                await relay.emit(event)
            elif sink is not None:
                await sink.emit(event)
        except Exception as e:
            logger.debug("Dropped %s event: %s", event.type.value, e)

    # Blocking store operations (run via asyncio.to_thread)

    def _open_conversation(self, token: str, session_id: str) -> dict[str, Any]:
        with self._db_context() as db:
            link = AccessLinkService(db).validate_and_consume(token)
            settings = link_settings(link)
            store = ConversationPersistenceService(db)
            try:
                conversation = store.create_conversation(
                    business_id=link.business_id,
                    session_id=session_id,
                    agent_link_id=link.id,
                )
            except Exception as e:
                # The link use is already counted at this point.
                db.rollback()
                failure = PersistenceFailure("create_conversation", e)
                logger.error(
                    "persistence_failure operation=%s link=%s error=%s",
                    failure.operation,
                    link.id,
                    failure,
                )
                raise
            opened = {
                "conversation_id": conversation.id,
                "business_id": link.business_id,
                "link_id": link.id,
                "settings": settings,
                "welcome_message": welcome_message_for(settings),
            }
            try:
                store.add_message(
                    opened["conversation_id"],
                    MessageRole.assistant,
                    opened["welcome_message"],
                )
            except Exception as e:
                db.rollback()
                failure = PersistenceFailure("save_welcome_message", e)
                logger.error(
                    "persistence_failure operation=%s error=%s", failure.operation, failure
                )
            return opened

    def _save_message(self, conversation_id: str, role: MessageRole, content: str) -> str:
        with self._db_context() as db:
            return ConversationPersistenceService(db).add_message(
                conversation_id, role, content
            ).id

    def _load_history(self, conversation_id: str) -> list[dict[str, str]]:
        with self._db_context() as db:
            return ConversationPersistenceService(db).get_history(conversation_id)

    def _record_action(self, conversation_id: str, action: dict[str, Any]) -> bool:
        with self._db_context() as db:
            return ConversationPersistenceService(db).record_action(conversation_id, action)

    def _end_conversation(self, conversation_id: str, ended_at: datetime) -> int | None:
        with self._db_context() as db:
            end = ConversationPersistenceService(db).end_conversation(
                conversation_id, ended_at=ended_at
            )
            if end is None:
                return None
            if end.agent_link_id:
                AccessLinkService(db).increment_usage(
                    end.agent_link_id, end.minutes_used, count_use=False
                )
            logger.info(
                "Conversation %s completed: duration=%ds minutes=%d",
                conversation_id,
                end.duration_seconds,
                end.minutes_used,
            )
            return end.duration_seconds
