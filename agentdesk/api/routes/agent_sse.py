"""FastAPI routes for agent sessions over server-sent events.

A session is opened with an access link token; each user message is then
POSTed to ``/chat`` and answered with an SSE stream carrying the turn's
events until its terminal signal. The turn runs as a task feeding a
per-request queue, so a client that disconnects interrupts the turn
instead of leaving it generating.

Endpoints:
    POST   /agent/session                     Open a session from a token
    POST   /agent/chat                        Run a turn, stream events
    POST   /agent/sessions/{id}/interrupt     Interrupt the running turn
    DELETE /agent/sessions/{id}               End the session
    GET    /agent/conversations/{id}/messages Stored conversation history
"""

import asyncio
import logging
from collections.abc import AsyncGenerator

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session
from sse_starlette.sse import EventSourceResponse

from agentdesk.agent.events import OutboundEvent
from agentdesk.api.runtime import get_session_manager
from agentdesk.api.schemas_agent import (
    ChatRequest,
    ConversationMessage,
    ConversationMessagesResponse,
    EndSessionResponse,
    SessionErrorResponse,
    SessionInfo,
    StartSessionRequest,
    StartSessionResponse,
)
from agentdesk.db.connection import get_db
from agentdesk.errors import NotFoundError
from agentdesk.services.agent_session_manager import AgentSession, AgentSessionManager
from agentdesk.services.conversation_persistence_service import (
    ConversationPersistenceService,
)
from agentdesk.transport.sse import SSE_LINE_SEPARATOR, to_sse_message

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/agent", tags=["agent"])

SSE_PING_SECONDS = 15
DISCONNECT_POLL_SECONDS = 1.0

_DONE = object()


class QueueSink:
    """TurnSink that hands events to the SSE response through a queue."""

    def __init__(self) -> None:
        self.queue: asyncio.Queue = asyncio.Queue()

    async def emit(self, event: OutboundEvent) -> None:
        await self.queue.put(event)


async def _run_turn(
    manager: AgentSessionManager,
    session: AgentSession,
    message: str,
    sink: QueueSink,
    tts: bool,
) -> None:
    try:
        await manager.run_turn(session, message, sink, tts=tts)
    except Exception as e:
        logger.error("Turn task failed for session %s: %s", session.session_id, e, exc_info=True)
    finally:
        await sink.queue.put(_DONE)


async def _turn_events(
    request: Request,
    manager: AgentSessionManager,
    session_id: str,
    queue: asyncio.Queue,
    task: asyncio.Task,
) -> AsyncGenerator[dict, None]:
    """Yield SSE messages from the turn queue until the turn task is done.

    Args:
        request: FastAPI request for disconnect detection.
        manager: Session manager running the turn.
        session_id: Session being served.
        queue: Queue receiving the turn's outbound events.
        task: The running turn.

    Yields:
        SSE event dictionaries.
    """
    try:
        while True:
            try:
                event = await asyncio.wait_for(queue.get(), timeout=DISCONNECT_POLL_SECONDS)
            except asyncio.TimeoutError:
                if await request.is_disconnected():
                    logger.info("SSE client left during turn for session %s", session_id)
                    break
                continue
            if event is _DONE:
                break
            yield to_sse_message(event)
    finally:
        if not task.done():
            manager.interrupt(session_id)


@router.post(
    "/session",
    response_model=StartSessionResponse,
    responses={403: {"model": SessionErrorResponse}},
)
async def start_session(
    payload: StartSessionRequest,
    manager: AgentSessionManager = Depends(get_session_manager),
):
    """Open an agent session from an access link token.

    Returns:
        StartSessionResponse, or a 403 SessionErrorResponse carrying the
        link rejection reason.
    """
    result = await manager.start(payload.token)
    if not result.success or result.session is None:
        body = SessionErrorResponse(
            error=result.error or "Session could not be started",
            reason=result.reason.value if result.reason else None,
            errorCode=result.error_code,
        )
        return JSONResponse(status_code=403, content=body.model_dump(by_alias=True))

    return StartSessionResponse(
        session=SessionInfo(**result.session.to_public()),
        welcomeMessage=result.welcome_message or "",
    )


@router.post("/chat")
async def chat(
    request: Request,
    payload: ChatRequest,
    manager: AgentSessionManager = Depends(get_session_manager),
) -> EventSourceResponse:
    """Run one assistant turn and stream its events.

    Raises:
        SessionNotFoundError: Unknown session (404 via the app handler).
        AlreadyProcessingError: A turn is already running (409).
    """
    session = manager.accept_turn(payload.session_id)

    sink = QueueSink()
    task = asyncio.create_task(
        _run_turn(manager, session, payload.message, sink, payload.tts)
    )
    return EventSourceResponse(
        _turn_events(request, manager, session.session_id, sink.queue, task),
        media_type="text/event-stream",
        sep=SSE_LINE_SEPARATOR,
        ping=SSE_PING_SECONDS,
    )


@router.post("/sessions/{session_id}/interrupt", status_code=204)
async def interrupt_session(
    session_id: str,
    manager: AgentSessionManager = Depends(get_session_manager),
) -> Response:
    """Interrupt the running turn. Idempotent."""
    manager.interrupt(session_id)
    return Response(status_code=204)


@router.delete("/sessions/{session_id}", response_model=EndSessionResponse)
async def end_session(
    session_id: str,
    manager: AgentSessionManager = Depends(get_session_manager),
) -> EndSessionResponse:
    """End the session and complete its conversation.

    Returns ``success: false`` when no live session exists.
    """
    ended = await manager.remove(session_id)
    logger.info("End session request for %s (ended=%s)", session_id, ended)
    return EndSessionResponse(success=ended)


@router.get(
    "/conversations/{conversation_id}/messages",
    response_model=ConversationMessagesResponse,
)
def get_conversation_messages(
    conversation_id: str,
    db: Session = Depends(get_db),
) -> ConversationMessagesResponse:
    """Stored history of a conversation, oldest first.

    Raises:
        NotFoundError: If the conversation does not exist (404).
    """
    loaded = ConversationPersistenceService(db).get_conversation_with_messages(
        conversation_id
    )
    if loaded is None:
        raise NotFoundError("Conversation", conversation_id)

    return ConversationMessagesResponse(
        conversationId=conversation_id,
        status=loaded["conversation"]["status"],
        messages=[
            ConversationMessage(
                id=m["id"],
                role=m["role"],
                content=m["content"],
                sequence=m["sequence"],
                createdAt=m["created_at"],
            )
            for m in loaded["messages"]
        ],
    )
