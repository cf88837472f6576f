"""Websocket route for agent sessions.

One websocket connection carries at most one agent session. Client frames
are dispatched through a table keyed by event name; a frame carrying an
``ackId`` gets exactly one ``ack`` frame back. Turn events are pushed as
they are generated. When the socket drops, the running turn is
interrupted and the session's conversation is ended.

Endpoint:
    WS /agent/ws
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from agentdesk.agent.events import OutboundEvent, OutboundType
from agentdesk.api.runtime import get_session_manager
from agentdesk.errors import AgentDeskError, AlreadyProcessingError, SessionNotFoundError
from agentdesk.services.agent_session_manager import AgentSessionManager
from agentdesk.transport.socket_protocol import (
    ClientEvent,
    FrameError,
    ServerEvent,
    SocketFrame,
    ack_frame,
    decode_frame,
    encode_frame,
    outbound_frame,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/agent", tags=["agent"])

Handler = Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]


class SocketSink:
    """TurnSink writing outbound events to one socket connection."""

    def __init__(self, connection: "SocketConnection") -> None:
        self._connection = connection

    async def emit(self, event: OutboundEvent) -> None:
        if event.type == OutboundType.session_end:
            # The agent closed the session; it is gone from the manager
            self._connection.session_id = None
        await self._connection.send(outbound_frame(event))


class SocketConnection:
    """State of one websocket connection.

    Args:
        websocket: Accepted websocket.
        manager: Session manager shared with the HTTP routes.
    """

    def __init__(self, websocket: WebSocket, manager: AgentSessionManager) -> None:
        self._websocket = websocket
        self._manager = manager
        self._send_lock = asyncio.Lock()
        self._turn_task: asyncio.Task | None = None
        self.session_id: str | None = None
        self._handlers: dict[str, Handler] = {
            ClientEvent.session_start.value: self._on_session_start,
            ClientEvent.session_end.value: self._on_session_end,
            ClientEvent.agent_send.value: self._on_agent_send,
            ClientEvent.agent_interrupt.value: self._on_agent_interrupt,
            ClientEvent.user_typing.value: self._on_user_typing,
        }

    async def send(self, frame: dict[str, Any]) -> None:
        """Send a frame unless the socket is gone."""
        if self._websocket.client_state != WebSocketState.CONNECTED:
            return
        async with self._send_lock:
            try:
                await self._websocket.send_json(frame)
            except (WebSocketDisconnect, RuntimeError) as e:
                logger.debug("Dropped %s frame on closed socket: %s", frame.get("event"), e)

    async def run(self) -> None:
        """Serve frames until the client disconnects."""
        await self.send(encode_frame(ServerEvent.connection_status, {"status": "connected"}))
        try:
            while True:
                raw = await self._websocket.receive_text()
                try:
                    frame = decode_frame(raw)
                except FrameError as e:
                    logger.warning("Malformed socket frame: %s", e)
                    error = AgentDeskError.from_code("E-2004", details=str(e))
                    await self.send(encode_frame(ServerEvent.agent_error, {"error": error.message}))
                    continue
                await self._dispatch(frame)
        except WebSocketDisconnect:
            logger.info("Agent socket disconnected (session=%s)", self.session_id)
        finally:
            await self._cleanup()

    async def _dispatch(self, frame: SocketFrame) -> None:
        handler = self._handlers.get(frame.event)
        if handler is None:
            logger.warning("Unknown socket event %s", frame.event)
            result: dict[str, Any] = {
                "success": False,
                "error": f"Unknown event: {frame.event}",
            }
        else:
            try:
                result = await handler(frame.data)
            except Exception as e:
                logger.error("Socket handler %s failed: %s", frame.event, e, exc_info=True)
                error = AgentDeskError.from_code("E-4003", details=str(e))
                result = {"success": False, "error": error.message}
        if frame.ack_id is not None:
            await self.send(ack_frame(frame.ack_id, **result))

    async def _on_session_start(self, data: dict[str, Any]) -> dict[str, Any]:
        token = str(data.get("token") or "").strip()
        if not token:
            error = AgentDeskError.from_code("E-1001")
            await self.send(encode_frame(ServerEvent.session_error, {"error": error.message}))
            return {"success": False, "error": error.message}

        if self.session_id is not None:
            # One session per connection: a new start replaces the old one
            await self._end_current_session()

        result = await self._manager.start(token)
        if not result.success or result.session is None:
            payload: dict[str, Any] = {"error": result.error}
            if result.reason is not None:
                payload["reason"] = result.reason.value
            await self.send(encode_frame(ServerEvent.session_error, payload))
            return {"success": False, **payload}

        self.session_id = result.session.session_id
        await self.send(
            encode_frame(
                ServerEvent.session_started,
                {
                    "session": result.session.to_public(),
                    "welcomeMessage": result.welcome_message,
                },
            )
        )
        return {"success": True}

    async def _on_session_end(self, data: dict[str, Any]) -> dict[str, Any]:
        ended = await self._end_current_session()
        return {"success": ended}

    async def _on_agent_send(self, data: dict[str, Any]) -> dict[str, Any]:
        message = str(data.get("message") or "").strip()
        if not message:
            error = AgentDeskError.from_code("E-2004", details="message is empty")
            return {"success": False, "error": error.message}
        if self.session_id is None:
            return {"success": False, "error": AgentDeskError.from_code("E-2003").message}

        try:
            session = self._manager.accept_turn(self.session_id)
        except (SessionNotFoundError, AlreadyProcessingError) as e:
            return {"success": False, "error": str(e)}

        self._turn_task = asyncio.create_task(
            self._manager.run_turn(
                session, message, SocketSink(self), tts=bool(data.get("tts", False))
            )
        )
        return {"success": True}

    async def _on_agent_interrupt(self, data: dict[str, Any]) -> dict[str, Any]:
        if self.session_id is None:
            return {"success": False}
        return {"success": self._manager.interrupt(self.session_id)}

    async def _on_user_typing(self, data: dict[str, Any]) -> dict[str, Any]:
        logger.debug(
            "User typing=%s (session=%s)", bool(data.get("isTyping")), self.session_id
        )
        return {"success": True}

    async def _end_current_session(self) -> bool:
        session_id = self.session_id
        if session_id is None:
            return False
        self.session_id = None
        ended = await self._manager.remove(session_id)
        await self._wait_for_turn()
        return ended

    async def _wait_for_turn(self) -> None:
        task = self._turn_task
        self._turn_task = None
        if task is None or task.done():
            return
        try:
            await task
        except Exception as e:
            logger.error("Turn ended with error: %s", e)

    async def _cleanup(self) -> None:
        if self.session_id is not None:
            await self._end_current_session()
        else:
            await self._wait_for_turn()


@router.websocket("/ws")
async def agent_socket(
    websocket: WebSocket,
    manager: AgentSessionManager = Depends(get_session_manager),
) -> None:
    """Bidirectional agent session channel."""
    await websocket.accept()
    connection = SocketConnection(websocket, manager)
    await connection.run()
