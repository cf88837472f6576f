"""Transport clients for the agent session API.

Two explicitly constructed clients, one per transport:

* AgentSSEClient talks to the HTTP routes with httpx and streams each turn
  as parsed SSE frames.
* AgentSocketClient holds a websocket (``websockets`` library), dispatches
  server events to registered handlers and resolves acknowledgements.

Both track their connection in a ClientStateMachine and raise ClientError
on failures, so they are usable from scripts, tests and UI shells alike.

Example:
    async with AgentSSEClient("http://127.0.0.1:8000") as client:
        started = await client.start_session("ag_...")
        async for frame in client.send_message("Hi"):
            print(frame.event, frame.data)
"""

import asyncio
import itertools
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

import httpx
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from agentdesk.transport.client_state import ClientState, ClientStateMachine
from agentdesk.transport.socket_protocol import (
    ClientEvent,
    FrameError,
    ServerEvent,
    SocketFrame,
    decode_frame,
    encode_frame,
)
from agentdesk.transport.sse import SSEFrame, SSEFrameParser

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1/agent"


class ClientError(Exception):
    """Error raised by the transport clients.

    Attributes:
        message: Human-readable description.
        status_code: HTTP status, when the server answered.
        reason: Link rejection reason for refused session starts.
    """

    def __init__(self, message: str, status_code: int | None = None, reason: str | None = None):
        self.message = message
        self.status_code = status_code
        self.reason = reason
        super().__init__(message)


def _error_detail(resp: httpx.Response) -> tuple[str, str | None]:
    try:
        body = resp.json()
    except ValueError:
        return resp.text or f"HTTP {resp.status_code}", None
    if not isinstance(body, dict):
        return str(body), None
    detail = body.get("detail")
    if isinstance(detail, dict):
        body = detail
    message = body.get("error") or body.get("message") or detail or resp.text
    return str(message), body.get("reason")


class AgentSSEClient:
    """HTTP + SSE client for one agent session.

    Args:
        base_url: Server base URL.
        timeout: Timeout for non-streaming requests, in seconds.
        transport: Optional httpx transport (tests pass a MockTransport).
    """

    def __init__(
        self,
        base_url: str = "http://127.0.0.1:8000",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self.state = ClientStateMachine()
        self.session: dict[str, Any] | None = None

    @property
    def session_id(self) -> str | None:
        return self.session.get("sessionId") if self.session else None

    async def __aenter__(self) -> "AgentSSEClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.disconnect()

    async def connect(self) -> None:
        """Open the HTTP client."""
        self.state.begin_connect()
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            transport=self._transport,
        )
        self.state.mark_connected()

    async def disconnect(self) -> None:
        """End the live session, if any, and close the HTTP client."""
        if self._client is None:
            return
        if self.session_id:
            try:
                await self.end_session()
            except ClientError as e:
                logger.warning("Could not end session on disconnect: %s", e)
        await self._client.aclose()
        self._client = None
        self.state.reset()

    async def start_session(self, token: str) -> dict[str, Any]:
        """Open a session with an access link token.

        Returns:
            ``{success, session, welcomeMessage}``.

        Raises:
            ClientError: On a refused link (status 403, ``reason`` set) or
                any other failure.
        """
        resp = await self._request("POST", f"{API_PREFIX}/session", json={"token": token})
        data = resp.json()
        self.session = data.get("session")
        return data

    async def send_message(self, message: str, tts: bool = False) -> AsyncIterator[SSEFrame]:
        """Send a user message and stream the turn.

        Yields:
            SSEFrame objects in the order the server sent them.

        Raises:
            ClientError: No session, 404/409 from the server, or a
                dropped connection.
        """
        if not self.session_id:
            raise ClientError("No active session")
        client = self._require_client()
        self.state.begin_turn()
        parser = SSEFrameParser()
        try:
            async with client.stream(
                "POST",
                f"{API_PREFIX}/chat",
                json={"sessionId": self.session_id, "message": message, "tts": tts},
                timeout=None,
            ) as resp:
                if resp.status_code >= 400:
                    await resp.aread()
                    detail, reason = _error_detail(resp)
                    raise ClientError(detail, status_code=resp.status_code, reason=reason)
                async for line in resp.aiter_lines():
                    frame = parser.feed_line(line)
                    if frame is not None:
                        self._track_session_end(frame)
                        yield frame
                trailing = parser.flush()
                if trailing is not None:
                    self._track_session_end(trailing)
                    yield trailing
        except httpx.TransportError as e:
            self.state.fail(str(e))
            self.session = None
            raise ClientError(f"Connection lost: {e}") from e
        finally:
            if self.state.state == ClientState.processing:
                self.state.end_turn()

    async def interrupt(self) -> None:
        """Stop the running turn."""
        if self.session_id:
            await self._request("POST", f"{API_PREFIX}/sessions/{self.session_id}/interrupt")

    async def end_session(self) -> bool:
        """End the session and its conversation."""
        session_id = self.session_id
        if not session_id:
            return False
        self.session = None
        resp = await self._request("DELETE", f"{API_PREFIX}/sessions/{session_id}")
        return bool(resp.json().get("success"))

    async def get_messages(self, conversation_id: str) -> list[dict[str, Any]]:
        """Stored messages of a conversation, oldest first."""
        resp = await self._request("GET", f"{API_PREFIX}/conversations/{conversation_id}/messages")
        return resp.json().get("messages", [])

    def _track_session_end(self, frame: SSEFrame) -> None:
        if frame.event == "session_end":
            self.session = None

    def _require_client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise ClientError("Client is not connected")
        return self._client

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        client = self._require_client()
        try:
            resp = await client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            self.state.fail(str(e))
            raise ClientError(f"Request failed: {e}") from e
        if resp.status_code >= 400:
            detail, reason = _error_detail(resp)
            raise ClientError(detail, status_code=resp.status_code, reason=reason)
        return resp


FrameHandler = Callable[[dict[str, Any]], Awaitable[None] | None]


class AgentSocketClient:
    """Websocket client for one agent session.

    Handlers registered with ``on(event, handler)`` receive the frame data
    for that event name. The client keeps its own state in step with the
    turn lifecycle (``processing`` until a completion, interruption or
    session end arrives).

    Args:
        url: Websocket URL of the agent endpoint.
        ack_timeout: Seconds to wait for an acknowledgement.
        ping_interval: Keepalive ping interval, in seconds.
        ping_timeout: Seconds without a pong before the link is dropped.
    """

    def __init__(
        self,
        url: str = "ws://127.0.0.1:8000/api/v1/agent/ws",
        ack_timeout: float = 10.0,
        ping_interval: float = 25.0,
        ping_timeout: float = 60.0,
    ) -> None:
        self._url = url
        self._ack_timeout = ack_timeout
        self._ping_interval = ping_interval
        self._ping_timeout = ping_timeout
        self._ws: Any = None
        self._reader: asyncio.Task | None = None
        self._ack_ids = itertools.count(1)
        self._pending_acks: dict[int, asyncio.Future] = {}
        self._handlers: dict[str, list[FrameHandler]] = {}
        self._closing = False
        self.state = ClientStateMachine()
        self.session: dict[str, Any] | None = None
        self.welcome_message: str | None = None

        # Built-in reactions keyed by server event name
        self._dispatch_table: dict[str, Callable[[dict[str, Any]], None]] = {
            ServerEvent.session_started.value: self._on_session_started,
            ServerEvent.session_ended.value: self._on_session_ended,
            ServerEvent.agent_message.value: self._on_agent_message,
            ServerEvent.agent_interrupted.value: self._on_turn_finished,
        }

    @property
    def session_id(self) -> str | None:
        return self.session.get("sessionId") if self.session else None

    async def __aenter__(self) -> "AgentSocketClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.disconnect()

    def on(self, event: str | ServerEvent, handler: FrameHandler) -> None:
        """Register a handler for a server event."""
        name = event.value if isinstance(event, ServerEvent) else event
        self._handlers.setdefault(name, []).append(handler)

    async def connect(self) -> None:
        """Open the websocket and start reading frames.

        Raises:
            ClientError: If the connection cannot be established.
        """
        self.state.begin_connect()
        self._closing = False
        try:
            self._ws = await websockets.connect(
                self._url,
                ping_interval=self._ping_interval,
                ping_timeout=self._ping_timeout,
            )
        except (OSError, WebSocketException) as e:
            self.state.fail(str(e))
            raise ClientError(f"Could not connect to {self._url}: {e}") from e
        self._reader = asyncio.create_task(self._read_loop())
        self.state.mark_connected()

    async def disconnect(self) -> None:
        """Close the websocket; the server ends the session."""
        self._closing = True
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None
        self._fail_pending_acks("Disconnected")
        self.session = None
        self.state.reset()

    async def start_session(self, token: str) -> dict[str, Any]:
        """Ask the server to open a session.

        ``session:started`` follows the acknowledgement and fills
        ``session`` and ``welcome_message``.

        Raises:
            ClientError: If the link was refused.
        """
        ack = await self.emit(ClientEvent.session_start, {"token": token}, ack=True)
        if not ack.get("success"):
            raise ClientError(ack.get("error") or "Session start failed", reason=ack.get("reason"))
        return ack

    async def send_message(self, message: str) -> dict[str, Any]:
        """Send a user message; turn events arrive through the handlers.

        Raises:
            ClientError: If the server refused the message.
        """
        self.state.begin_turn()
        try:
            ack = await self.emit(ClientEvent.agent_send, {"message": message}, ack=True)
        except ClientError:
            if self.state.state == ClientState.processing:
                self.state.end_turn()
            raise
        if not ack.get("success"):
            if self.state.state == ClientState.processing:
                self.state.end_turn()
            raise ClientError(ack.get("error") or "Message rejected")
        return ack

    async def interrupt(self) -> None:
        await self.emit(ClientEvent.agent_interrupt)

    async def set_typing(self, is_typing: bool) -> None:
        await self.emit(ClientEvent.user_typing, {"isTyping": is_typing})

    async def end_session(self) -> bool:
        ack = await self.emit(ClientEvent.session_end, ack=True)
        self.session = None
        return bool(ack.get("success"))

    async def emit(
        self,
        event: ClientEvent,
        data: dict[str, Any] | None = None,
        ack: bool = False,
    ) -> dict[str, Any]:
        """Send one frame, optionally waiting for its acknowledgement.

        Returns:
            The acknowledgement payload, or an empty dict when ``ack`` is
            False.
        """
        if self._ws is None:
            raise ClientError("Client is not connected")

        ack_id = next(self._ack_ids) if ack else None
        future: asyncio.Future | None = None
        if ack_id is not None:
            future = asyncio.get_running_loop().create_future()
            self._pending_acks[ack_id] = future

        try:
            await self._ws.send(json.dumps(encode_frame(event, data, ack_id)))
        except ConnectionClosed as e:
            self._pending_acks.pop(ack_id, None)
            self.state.fail("Connection lost")
            raise ClientError(f"Connection lost: {e}") from e

        if future is None:
            return {}
        try:
            return await asyncio.wait_for(future, timeout=self._ack_timeout)
        except asyncio.TimeoutError as e:
            raise ClientError(f"No acknowledgement for {event.value}") from e
        finally:
            self._pending_acks.pop(ack_id, None)

    async def _read_loop(self) -> None:
        try:
            async for raw in self._ws:
                try:
                    frame = decode_frame(raw)
                except FrameError as e:
                    logger.warning("Ignoring malformed frame: %s", e)
                    continue
                await self._dispatch(frame)
        except ConnectionClosed as e:
            if not self._closing:
                logger.warning("Agent socket closed: %s", e)
        finally:
            if not self._closing:
                self._fail_pending_acks("Connection lost")
                self.session = None
                self.state.fail("Connection lost")

    async def _dispatch(self, frame: SocketFrame) -> None:
        if frame.event == ServerEvent.ack.value:
            future = self._pending_acks.get(frame.ack_id) if frame.ack_id is not None else None
            if future is not None and not future.done():
                future.set_result(frame.data)
            return

        builtin = self._dispatch_table.get(frame.event)
        if builtin is not None:
            builtin(frame.data)

        for handler in self._handlers.get(frame.event, []):
            try:
                result = handler(frame.data)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error("Handler for %s failed: %s", frame.event, e, exc_info=True)

    def _on_session_started(self, data: dict[str, Any]) -> None:
        self.session = data.get("session")
        self.welcome_message = data.get("welcomeMessage")

    def _on_session_ended(self, data: dict[str, Any]) -> None:
        self._on_turn_finished(data)
        self.session = None

    def _on_agent_message(self, data: dict[str, Any]) -> None:
        if data.get("isComplete"):
            self._on_turn_finished(data)

    def _on_turn_finished(self, data: dict[str, Any]) -> None:
        if self.state.state == ClientState.processing:
            self.state.end_turn()

    def _fail_pending_acks(self, reason: str) -> None:
        for future in self._pending_acks.values():
            if not future.done():
                future.set_exception(ClientError(reason))
        self._pending_acks.clear()
