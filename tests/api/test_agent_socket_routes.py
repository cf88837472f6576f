"""Tests for the agent websocket route."""

import time

from agentdesk.agent.events import ChunkEvent, SessionEndEvent

WS_PATH = "/api/v1/agent/ws"


def receive_until(ws, predicate, limit: int = 50) -> list[dict]:
    """Collect frames until one matches ``predicate``."""
    frames = []
    for _ in range(limit):
        frame = ws.receive_json()
        frames.append(frame)
        if predicate(frame):
            return frames
    raise AssertionError(f"No matching frame in {frames}")


def is_ack(ack_id: int):
    return lambda frame: frame["event"] == "ack" and frame.get("ackId") == ack_id


def turn_done(frame: dict) -> bool:
    return frame["event"] == "agent:typing" and frame["data"] == {"isTyping": False}


def start_session(ws, token: str, ack_id: int = 1) -> list[dict]:
    ws.send_json({"event": "session:start", "data": {"token": token}, "ackId": ack_id})
    return receive_until(ws, is_ack(ack_id))


def wait_for(condition, timeout: float = 2.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return
        time.sleep(0.01)
    raise AssertionError("condition not met")


class TestConnection:
    def test_connection_status_first(self, client):
        with client.websocket_connect(WS_PATH) as ws:
            assert ws.receive_json() == {
                "event": "connection:status",
                "data": {"status": "connected"},
            }

    def test_malformed_frame_reports_error(self, client):
        with client.websocket_connect(WS_PATH) as ws:
            ws.receive_json()
            ws.send_text("not json")
            frame = ws.receive_json()
            assert frame["event"] == "agent:error"
            assert frame["data"]["error"].startswith("Message payload is invalid")

    def test_unknown_event_is_acked_with_error(self, client):
        with client.websocket_connect(WS_PATH) as ws:
            ws.receive_json()
            ws.send_json({"event": "agent:dance", "data": {}, "ackId": 9})
            assert ws.receive_json() == {
                "event": "ack",
                "data": {"success": False, "error": "Unknown event: agent:dance"},
                "ackId": 9,
            }

    def test_user_typing_is_acked(self, client):
        with client.websocket_connect(WS_PATH) as ws:
            ws.receive_json()
            ws.send_json({"event": "user:typing", "data": {"isTyping": True}, "ackId": 3})
            assert ws.receive_json() == {
                "event": "ack",
                "data": {"success": True},
                "ackId": 3,
            }


class TestSessionStart:
    def test_started_then_ack(self, client, link):
        with client.websocket_connect(WS_PATH) as ws:
            ws.receive_json()
            frames = start_session(ws, link.token)

        assert [f["event"] for f in frames] == ["session:started", "ack"]
        started = frames[0]["data"]
        assert started["welcomeMessage"] == "Hi! I'm Ana. How can I help you?"
        assert started["session"]["settings"] == {"assistantName": "Ana"}
        assert frames[1]["data"] == {"success": True}

    def test_rejected_link(self, client):
        with client.websocket_connect(WS_PATH) as ws:
            ws.receive_json()
            frames = start_session(ws, "ag_nope")

        assert frames[0]["event"] == "session:error"
        assert frames[0]["data"]["reason"] == "not_found"
        assert frames[1]["data"]["success"] is False

    def test_missing_token(self, client):
        with client.websocket_connect(WS_PATH) as ws:
            ws.receive_json()
            frames = start_session(ws, "")

        assert frames[0]["event"] == "session:error"
        assert frames[1]["data"] == {"success": False, "error": "This link is not valid."}

    def test_second_start_replaces_session(self, client, manager, make_link):
        first, second = make_link(), make_link()
        with client.websocket_connect(WS_PATH) as ws:
            ws.receive_json()
            start_session(ws, first.token, ack_id=1)
            old_ids = manager.list_sessions()
            start_session(ws, second.token, ack_id=2)

            live = manager.list_sessions()
            assert len(live) == 1
            assert live != old_ids


class TestTurns:
    def test_send_streams_turn(self, client, link):
        with client.websocket_connect(WS_PATH) as ws:
            ws.receive_json()
            start_session(ws, link.token)
            ws.send_json({"event": "agent:send", "data": {"message": "Hi"}, "ackId": 2})
            frames = receive_until(ws, turn_done)

        events = [f["event"] for f in frames]
        assert {"event": "ack", "data": {"success": True}, "ackId": 2} in frames
        messages = [f["data"] for f in frames if f["event"] == "agent:message"]
        assert messages == [
            {"chunk": "Hello", "isComplete": False},
            {"chunk": " there", "isComplete": False},
            {"chunk": "", "isComplete": True},
        ]
        assert events.index("agent:typing") < events.index("agent:message")

    def test_send_requires_session(self, client):
        with client.websocket_connect(WS_PATH) as ws:
            ws.receive_json()
            ws.send_json({"event": "agent:send", "data": {"message": "Hi"}, "ackId": 1})
            ack = ws.receive_json()

        assert ack["data"] == {
            "success": False,
            "error": "No session has been started on this connection.",
        }

    def test_empty_message_rejected(self, client, link):
        with client.websocket_connect(WS_PATH) as ws:
            ws.receive_json()
            start_session(ws, link.token)
            ws.send_json({"event": "agent:send", "data": {"message": "  "}, "ackId": 2})
            ack = ws.receive_json()

        assert ack["data"]["success"] is False
        assert "message is empty" in ack["data"]["error"]

    def test_interrupt_running_turn(self, client, agent, link):
        agent.events = (ChunkEvent("Let me think"),)
        agent.hang = True
        with client.websocket_connect(WS_PATH) as ws:
            ws.receive_json()
            start_session(ws, link.token)
            ws.send_json({"event": "agent:send", "data": {"message": "Hi"}, "ackId": 2})
            receive_until(ws, lambda f: f["event"] == "agent:message")

            ws.send_json({"event": "agent:send", "data": {"message": "again"}, "ackId": 3})
            busy = receive_until(ws, is_ack(3))[-1]
            assert busy["data"]["success"] is False
            assert "already processing" in busy["data"]["error"]

            ws.send_json({"event": "agent:interrupt", "data": {}, "ackId": 4})
            frames = receive_until(ws, turn_done)

        events = [f["event"] for f in frames]
        assert "agent:interrupted" in events
        assert {"chunk": "", "isComplete": True} not in [f["data"] for f in frames]

    def test_agent_ends_session(self, client, agent, manager, link):
        agent.events = (ChunkEvent("Bye for now."), SessionEndEvent("Goodbye!"))
        with client.websocket_connect(WS_PATH) as ws:
            ws.receive_json()
            start_session(ws, link.token)
            ws.send_json({"event": "agent:send", "data": {"message": "bye"}, "ackId": 2})
            frames = receive_until(ws, turn_done)

            ended = [f for f in frames if f["event"] == "session:ended"]
            assert ended[0]["data"] == {"message": "Goodbye!"}
            assert manager.list_sessions() == []

            ws.send_json({"event": "agent:send", "data": {"message": "Hi"}, "ackId": 3})
            assert ws.receive_json()["data"]["success"] is False


class TestDisconnect:
    def test_session_end_frame(self, client, manager, link):
        with client.websocket_connect(WS_PATH) as ws:
            ws.receive_json()
            start_session(ws, link.token)
            ws.send_json({"event": "session:end", "data": {}, "ackId": 2})
            assert ws.receive_json()["data"] == {"success": True}
            assert manager.list_sessions() == []

    def test_disconnect_ends_session(self, client, agent, manager, link):
        agent.hang = True
        with client.websocket_connect(WS_PATH) as ws:
            ws.receive_json()
            start_session(ws, link.token)
            ws.send_json({"event": "agent:send", "data": {"message": "Hi"}, "ackId": 2})
            receive_until(ws, lambda f: f["event"] == "agent:message")

        wait_for(lambda: manager.list_sessions() == [])
