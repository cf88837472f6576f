"""Tests for the agent HTTP + SSE routes."""

from fastapi.testclient import TestClient

from agentdesk.agent.events import ChunkEvent, SessionEndEvent
from agentdesk.db.models import LinkType
from agentdesk.transport.sse import parse_sse_text

PREFIX = "/api/v1/agent"


def _start(client: TestClient, token: str) -> dict:
    response = client.post(f"{PREFIX}/session", json={"token": token})
    assert response.status_code == 200, response.text
    return response.json()


def _chat(client: TestClient, session_id: str, message: str, tts: bool = False):
    return client.post(
        f"{PREFIX}/chat",
        json={"sessionId": session_id, "message": message, "tts": tts},
    )


class TestStartSession:
    def test_start_returns_session_and_welcome(self, client, link):
        data = _start(client, link.token)

        assert data["success"] is True
        assert data["welcomeMessage"] == "Hi! I'm Ana. How can I help you?"
        assert data["session"]["settings"] == {"assistantName": "Ana"}
        assert data["session"]["conversationId"]

    def test_unknown_token_is_403_with_reason(self, client):
        response = client.post(f"{PREFIX}/session", json={"token": "ag_nope"})

        assert response.status_code == 403
        body = response.json()
        assert body["success"] is False
        assert body["reason"] == "not_found"
        assert body["errorCode"] == "E-1001"

    def test_used_single_use_link_is_refused(self, client, make_link):
        link = make_link(type=LinkType.single_use)
        _start(client, link.token)

        response = client.post(f"{PREFIX}/session", json={"token": link.token})
        assert response.status_code == 403
        assert response.json()["reason"] == "invalid_status"

    def test_empty_token_rejected(self, client):
        response = client.post(f"{PREFIX}/session", json={"token": ""})
        assert response.status_code == 422


class TestChat:
    def test_turn_streams_events(self, client, link):
        session_id = _start(client, link.token)["session"]["sessionId"]

        response = _chat(client, session_id, "Hi")

        assert response.status_code == 200
        assert "text/event-stream" in response.headers["content-type"]
        frames = parse_sse_text(response.text)
        assert [f.event for f in frames] == [
            "typing",
            "message",
            "message",
            "message",
            "typing",
        ]
        assert frames[1].data == {"chunk": "Hello", "isComplete": False}
        assert frames[3].data == {"chunk": "", "isComplete": True}

    def test_tts_chunks_end_with_final_marker(self, client, agent, link):
        agent.events = (ChunkEvent("Your appointment is confirmed "),)
        session_id = _start(client, link.token)["session"]["sessionId"]

        frames = parse_sse_text(_chat(client, session_id, "Book it", tts=True).text)

        tts = [f.data for f in frames if f.event == "tts_chunk"]
        assert tts[0] == {"text": "Your appointment is", "isFinal": False}
        assert tts[-1] == {"text": "", "isFinal": True}
        assert "".join(t["text"] + " " for t in tts[:-1]).strip() == (
            "Your appointment is confirmed"
        )

    def test_unknown_session_is_404(self, client):
        response = _chat(client, "missing", "Hi")
        assert response.status_code == 404
        body = response.json()
        assert body["error_code"] == "E-2001"
        assert body["detail"] == "Session 'missing' not found"
        assert body["remediation"]

    def test_busy_session_is_409(self, client, manager, link):
        session_id = _start(client, link.token)["session"]["sessionId"]
        session = manager.accept_turn(session_id)
        try:
            response = _chat(client, session_id, "Hi")
        finally:
            session.is_processing = False

        assert response.status_code == 409
        assert "already processing" in response.json()["detail"]
        assert response.json()["error_code"] == "E-2002"

    def test_empty_message_rejected(self, client, link):
        session_id = _start(client, link.token)["session"]["sessionId"]
        assert _chat(client, session_id, "").status_code == 422

    def test_agent_ending_session(self, client, agent, manager, link):
        agent.events = (ChunkEvent("All done."), SessionEndEvent("Goodbye!", "user_goodbye"))
        session_id = _start(client, link.token)["session"]["sessionId"]

        frames = parse_sse_text(_chat(client, session_id, "Bye").text)

        assert frames[-2].event == "session_end"
        assert frames[-2].data == {"message": "Goodbye!", "reason": "user_goodbye"}
        assert manager.get_session(session_id) is None
        assert _chat(client, session_id, "Hello?").status_code == 404


class TestSessionControls:
    def test_interrupt_idle_session_is_noop(self, client, link):
        session_id = _start(client, link.token)["session"]["sessionId"]
        response = client.post(f"{PREFIX}/sessions/{session_id}/interrupt")
        assert response.status_code == 204

    def test_end_session(self, client, manager, link):
        session_id = _start(client, link.token)["session"]["sessionId"]

        assert client.delete(f"{PREFIX}/sessions/{session_id}").json() == {"success": True}
        assert client.delete(f"{PREFIX}/sessions/{session_id}").json() == {"success": False}
        assert manager.list_sessions() == []


class TestConversationMessages:
    def test_history_after_turn(self, client, link):
        started = _start(client, link.token)
        _chat(client, started["session"]["sessionId"], "Hi")

        response = client.get(
            f"{PREFIX}/conversations/{started['session']['conversationId']}/messages"
        )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "active"
        assert [(m["role"], m["content"]) for m in body["messages"]] == [
            ("assistant", started["welcomeMessage"]),
            ("user", "Hi"),
            ("assistant", "Hello there"),
        ]
        assert [m["sequence"] for m in body["messages"]] == [1, 2, 3]
        assert body["messages"][0]["createdAt"]

    def test_missing_conversation(self, client):
        response = client.get(f"{PREFIX}/conversations/missing/messages")
        assert response.status_code == 404
        assert response.json()["detail"] == "Conversation 'missing' not found"


class TestHealth:
    def test_health_reports_live_sessions(self, client):
        data = client.get("/health").json()
        assert data["status"] in ("healthy", "degraded")
        assert "live_sessions" in data
