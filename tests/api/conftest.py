"""Pytest fixtures for API tests.

Provides a TestClient wired to an in-memory database and a session manager
whose response generator replays scripted events.
"""

import asyncio
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient

from agentdesk.agent.events import ChunkEvent
from agentdesk.api.main import app
from agentdesk.api.runtime import get_session_manager
from agentdesk.db.connection import get_db
from agentdesk.db.models import AgentLink
from agentdesk.services.agent_session_manager import AgentSessionManager


class ScriptedAgent:
    """Response generator replaying fixed events for every turn."""

    def __init__(self, *events, hang: bool = False) -> None:
        self.events = events
        self.hang = hang
        self.histories: list[list[dict]] = []

    async def stream_response(self, history, cancel_event):
        self.histories.append(list(history))
        for event in self.events:
            yield event
        if self.hang:
            await asyncio.Event().wait()


@pytest.fixture(autouse=True)
def _reset_sse_exit_event():
    """sse-starlette caches a loop-bound exit event across TestClient loops."""
    from sse_starlette import sse

    app_status = getattr(sse, "AppStatus", None)
    if app_status is not None and hasattr(app_status, "should_exit_event"):
        app_status.should_exit_event = None
    yield


@pytest.fixture
def agent() -> ScriptedAgent:
    return ScriptedAgent(ChunkEvent("Hello"), ChunkEvent(" there"))


@pytest.fixture
def manager(db_context, agent) -> AgentSessionManager:
    return AgentSessionManager(
        db_context=db_context, agent_factory=lambda s: agent, fallback_delays=()
    )


@pytest.fixture
def client(session_factory, manager) -> Generator[TestClient, None, None]:
    """Create a TestClient with overridden database and manager dependencies.

    Yields:
        TestClient configured for testing.
    """

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_manager] = lambda: manager
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def link(make_link) -> AgentLink:
    return make_link(settings={"assistant_name": "Ana"})
