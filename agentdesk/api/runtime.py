"""Process-wide agent session runtime shared by the HTTP and socket routes.

Routes obtain the manager through the ``get_session_manager`` dependency,
so tests can swap it with ``app.dependency_overrides``.
"""

import logging

from agentdesk.services.agent_session_manager import AgentSessionManager

logger = logging.getLogger(__name__)

# Module-level session manager, created on first use.
_session_manager: AgentSessionManager | None = None


def get_session_manager() -> AgentSessionManager:
    """Return the shared session manager."""
    global _session_manager
    if _session_manager is None:
        _session_manager = AgentSessionManager()
    return _session_manager


async def shutdown_session_runtime() -> None:
    """End every live session; called on application shutdown."""
    global _session_manager
    if _session_manager is None:
        return
    live = len(_session_manager.list_sessions())
    await _session_manager.shutdown()
    _session_manager = None
    if live:
        logger.info("Ended %d live agent sessions on shutdown", live)
