"""FastAPI route modules.

Exports all route modules for inclusion in the main application.
"""

from agentdesk.api.routes import agent_socket, agent_sse

__all__ = [
    "agent_sse",
    "agent_socket",
]
