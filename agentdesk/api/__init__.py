"""FastAPI application for AgentDesk."""
