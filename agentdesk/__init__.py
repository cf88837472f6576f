"""AgentDesk: realtime conversational agent sessions behind access links."""

__version__ = "0.1.0"
