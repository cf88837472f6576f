"""Agent tool registration.

Tools are plain definition records (name, description, input schema,
async handler). Handlers receive the parsed input and a ToolContext and
return a tool response built with ``tool_ok`` / ``tool_err``. A handler
may raise EndSession to close the conversation after the tool runs.

Business tools (services, specialists, appointments) are supplied by the
host application; this module only ships the tools the session layer
itself needs.
"""

import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from agentdesk.agent.system_prompt import BusinessContextProvider

logger = logging.getLogger(__name__)

ToolHandler = Callable[[dict[str, Any], "ToolContext"], Awaitable[dict[str, Any]]]


class EndSession(Exception):
    """Raised by a tool handler to end the conversation.

    Attributes:
        message: Farewell spoken to the customer.
        reason: Machine-readable reason for the end.
    """

    def __init__(self, message: str, reason: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.reason = reason


@dataclass
class ToolContext:
    """Per-turn state passed to tool handlers.

    Attributes:
        business_id: Business the agent speaks for.
        session_id: Runtime session id.
        conversation_id: Persisted conversation id.
        context_provider: Source of business facts.
    """

    business_id: str
    session_id: str
    conversation_id: str | None = None
    context_provider: BusinessContextProvider | None = None


@dataclass
class AgentTool:
    name: str
    description: str
    input_schema: dict[str, Any]
    handler: ToolHandler

    def definition(self) -> dict[str, Any]:
        """Tool definition in the Messages API shape."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


@dataclass
class ToolRegistry:
    """Name-indexed collection of agent tools."""

    _tools: dict[str, AgentTool] = field(default_factory=dict)

    def register(self, tool: AgentTool) -> None:
        if tool.name in self._tools:
            raise ValueError(f"Tool '{tool.name}' is already registered")
        self._tools[tool.name] = tool

    def get(self, name: str) -> AgentTool | None:
        return self._tools.get(name)

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def definitions(self) -> list[dict[str, Any]]:
        return [tool.definition() for tool in self._tools.values()]

    def __len__(self) -> int:
        return len(self._tools)


def tool_ok(data: Any) -> dict[str, Any]:
    """Build a successful tool response."""
    return {
        "isError": False,
        "content": [{"type": "text", "text": json.dumps(data, default=str)}],
    }


def tool_err(message: str) -> dict[str, Any]:
    """Build an error tool response."""
    return {
        "isError": True,
        "content": [{"type": "text", "text": message}],
    }


def tool_result_text(result: dict[str, Any]) -> str:
    """Flatten a tool response into the text sent back to the model."""
    parts = [
        block.get("text", "")
        for block in result.get("content", [])
        if isinstance(block, dict) and block.get("type") == "text"
    ]
    return "\n".join(parts)


# ---------------------------------------------------------------------------
# Built-in tools
# ---------------------------------------------------------------------------


async def end_conversation_tool(args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
    """Close the conversation with a farewell."""
    farewell = str(args.get("farewell") or "Thank you for reaching out. Goodbye!")
    reason = args.get("reason")
    logger.info("end_conversation requested for session %s", context.session_id)
    raise EndSession(farewell, str(reason) if reason else None)


async def get_business_info_tool(args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
    """Return the business facts available to the agent."""
    if context.context_provider is None:
        return tool_err("Business information is not available.")
    business = await context.context_provider.get_business_context(context.business_id)
    return tool_ok(business.as_dict())


def default_registry() -> ToolRegistry:
    """Registry with the session-level tools every agent gets."""
    registry = ToolRegistry()
    registry.register(
        AgentTool(
            name="end_conversation",
            description=(
                "End the conversation when the customer says goodbye or has "
                "nothing else to ask. Provide a short farewell."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "farewell": {
                        "type": "string",
                        "description": "Closing message spoken to the customer.",
                    },
                    "reason": {
                        "type": "string",
                        "description": "Why the conversation ended (e.g. 'user_goodbye').",
                    },
                },
                "required": ["farewell"],
            },
            handler=end_conversation_tool,
        )
    )
    registry.register(
        AgentTool(
            name="get_business_info",
            description="Get the business name, description, services and opening hours.",
            input_schema={"type": "object", "properties": {}},
            handler=get_business_info_tool,
        )
    )
    return registry
