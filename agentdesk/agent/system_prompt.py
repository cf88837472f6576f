"""System prompt builder for the conversational agent.

Builds the agent's system prompt from the business context supplied by the
host application, the assistant name configured on the access link and any
custom instructions.

Example:
    context = await provider.get_business_context(business_id)
    prompt = build_system_prompt(context, assistant_name="Ana")
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Protocol

DEFAULT_ASSISTANT_NAME = "the virtual assistant"


@dataclass
class BusinessContext:
    """Facts about a business the agent may state to customers."""

    business_id: str
    name: str
    description: str = ""
    services: list[str] = field(default_factory=list)
    opening_hours: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


class BusinessContextProvider(Protocol):
    """Source of business facts, implemented by the host application."""

    async def get_business_context(self, business_id: str) -> BusinessContext: ...


class StaticBusinessContextProvider:
    """In-memory provider keyed by business id.

    Unknown businesses get a minimal context so the agent can still greet
    customers.
    """

    def __init__(self, contexts: dict[str, BusinessContext] | None = None) -> None:
        self._contexts = dict(contexts or {})

    def add(self, context: BusinessContext) -> None:
        self._contexts[context.business_id] = context

    async def get_business_context(self, business_id: str) -> BusinessContext:
        return self._contexts.get(
            business_id, BusinessContext(business_id=business_id, name="our business")
        )


def build_system_prompt(
    context: BusinessContext,
    assistant_name: str | None = None,
    custom_instructions: str | None = None,
    now: datetime | None = None,
) -> str:
    """Assemble the system prompt for one turn.

    Args:
        context: Business facts.
        assistant_name: Persona name from the link settings.
        custom_instructions: Extra instructions from the link settings.
        now: Current time, stated to the model for date reasoning.

    Returns:
        The system prompt text.
    """
    name = assistant_name or DEFAULT_ASSISTANT_NAME
    now = now or datetime.now()

    lines = [
        f"You are {name}, the assistant of {context.name}.",
        "You talk with customers in real time, often by voice. Keep answers "
        "short, warm and conversational. Do not use markdown or lists.",
        f"Current date and time: {now.strftime('%A %Y-%m-%d %H:%M')}.",
        "",
        "## Business",
    ]
    if context.description:
        lines.append(context.description)
    if context.services:
        lines.append("Services: " + ", ".join(context.services) + ".")
    if context.opening_hours:
        lines.append(f"Opening hours: {context.opening_hours}.")

    lines += [
        "",
        "## Rules",
        "- Only state facts you got from this prompt or from a tool result.",
        "- When a tool fails, tell the customer briefly and offer an alternative.",
        "- When the customer says goodbye, call end_conversation with a farewell.",
    ]

    if custom_instructions:
        lines += ["", "## Additional instructions", custom_instructions.strip()]

    return "\n".join(lines)
