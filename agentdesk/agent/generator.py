"""Tool-calling response generator.

ToolCallingAgent streams one assistant turn as GeneratorEvents. It runs a
Messages API tool loop: each step streams text deltas as ChunkEvents; when
the model stops for tool use, the requested tools run, their results are
appended to the transcript and the next step begins. The loop ends when
the model stops without tool calls, a tool ends the session, the step cap
is hit, or the cancel event is set.

Example:
    agent = ToolCallingAgent(business_id="b1", session_id="s1")
    async for event in agent.stream_response(history, cancel_event):
        ...
"""

import asyncio
import logging
from collections.abc import AsyncGenerator
from typing import Any

from anthropic import APIError, AsyncAnthropic

from agentdesk.agent.events import (
    ChunkEvent,
    ErrorEvent,
    FeedbackEvent,
    FeedbackKind,
    GeneratorEvent,
    SessionEndEvent,
    ToolEndEvent,
    ToolStartEvent,
)
from agentdesk.agent.feedback import (
    APOLOGY_AFTER,
    PATIENCE_AFTER,
    WORKING_AFTER,
    progress_message,
    quick_feedback,
)
from agentdesk.agent.system_prompt import (
    BusinessContextProvider,
    StaticBusinessContextProvider,
    build_system_prompt,
)
from agentdesk.agent.tools import (
    EndSession,
    ToolContext,
    ToolRegistry,
    default_registry,
    tool_err,
    tool_result_text,
)
from agentdesk.config import get_agent_max_steps, get_agent_max_tokens, get_agent_model
from agentdesk.errors import AgentDeskError

logger = logging.getLogger(__name__)

PROGRESS_THRESHOLDS = (WORKING_AFTER, PATIENCE_AFTER, APOLOGY_AFTER)


def normalize_history(history: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Shape stored messages into a transcript the Messages API accepts.

    Leading assistant messages (the welcome) are dropped, empty messages are
    skipped and consecutive messages with the same role are merged, since
    the store does not enforce role alternation.
    """
    transcript: list[dict[str, Any]] = []
    for message in history:
        role = message.get("role")
        content = (message.get("content") or "").strip()
        if role not in ("user", "assistant") or not content:
            continue
        if not transcript and role == "assistant":
            continue
        if transcript and transcript[-1]["role"] == role:
            transcript[-1]["content"] += "\n\n" + content
        else:
            transcript.append({"role": role, "content": content})
    return transcript


def _assistant_content(blocks: list[Any]) -> list[dict[str, Any]]:
    content: list[dict[str, Any]] = []
    for block in blocks:
        if block.type == "text" and block.text:
            content.append({"type": "text", "text": block.text})
        elif block.type == "tool_use":
            content.append(
                {"type": "tool_use", "id": block.id, "name": block.name, "input": block.input}
            )
    return content


class ToolCallingAgent:
    """Streams assistant turns for one session.

    Args:
        business_id: Business the agent speaks for.
        session_id: Runtime session id (for tools and logs).
        settings: Link settings (assistant_name, model, temperature,
            custom_instructions).
        context_provider: Source of business facts.
        registry: Tools offered to the model.
        client: Anthropic client (created lazily when None).
        conversation_id: Persisted conversation id passed to tools.
    """

    def __init__(
        self,
        business_id: str,
        session_id: str,
        settings: dict[str, Any] | None = None,
        context_provider: BusinessContextProvider | None = None,
        registry: ToolRegistry | None = None,
        client: AsyncAnthropic | None = None,
        conversation_id: str | None = None,
    ) -> None:
        self._settings = settings or {}
        self._context_provider = context_provider or StaticBusinessContextProvider()
        self._registry = registry or default_registry()
        self._client = client
        self._model = self._settings.get("model") or get_agent_model()
        self._max_steps = get_agent_max_steps()
        self._max_tokens = get_agent_max_tokens()
        self._tool_context = ToolContext(
            business_id=business_id,
            session_id=session_id,
            conversation_id=conversation_id,
            context_provider=self._context_provider,
        )
        self.last_step_count = 0

    @property
    def client(self) -> AsyncAnthropic:
        if self._client is None:
            self._client = AsyncAnthropic()
        return self._client

    async def stream_response(
        self,
        history: list[dict[str, Any]],
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncGenerator[GeneratorEvent, None]:
        """Stream one assistant turn.

        Args:
            history: Ordered ``{role, content}`` messages, newest last.
            cancel_event: Set to stop generation cooperatively.

        Yields:
            GeneratorEvent instances in generation order.
        """
        cancel_event = cancel_event or asyncio.Event()
        context = await self._context_provider.get_business_context(
            self._tool_context.business_id
        )
        system = build_system_prompt(
            context,
            assistant_name=self._settings.get("assistant_name"),
            custom_instructions=self._settings.get("custom_instructions"),
        )
        messages = normalize_history(history)
        if not messages:
            logger.warning(
                "Empty transcript for session %s; nothing to answer",
                self._tool_context.session_id,
            )
            return

        request: dict[str, Any] = {
            "model": self._model,
            "max_tokens": self._max_tokens,
            "system": system,
            "tools": self._registry.definitions(),
        }
        temperature = self._settings.get("temperature")
        if temperature is not None:
            request["temperature"] = float(temperature)

        self.last_step_count = 0
        for step in range(self._max_steps):
            if cancel_event.is_set():
                return
            self.last_step_count = step + 1

            try:
                async with self.client.messages.stream(
                    messages=messages, **request
                ) as stream:
                    async for event in stream:
                        if cancel_event.is_set():
                            return
                        if (
                            event.type == "content_block_delta"
                            and event.delta.type == "text_delta"
                            and event.delta.text
                        ):
                            yield ChunkEvent(event.delta.text)
                    final = await stream.get_final_message()
            except APIError as e:
                logger.error("Model call failed for session %s: %s", self._tool_context.session_id, e)
                yield ErrorEvent(AgentDeskError.from_code("E-3001", details=str(e)).message)
                return

            tool_uses = [b for b in final.content if b.type == "tool_use"]
            if final.stop_reason != "tool_use" or not tool_uses:
                return

            messages.append({"role": "assistant", "content": _assistant_content(final.content)})
            tool_results: list[dict[str, Any]] = []

            for block in tool_uses:
                if cancel_event.is_set():
                    return
                result: dict[str, Any] | None = None
                async for event in self._run_tool(block.name, block.input or {}, cancel_event):
                    if isinstance(event, dict):
                        result = event
                        continue
                    yield event
                    if isinstance(event, SessionEndEvent):
                        return
                if result is None:
                    # Cancelled while the tool ran
                    return
                tool_results.append(
                    {
                        "type": "tool_result",
                        "tool_use_id": block.id,
                        "content": tool_result_text(result),
                        "is_error": bool(result.get("isError")),
                    }
                )

            messages.append({"role": "user", "content": tool_results})

        logger.warning(
            "Step limit %d reached for session %s",
            self._max_steps,
            self._tool_context.session_id,
        )
        yield ErrorEvent(
            AgentDeskError.from_code("E-3003", max_steps=self._max_steps).message
        )

    async def _run_tool(
        self,
        name: str,
        args: dict[str, Any],
        cancel_event: asyncio.Event,
    ) -> AsyncGenerator[GeneratorEvent | dict[str, Any], None]:
        """Run one tool, yielding lifecycle events and finally its result dict."""
        yield FeedbackEvent(FeedbackKind.thinking, quick_feedback(name), name)
        yield ToolStartEvent(name)

        tool = self._registry.get(name)
        if tool is None:
            logger.warning("Model requested unknown tool %s", name)
            yield ToolEndEvent(name, False)
            yield tool_err(f"Unknown tool: {name}")
            return

        task = asyncio.create_task(tool.handler(args, self._tool_context))
        loop = asyncio.get_running_loop()
        started = loop.time()
        pending_thresholds = list(PROGRESS_THRESHOLDS)
        try:
            while not task.done():
                if cancel_event.is_set():
                    task.cancel()
                    return
                wait_for = 0.25
                if pending_thresholds:
                    wait_for = min(wait_for, max(0.0, started + pending_thresholds[0] - loop.time()))
                await asyncio.wait({task}, timeout=wait_for)
                elapsed = loop.time() - started
                if not task.done() and pending_thresholds and elapsed >= pending_thresholds[0]:
                    pending_thresholds.pop(0)
                    yield FeedbackEvent(
                        FeedbackKind.progress, progress_message(name, elapsed), name
                    )

            result = task.result()
        except EndSession as end:
            yield ToolEndEvent(name, True)
            yield SessionEndEvent(end.message, end.reason)
            return
        except Exception as e:
            logger.error("Tool %s failed: %s", name, e, exc_info=True)
            yield ToolEndEvent(name, False)
            yield tool_err(
                AgentDeskError.from_code("E-3002", tool_name=name, details=str(e)).message
            )
            return
        finally:
            if not task.done():
                task.cancel()

        success = not bool(result.get("isError"))
        yield ToolEndEvent(name, success)
        yield result
