"""Tests for tool registration and the built-in session tools."""

import json

import pytest

from agentdesk.agent.system_prompt import BusinessContext, StaticBusinessContextProvider
from agentdesk.agent.tools import (
    AgentTool,
    EndSession,
    ToolContext,
    ToolRegistry,
    default_registry,
    end_conversation_tool,
    get_business_info_tool,
    tool_err,
    tool_ok,
    tool_result_text,
)


async def _noop(args, context):
    return tool_ok({})


class TestRegistry:
    def test_duplicate_names_rejected(self):
        registry = ToolRegistry()
        registry.register(AgentTool("a", "A", {"type": "object"}, _noop))
        with pytest.raises(ValueError, match="already registered"):
            registry.register(AgentTool("a", "A again", {"type": "object"}, _noop))

    def test_definitions_use_messages_api_shape(self):
        registry = default_registry()
        assert registry.names == ["end_conversation", "get_business_info"]
        definition = registry.definitions()[0]
        assert set(definition) == {"name", "description", "input_schema"}
        assert definition["input_schema"]["required"] == ["farewell"]

    def test_lookup(self):
        registry = default_registry()
        assert registry.get("get_business_info") is not None
        assert registry.get("missing") is None
        assert len(registry) == 2


class TestResponses:
    def test_ok_serializes_payload(self):
        result = tool_ok({"count": 2})
        assert result["isError"] is False
        assert json.loads(tool_result_text(result)) == {"count": 2}

    def test_err_flags_error(self):
        result = tool_err("nope")
        assert result["isError"] is True
        assert tool_result_text(result) == "nope"

    def test_result_text_ignores_non_text_blocks(self):
        result = {"content": [{"type": "image"}, {"type": "text", "text": "a"}, "junk"]}
        assert tool_result_text(result) == "a"


class TestBuiltinTools:
    @pytest.mark.asyncio
    async def test_end_conversation_raises_end_session(self):
        context = ToolContext(business_id="biz-1", session_id="s-1")
        with pytest.raises(EndSession) as exc_info:
            await end_conversation_tool({"farewell": "See you!", "reason": "done"}, context)
        assert exc_info.value.message == "See you!"
        assert exc_info.value.reason == "done"

    @pytest.mark.asyncio
    async def test_end_conversation_default_farewell(self):
        context = ToolContext(business_id="biz-1", session_id="s-1")
        with pytest.raises(EndSession) as exc_info:
            await end_conversation_tool({}, context)
        assert exc_info.value.message == "Thank you for reaching out. Goodbye!"
        assert exc_info.value.reason is None

    @pytest.mark.asyncio
    async def test_business_info(self):
        provider = StaticBusinessContextProvider(
            {"biz-1": BusinessContext("biz-1", "Salon Aurora", services=["Haircut"])}
        )
        context = ToolContext("biz-1", "s-1", context_provider=provider)

        result = await get_business_info_tool({}, context)

        payload = json.loads(tool_result_text(result))
        assert payload["name"] == "Salon Aurora"
        assert payload["services"] == ["Haircut"]

    @pytest.mark.asyncio
    async def test_business_info_without_provider(self):
        result = await get_business_info_tool({}, ToolContext("biz-1", "s-1"))
        assert result["isError"] is True
