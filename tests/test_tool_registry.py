"""Tests for ToolRegistry registration and dispatch."""

import json

import pytest

from flowgate.llm.provider import Tool, ToolResult, ToolUse
from flowgate.runner.tool_registry import ToolRegistry


@pytest.fixture
def registry() -> ToolRegistry:
    registry = ToolRegistry()

    @registry.tool
    def word_count(text: str, minimum: int = 0) -> int:
        """Count the words in a text."""
        return max(len(text.split()), minimum)

    async def lookup(inputs: dict) -> dict:
        return {"company": inputs["name"].title()}

    registry.register(
        "lookup",
        Tool(name="lookup", description="Look up a company", parameters={}),
        lookup,
    )
    return registry


class TestRegistration:
    def test_schema_from_signature(self, registry):
        [tool] = registry.get_tools(["word_count"])
        assert tool.description == "Count the words in a text."
        assert tool.parameters == {
            "type": "object",
            "properties": {"text": {"type": "string"}, "minimum": {"type": "integer"}},
            "required": ["text"],
        }

    def test_openai_format(self, registry):
        [tool] = registry.get_tools(["lookup"])
        assert tool.to_openai() == {
            "type": "function",
            "function": {
                "name": "lookup",
                "description": "Look up a company",
                "parameters": {"type": "object", "properties": {}},
            },
        }

    def test_names(self, registry):
        assert registry.get_registered_names() == ["word_count", "lookup"]
        assert registry.has_tool("lookup")
        assert not registry.has_tool("nope")
        assert len(registry.get_tools()) == 2

    def test_unknown_names(self, registry):
        with pytest.raises(KeyError, match="nope"):
            registry.get_tools(["word_count", "nope"])


class TestExecute:
    @pytest.mark.asyncio
    async def test_sync_tool(self, registry):
        result = await registry.execute(
            ToolUse(id="t1", name="word_count", input={"text": "a b c"})
        )
        assert result == ToolResult(tool_use_id="t1", content="3")

    @pytest.mark.asyncio
    async def test_async_tool(self, registry):
        result = await registry.execute(ToolUse(id="t2", name="lookup", input={"name": "acme"}))
        assert json.loads(result.content) == {"company": "Acme"}
        assert not result.is_error

    @pytest.mark.asyncio
    async def test_tool_failure_is_an_error_result(self, registry):
        result = await registry.execute(ToolUse(id="t3", name="lookup", input={}))
        assert result.is_error
        assert "name" in json.loads(result.content)["error"]

    @pytest.mark.asyncio
    async def test_unknown_tool(self, registry):
        result = await registry.execute(ToolUse(id="t4", name="nope", input={}))
        assert result.is_error
        assert json.loads(result.content) == {"error": "Unknown tool: nope"}
