"""Tool registration and dispatch for agent nodes."""

import inspect
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from flowgate.llm.provider import Tool, ToolResult, ToolUse

logger = logging.getLogger(__name__)

_JSON_TYPES = {
    int: "integer",
    float: "number",
    bool: "boolean",
    dict: "object",
    list: "array",
    str: "string",
}


@dataclass
class RegisteredTool:
    """A tool with its executor function."""

    tool: Tool
    executor: Callable[[dict], Any]


class ToolRegistry:
    """
    Named tools an agent node may call.

    Example:
        registry = ToolRegistry()

        @registry.tool
        def word_count(text: str) -> int:
            "Count the words in a text."
            return len(text.split())
    """

    def __init__(self):
        self._tools: dict[str, RegisteredTool] = {}

    def register(
        self,
        name: str,
        tool: Tool,
        executor: Callable[[dict], Any],
    ) -> None:
        """
        Register a single tool with its executor.

        Args:
            name: Tool name (must match tool.name)
            tool: Tool definition
            executor: Function that takes tool input dict and returns result
                (may be a coroutine function)
        """
        self._tools[name] = RegisteredTool(tool=tool, executor=executor)

    def register_function(
        self,
        func: Callable,
        name: str | None = None,
        description: str | None = None,
    ) -> None:
        """
        Register a function as a tool, generating the parameter schema from
        its signature.

        Args:
            func: Function to register
            name: Tool name (defaults to function name)
            description: Tool description (defaults to docstring)
        """
        tool_name = name or func.__name__
        tool_desc = description or inspect.getdoc(func) or f"Execute {tool_name}"

        sig = inspect.signature(func)
        properties = {}
        required = []
        for param_name, param in sig.parameters.items():
            if param_name in ("self", "cls"):
                continue
            param_type = _JSON_TYPES.get(param.annotation, "string")
            properties[param_name] = {"type": param_type}
            if param.default is inspect.Parameter.empty:
                required.append(param_name)

        tool = Tool(
            name=tool_name,
            description=tool_desc,
            parameters={"type": "object", "properties": properties, "required": required},
        )

        def executor(inputs: dict) -> Any:
            return func(**inputs)

        self.register(tool_name, tool, executor)

    def tool(self, func: Callable) -> Callable:
        """Decorator form of register_function."""
        self.register_function(func)
        return func

    def get_tools(self, names: list[str] | None = None) -> list[Tool]:
        """
        Tool definitions, optionally restricted to ``names``.

        Raises:
            KeyError: if a requested tool is not registered
        """
        if names is None:
            return [rt.tool for rt in self._tools.values()]
        missing = [n for n in names if n not in self._tools]
        if missing:
            raise KeyError(f"Unknown tools: {missing}")
        return [self._tools[n].tool for n in names]

    async def execute(self, tool_use: ToolUse) -> ToolResult:
        """Run a tool call. Failures come back as error results, never raised."""
        registered = self._tools.get(tool_use.name)
        if registered is None:
            return ToolResult(
                tool_use_id=tool_use.id,
                content=json.dumps({"error": f"Unknown tool: {tool_use.name}"}),
                is_error=True,
            )
        try:
            result = registered.executor(tool_use.input)
            if inspect.isawaitable(result):
                result = await result
            if isinstance(result, ToolResult):
                return result
            return ToolResult(
                tool_use_id=tool_use.id,
                content=result if isinstance(result, str) else json.dumps(result, default=str),
            )
        except Exception as e:
            logger.warning(f"Tool '{tool_use.name}' failed: {e}")
            return ToolResult(
                tool_use_id=tool_use.id,
                content=json.dumps({"error": str(e)}),
                is_error=True,
            )

    def get_registered_names(self) -> list[str]:
        """Get list of registered tool names."""
        return list(self._tools.keys())

    def has_tool(self, name: str) -> bool:
        """Check if a tool is registered."""
        return name in self._tools
