"""LLM Provider abstraction for pluggable model backends."""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


def parse_json_text(text: str) -> Any:
    """
    Parse model text as JSON, tolerating a markdown code fence.

    Returns:
        The parsed value, or None if the text is not JSON
    """
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = cleaned.split("\n", 1)[1] if "\n" in cleaned else ""
        if cleaned.rstrip().endswith("```"):
            cleaned = cleaned.rstrip()[:-3]
    try:
        return json.loads(cleaned)
    except (json.JSONDecodeError, ValueError):
        return None


@dataclass
class LLMResponse:
    """Response from a model call."""

    text: str
    model: str = ""
    structured: Any = None  # Parsed JSON when a schema was requested and the text parsed
    tool_trace: list[dict[str, Any]] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    stop_reason: str = ""


@dataclass
class Tool:
    """A tool the model can use."""

    name: str
    description: str
    parameters: dict[str, Any] = field(default_factory=dict)

    def to_openai(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters or {"type": "object", "properties": {}},
            },
        }


@dataclass
class ToolUse:
    """A tool call requested by the model."""

    id: str
    name: str
    input: dict[str, Any]


@dataclass
class ToolResult:
    """Result of executing a tool."""

    tool_use_id: str
    content: str
    is_error: bool = False


class LLMProvider(ABC):
    """
    Abstract model-call capability - plug in any backend.

    Implementations should handle:
    - Request/response formatting
    - The tool-use loop when tools are given
    - Token counting
    - Mapping backend failures to CapabilityError
    """

    name: str = "llm"

    @abstractmethod
    async def invoke(
        self,
        prompt: str,
        *,
        system: str = "",
        tools: list[str] | None = None,
        schema: dict[str, Any] | None = None,
        model: str | None = None,
        max_tokens: int | None = None,
        max_tool_iterations: int = 10,
    ) -> LLMResponse:
        """
        Run one model call (plus any tool round-trips) to a final response.

        Args:
            prompt: User message
            system: System prompt
            tools: Names of registered tools the model may call
            schema: JSON Schema the response must satisfy; the response
                text is parsed into ``structured`` when it is valid JSON
            model: Overrides the provider's default model
            max_tokens: Overrides the provider's default output budget
            max_tool_iterations: Max tool round-trips before giving up

        Returns:
            LLMResponse with the final text and a trace of tool calls

        Raises:
            CapabilityError: on any backend failure
        """
        pass
