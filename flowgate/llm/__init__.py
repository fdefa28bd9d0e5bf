"""Model-call capability.

LiteLLMProvider lives in ``flowgate.llm.litellm``; it is not re-exported
here because it imports the tool registry, which imports this package.
"""

from flowgate.llm.mock import MockLLMProvider
from flowgate.llm.provider import (
    LLMProvider,
    LLMResponse,
    Tool,
    ToolResult,
    ToolUse,
    parse_json_text,
)

__all__ = [
    "LLMProvider",
    "LLMResponse",
    "MockLLMProvider",
    "Tool",
    "ToolResult",
    "ToolUse",
    "parse_json_text",
]
