from flowgate.runner.tool_registry import ToolRegistry

__all__ = ["ToolRegistry"]
