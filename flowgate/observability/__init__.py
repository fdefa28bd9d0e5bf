"""
Observability: structured logging with automatic run context.

- Execution/workflow/node ids propagate via ContextVar
- JSON output for production, human-readable output for development
"""

from flowgate.observability.logging import (
    clear_trace_context,
    configure_logging,
    get_trace_context,
    set_trace_context,
)

__all__ = [
    "configure_logging",
    "get_trace_context",
    "set_trace_context",
    "clear_trace_context",
]
