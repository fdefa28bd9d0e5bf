"""
flowgate - Run workflow graphs of agent, extract, scrape, condition and
approval nodes with durable, resumable runs.
"""

from flowgate.config import RuntimeConfig
from flowgate.errors import FlowgateError
from flowgate.graph import GraphSpec, GraphValidator, load_graph, load_graph_file
from flowgate.runtime.workflow_runtime import WorkflowRuntime

__version__ = "0.1.0"

__all__ = [
    "FlowgateError",
    "GraphSpec",
    "GraphValidator",
    "RuntimeConfig",
    "WorkflowRuntime",
    "load_graph",
    "load_graph_file",
]
