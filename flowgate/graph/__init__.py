"""Graph structures, validation and execution."""

from flowgate.graph.approval import ApprovalGate
from flowgate.graph.edge import EdgeSpec, GraphSpec, load_graph, load_graph_file
from flowgate.graph.executor import GraphExecutor
from flowgate.graph.executors import EXECUTORS, Capabilities, NodeExecutor, resolve_executors
from flowgate.graph.node import (
    AgentConfig,
    ApprovalConfig,
    ConditionConfig,
    ExtractConfig,
    NodeKind,
    NodeResult,
    NodeSpec,
    ScrapeConfig,
    SuspendRequest,
)
from flowgate.graph.validator import GraphValidator, OutputValidator, ValidationResult
from flowgate.graph.variables import BindingType, VariableStore

__all__ = [
    # Structure
    "GraphSpec",
    "NodeSpec",
    "EdgeSpec",
    "NodeKind",
    "AgentConfig",
    "ExtractConfig",
    "ScrapeConfig",
    "ConditionConfig",
    "ApprovalConfig",
    "load_graph",
    "load_graph_file",
    # Validation
    "GraphValidator",
    "OutputValidator",
    "ValidationResult",
    # Execution
    "GraphExecutor",
    "Capabilities",
    "NodeExecutor",
    "NodeResult",
    "SuspendRequest",
    "EXECUTORS",
    "resolve_executors",
    "ApprovalGate",
    "BindingType",
    "VariableStore",
]
