"""
Edge Protocol - How nodes connect in a workflow graph.

Edges are directed control-flow links. An edge without a condition is
always traversable once its source completes; an edge with a condition is
traversable only if the expression, evaluated against the variables at
that moment, is true. This is how condition nodes fan out:

    EdgeSpec(id="e1", source="check", target="publish", condition="check == true")
    EdgeSpec(id="e2", source="check", target="revise", condition="not check")
"""

import heapq
import json
import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from flowgate.errors import GraphValidationError
from flowgate.graph.expressions import evaluate_condition
from flowgate.graph.node import NodeSpec

logger = logging.getLogger(__name__)


class EdgeSpec(BaseModel):
    """Specification for an edge between nodes."""

    id: str = Field(min_length=1)
    source: str = Field(description="Source node ID")
    target: str = Field(description="Target node ID")
    condition: str | None = Field(
        default=None,
        description="Expression over variables, e.g. 'score > 0.8'",
    )

    model_config = {"frozen": True}

    def should_traverse(self, variables: Mapping[str, Any]) -> bool:
        """
        Determine if this edge should be traversed.

        Conditions are syntax-checked at load time, so an evaluation error
        here means the expression referenced something that is not bound
        (e.g. a skipped branch). That edge is treated as not traversable.
        """
        if not self.condition:
            return True
        try:
            return evaluate_condition(self.condition, variables)
        except Exception as e:
            logger.warning(
                f"Condition on edge '{self.id}' could not be evaluated, not traversing: {e}"
            )
            return False


class GraphSpec(BaseModel):
    """
    Complete specification of a workflow graph.

    Immutable: the executor only ever reads it.

        GraphSpec(
            id="wf-research",
            name="Research a company",
            nodes=[...],
            edges=[...],
        )
    """

    id: str = Field(min_length=1)
    name: str = ""
    description: str = ""
    nodes: list[NodeSpec] = Field(default_factory=list)
    edges: list[EdgeSpec] = Field(default_factory=list)

    model_config = {"frozen": True}

    def get_node(self, node_id: str) -> NodeSpec | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def get_outgoing_edges(self, node_id: str) -> list[EdgeSpec]:
        """Outgoing edges in declaration order."""
        return [e for e in self.edges if e.source == node_id]

    def get_incoming_edges(self, node_id: str) -> list[EdgeSpec]:
        return [e for e in self.edges if e.target == node_id]

    def successors(self, node_id: str) -> list[str]:
        return sorted({e.target for e in self.get_outgoing_edges(node_id)})

    def predecessors(self, node_id: str) -> list[str]:
        return sorted({e.source for e in self.get_incoming_edges(node_id)})

    def entry_nodes(self) -> list[str]:
        """Nodes with no incoming edges, sorted by id."""
        targets = {e.target for e in self.edges}
        return sorted(n.id for n in self.nodes if n.id not in targets)

    def terminal_nodes(self) -> list[str]:
        """Nodes with no outgoing edges, sorted by id."""
        sources = {e.source for e in self.edges}
        return sorted(n.id for n in self.nodes if n.id not in sources)

    def topological_order(self) -> list[str]:
        """
        Kahn's algorithm with ties broken by node id.

        Nodes on a cycle are left out; validate() reports them.
        """
        in_degree = {n.id: 0 for n in self.nodes}
        for edge in self.edges:
            if edge.target in in_degree and edge.source in in_degree:
                in_degree[edge.target] += 1

        ready = [node_id for node_id, degree in in_degree.items() if degree == 0]
        heapq.heapify(ready)
        order: list[str] = []
        while ready:
            node_id = heapq.heappop(ready)
            order.append(node_id)
            for edge in self.get_outgoing_edges(node_id):
                if edge.target not in in_degree:
                    continue
                in_degree[edge.target] -= 1
                if in_degree[edge.target] == 0:
                    heapq.heappush(ready, edge.target)
        return order

    def validate(self) -> list[str]:
        """
        Structural validation: ids, edge endpoints, acyclicity.

        Returns:
            List of error messages (empty if the structure is valid)
        """
        errors: list[str] = []

        if not self.nodes:
            errors.append("Graph has no nodes")

        seen: set[str] = set()
        for node in self.nodes:
            if node.id in seen:
                errors.append(f"Duplicate node id '{node.id}'")
            seen.add(node.id)

        seen_edges: set[str] = set()
        for edge in self.edges:
            if edge.id in seen_edges:
                errors.append(f"Duplicate edge id '{edge.id}'")
            seen_edges.add(edge.id)
            if edge.source not in seen:
                errors.append(f"Edge '{edge.id}' source '{edge.source}' does not exist")
            if edge.target not in seen:
                errors.append(f"Edge '{edge.id}' target '{edge.target}' does not exist")
            if edge.source == edge.target:
                errors.append(f"Edge '{edge.id}' is a self-loop on '{edge.source}'")

        order = self.topological_order()
        if len(order) < len(seen):
            cyclic = sorted(seen - set(order))
            errors.append(f"Graph contains a cycle through nodes: {cyclic}")

        return errors


def load_graph(data: dict[str, Any] | GraphSpec) -> GraphSpec:
    """
    Parse a graph definition.

    Raises:
        GraphValidationError: if the data does not parse (bad kinds, bad
            per-kind config, missing fields)
    """
    if isinstance(data, GraphSpec):
        return data
    try:
        return GraphSpec.model_validate(data)
    except ValidationError as e:
        errors = []
        for err in e.errors():
            location = ".".join(str(p) for p in err["loc"]) or "graph"
            errors.append(f"{location}: {err['msg']}")
        raise GraphValidationError(errors) from None


def load_graph_file(path: str | Path) -> GraphSpec:
    """Load a graph from a JSON file."""
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise GraphValidationError([f"{path}: not valid JSON ({e.msg})"]) from None
    return load_graph(data)
