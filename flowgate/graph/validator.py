"""Graph and output validation.

GraphValidator runs before any execution attempt. It checks structure
(ids, edge endpoints, acyclicity) and per-kind config semantics, and
requires every binding a config reads through templates, expressions or
inputs to be `input` or a node upstream of the reader. It is pure.

OutputValidator checks structured model output against a node's JSON
Schema and formats the feedback used for the extract repair attempt.
"""

import logging
from dataclasses import dataclass
from typing import Any

import jsonschema

from flowgate.errors import GraphValidationError
from flowgate.graph.edge import GraphSpec
from flowgate.graph.expressions import check_expression, expression_names, template_names
from flowgate.graph.node import (
    AgentConfig,
    ApprovalConfig,
    ConditionConfig,
    ExtractConfig,
    NodeSpec,
    ScrapeConfig,
)

logger = logging.getLogger(__name__)

# Bindings that exist before any node runs
RESERVED_BINDINGS = frozenset({"input"})


@dataclass
class ValidationResult:
    """Result of validating an output."""

    success: bool
    errors: list[str]

    @property
    def error(self) -> str:
        """Get combined error message."""
        return "; ".join(self.errors) if self.errors else ""


class GraphValidator:
    """
    Validates a graph before execution.

    Example:
        GraphValidator().validate(graph)  # raises GraphValidationError
    """

    def collect_errors(self, graph: GraphSpec) -> list[str]:
        errors = graph.validate()
        node_ids = {n.id for n in graph.nodes}

        for node in graph.nodes:
            if node.id in RESERVED_BINDINGS:
                errors.append(f"Node id '{node.id}' is reserved")
            errors.extend(self._check_node(node, graph, node_ids))

        for edge in graph.edges:
            if edge.condition is None:
                continue
            prefix = f"Edge '{edge.id}'"
            problem = check_expression(edge.condition)
            if problem:
                errors.append(f"{prefix}: {problem}")
            elif edge.source in node_ids:
                # The source's own binding is readable when the edge is taken
                upstream = self._ancestors(graph, edge.source) | {edge.source}
                errors.extend(
                    self._check_references(
                        prefix,
                        "condition",
                        expression_names(edge.condition),
                        node_ids,
                        upstream,
                    )
                )

        return errors

    def validate(self, graph: GraphSpec) -> None:
        """
        Raises:
            GraphValidationError: listing every problem found
        """
        errors = self.collect_errors(graph)
        if errors:
            raise GraphValidationError(errors)

    def _check_node(self, node: NodeSpec, graph: GraphSpec, node_ids: set[str]) -> list[str]:
        errors: list[str] = []
        prefix = f"Node '{node.id}' ({node.kind.value})"
        known = node_ids | RESERVED_BINDINGS
        upstream = self._ancestors(graph, node.id)

        for name in node.config.inputs:
            if name not in known:
                errors.append(f"{prefix} reads unknown binding '{name}'")
            elif name != "input" and name not in upstream:
                errors.append(f"{prefix} reads '{name}' which is not upstream of it")

        config = node.config
        if isinstance(config, (AgentConfig, ExtractConfig)):
            errors.extend(
                self._check_references(
                    prefix, "instructions", template_names(config.instructions), node_ids, upstream
                )
            )

        if isinstance(config, ExtractConfig):
            try:
                jsonschema.Draft7Validator.check_schema(config.json_schema)
            except jsonschema.SchemaError as e:
                errors.append(f"{prefix} has an invalid JSON Schema: {e.message}")

        elif isinstance(config, ScrapeConfig):
            errors.extend(
                self._check_references(
                    prefix, "url", template_names(config.url), node_ids, upstream
                )
            )

        elif isinstance(config, ConditionConfig):
            problem = check_expression(config.expression)
            if problem:
                errors.append(f"{prefix}: {problem}")
            else:
                errors.extend(
                    self._check_references(
                        prefix,
                        "expression",
                        expression_names(config.expression),
                        node_ids,
                        upstream,
                    )
                )

        elif isinstance(config, ApprovalConfig):
            errors.extend(
                self._check_references(
                    prefix, "message", template_names(config.message), node_ids, upstream
                )
            )

        return errors

    @staticmethod
    def _check_references(
        prefix: str,
        field_name: str,
        names: list[str],
        node_ids: set[str],
        upstream: set[str],
    ) -> list[str]:
        """Every name must be a reserved binding or a node that runs before the reader."""
        errors = []
        for name in dict.fromkeys(names):
            if name in RESERVED_BINDINGS or name in upstream:
                continue
            if name in node_ids:
                errors.append(
                    f"{prefix} {field_name} references '{name}' which is not upstream of it"
                )
            else:
                errors.append(f"{prefix} {field_name} references unknown binding '{name}'")
        return errors

    @staticmethod
    def _ancestors(graph: GraphSpec, node_id: str) -> set[str]:
        found: set[str] = set()
        stack = [node_id]
        while stack:
            current = stack.pop()
            for pred in graph.predecessors(current):
                if pred not in found:
                    found.add(pred)
                    stack.append(pred)
        return found


class OutputValidator:
    """Validates structured node outputs against JSON Schemas."""

    def validate_schema(
        self,
        output: Any,
        schema: dict[str, Any],
    ) -> ValidationResult:
        """
        Validate output against a JSON schema.

        Args:
            output: The parsed output to validate
            schema: JSON schema to validate against

        Returns:
            ValidationResult with success status and any errors
        """
        validator = jsonschema.Draft7Validator(schema)
        errors = []
        for error in validator.iter_errors(output):
            path = ".".join(str(p) for p in error.path) if error.path else "root"
            errors.append(f"{path}: {error.message}")
        return ValidationResult(success=len(errors) == 0, errors=errors)

    def format_validation_feedback(
        self,
        validation_result: ValidationResult,
        schema: dict[str, Any],
    ) -> str:
        """
        Format validation errors as feedback for the repair prompt.

        Args:
            validation_result: The failed validation result
            schema: The JSON schema the output must satisfy

        Returns:
            Feedback text to send back to the model
        """
        feedback = "Your previous response did not match the required JSON schema.\n\n"
        feedback += "ERRORS:\n"
        for error in validation_result.errors:
            feedback += f"  - {error}\n"

        if "properties" in schema:
            feedback += "\nEXPECTED FIELDS:\n"
            required = schema.get("required", [])
            for prop_name, prop_info in schema["properties"].items():
                req_marker = " (required)" if prop_name in required else ""
                prop_type = prop_info.get("type", "any") if isinstance(prop_info, dict) else "any"
                feedback += f"  - {prop_name}: {prop_type}{req_marker}\n"

        feedback += "\nRespond again with ONLY a JSON value that satisfies the schema."
        return feedback
