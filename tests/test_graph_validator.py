"""Tests for graph loading and pre-execution validation."""

import json

import pytest
from conftest import COMPANY_SCHEMA, branching_graph, research_graph

from flowgate.errors import GraphValidationError
from flowgate.graph.edge import load_graph, load_graph_file
from flowgate.graph.node import ExtractConfig, ScrapeAction
from flowgate.graph.validator import GraphValidator, OutputValidator, ValidationResult


def errors_for(data: dict) -> list[str]:
    return GraphValidator().collect_errors(load_graph(data))


def agent(node_id: str, **config) -> dict:
    return {"id": node_id, "kind": "agent", "config": {"instructions": "x", **config}}


class TestLoadGraph:
    def test_parses_per_kind_config(self):
        graph = load_graph(research_graph())
        assert isinstance(graph.get_node("B").config, ExtractConfig)
        assert graph.get_node("A").config.action == ScrapeAction.SCRAPE

    def test_unknown_kind(self):
        with pytest.raises(GraphValidationError) as exc_info:
            load_graph({"id": "g", "nodes": [{"id": "a", "kind": "teleport", "config": {}}]})
        assert any("kind" in e for e in exc_info.value.errors)

    def test_invalid_kind_config(self):
        with pytest.raises(GraphValidationError, match="invalid agent config"):
            load_graph({"id": "g", "nodes": [{"id": "a", "kind": "agent", "config": {}}]})

    def test_unknown_config_field(self):
        with pytest.raises(GraphValidationError, match="invalid approval config"):
            load_graph(
                {"id": "g", "nodes": [{"id": "a", "kind": "approval", "config": {"colour": 1}}]}
            )

    def test_extract_schema_may_be_text(self):
        graph = load_graph(
            {
                "id": "g",
                "nodes": [
                    {
                        "id": "x",
                        "kind": "extract",
                        "config": {"json_schema": json.dumps(COMPANY_SCHEMA)},
                    }
                ],
            }
        )
        assert graph.get_node("x").config.json_schema == COMPANY_SCHEMA

    def test_extract_schema_text_must_be_json(self):
        with pytest.raises(GraphValidationError, match="json_schema is not valid JSON"):
            load_graph(
                {
                    "id": "g",
                    "nodes": [{"id": "x", "kind": "extract", "config": {"json_schema": "{nope"}}],
                }
            )

    def test_load_graph_file(self, tmp_path):
        path = tmp_path / "graph.json"
        path.write_text(json.dumps(research_graph()))
        assert load_graph_file(path).id == "wf-research"

    def test_load_graph_file_bad_json(self, tmp_path):
        path = tmp_path / "graph.json"
        path.write_text("{")
        with pytest.raises(GraphValidationError, match="not valid JSON"):
            load_graph_file(path)


class TestStructure:
    def test_valid_graph(self):
        assert errors_for(research_graph()) == []

    def test_empty_graph(self):
        assert errors_for({"id": "g"}) == ["Graph has no nodes"]

    def test_cycle(self):
        errors = errors_for(
            {
                "id": "g",
                "nodes": [agent("a"), agent("b")],
                "edges": [
                    {"id": "e1", "source": "a", "target": "b"},
                    {"id": "e2", "source": "b", "target": "a"},
                ],
            }
        )
        assert any("cycle" in e and "'a'" in e for e in errors)

    def test_duplicates_and_dangling_edges(self):
        errors = errors_for(
            {
                "id": "g",
                "nodes": [agent("a"), agent("a")],
                "edges": [
                    {"id": "e", "source": "a", "target": "zzz"},
                    {"id": "e", "source": "a", "target": "a"},
                ],
            }
        )
        assert "Duplicate node id 'a'" in errors
        assert "Duplicate edge id 'e'" in errors
        assert "Edge 'e' target 'zzz' does not exist" in errors
        assert "Edge 'e' is a self-loop on 'a'" in errors

    def test_topological_order_breaks_ties_by_id(self):
        graph = load_graph(
            {
                "id": "g",
                "nodes": [agent("c"), agent("b"), agent("a"), agent("z")],
                "edges": [
                    {"id": "e1", "source": "c", "target": "z"},
                    {"id": "e2", "source": "a", "target": "z"},
                ],
            }
        )
        assert graph.topological_order() == ["a", "b", "c", "z"]
        assert graph.entry_nodes() == ["a", "b", "c"]
        assert graph.terminal_nodes() == ["b", "z"]


class TestSemantics:
    def test_reserved_node_id(self):
        errors = errors_for({"id": "g", "nodes": [agent("input")]})
        assert "Node id 'input' is reserved" in errors

    def test_unknown_input(self):
        errors = errors_for({"id": "g", "nodes": [agent("a", inputs=["ghost"])]})
        assert errors == ["Node 'a' (agent) reads unknown binding 'ghost'"]

    def test_input_must_be_upstream(self):
        errors = errors_for(
            {"id": "g", "nodes": [agent("a"), agent("b", inputs=["a"])], "edges": []}
        )
        assert errors == ["Node 'b' (agent) reads 'a' which is not upstream of it"]

    def test_transitive_upstream_input_is_fine(self):
        data = research_graph()
        data["nodes"][3]["config"]["inputs"] = ["A", "B", "input"]
        assert errors_for(data) == []

    def test_invalid_json_schema(self):
        errors = errors_for(
            {
                "id": "g",
                "nodes": [{"id": "x", "kind": "extract", "config": {"json_schema": {"type": 5}}}],
            }
        )
        assert len(errors) == 1
        assert errors[0].startswith("Node 'x' (extract) has an invalid JSON Schema")

    def test_scrape_url_template_must_resolve(self):
        errors = errors_for(
            {"id": "g", "nodes": [{"id": "s", "kind": "scrape", "config": {"url": "{{page}}"}}]}
        )
        assert errors == ["Node 's' (scrape) url references unknown binding 'page'"]

    def test_bad_expressions(self):
        errors = errors_for(
            {
                "id": "g",
                "nodes": [
                    {"id": "c", "kind": "condition", "config": {"expression": "a >"}},
                    agent("b"),
                ],
                "edges": [{"id": "e", "source": "c", "target": "b", "condition": "(("}],
            }
        )
        assert len(errors) == 2
        assert errors[0].startswith("Node 'c' (condition): invalid expression 'a >'")
        assert errors[1].startswith("Edge 'e': invalid expression '(('")

    def test_validate_raises_with_every_error(self):
        graph = load_graph({"id": "g", "nodes": [agent("input", inputs=["ghost"])]})
        with pytest.raises(GraphValidationError) as exc_info:
            GraphValidator().validate(graph)
        assert len(exc_info.value.errors) == 2
        assert exc_info.value.to_dict()["error_type"] == "validation_error"


class TestOutputValidator:
    def test_valid_output(self):
        result = OutputValidator().validate_schema({"company": "Acme"}, COMPANY_SCHEMA)
        assert result.success
        assert result.error == ""

    def test_errors_have_paths(self):
        result = OutputValidator().validate_schema(
            {"company": "Acme", "employees": "many"}, COMPANY_SCHEMA
        )
        assert not result.success
        assert result.errors == ["employees: 'many' is not of type 'integer'"]

    def test_feedback_lists_errors_and_fields(self):
        validator = OutputValidator()
        feedback = validator.format_validation_feedback(
            ValidationResult(success=False, errors=["root: 'company' is a required property"]),
            COMPANY_SCHEMA,
        )
        assert "ERRORS:\n  - root: 'company' is a required property" in feedback
        assert "  - company: string (required)" in feedback
        assert "  - employees: integer\n" in feedback


class TestReferences:
    def test_agent_instructions_must_resolve(self):
        errors = errors_for(
            {
                "id": "g",
                "nodes": [
                    {"id": "A", "kind": "scrape", "config": {"url": "{{input}}"}},
                    agent("D", instructions="Summarize {{Z}}"),
                ],
                "edges": [{"id": "e", "source": "A", "target": "D"}],
            }
        )
        assert errors == ["Node 'D' (agent) instructions references unknown binding 'Z'"]

    def test_extract_instructions_must_be_upstream(self):
        data = research_graph()
        data["nodes"][1]["config"]["instructions"] = "Use {{D.summary}} and {{A.content}}"
        assert errors_for(data) == [
            "Node 'B' (extract) instructions references 'D' which is not upstream of it"
        ]

    def test_scrape_url_must_be_upstream(self):
        errors = errors_for(
            {
                "id": "g",
                "nodes": [
                    agent("a"),
                    {"id": "s", "kind": "scrape", "config": {"url": "{{a}}"}},
                ],
            }
        )
        assert errors == ["Node 's' (scrape) url references 'a' which is not upstream of it"]

    def test_approval_message_must_resolve(self):
        errors = errors_for(research_graph("Publish {{nobody}}?"))
        assert errors == ["Node 'C' (approval) message references unknown binding 'nobody'"]

    def test_condition_names_must_resolve(self):
        errors = errors_for(
            {
                "id": "g",
                "nodes": [
                    {"id": "c", "kind": "condition", "config": {"expression": "missing > 1"}}
                ],
            }
        )
        assert errors == ["Node 'c' (condition) expression references unknown binding 'missing'"]

    def test_condition_builtins_and_comprehensions_are_not_bindings(self):
        expression = 'len(input) > 0 and any(x > 1 for x in input) and none is None and true'
        errors = errors_for(
            {
                "id": "g",
                "nodes": [{"id": "c", "kind": "condition", "config": {"expression": expression}}],
            }
        )
        assert errors == []

    def test_condition_vars_lookup_is_checked(self):
        errors = errors_for(
            {
                "id": "g",
                "nodes": [
                    agent("b"),
                    {
                        "id": "c",
                        "kind": "condition",
                        "config": {"expression": 'vars["b"] != ""'},
                    },
                ],
            }
        )
        assert errors == [
            "Node 'c' (condition) expression references 'b' which is not upstream of it"
        ]

    def test_edge_condition_may_read_its_source(self):
        assert errors_for(branching_graph()) == []

    def test_edge_condition_must_resolve(self):
        errors = errors_for(
            {
                "id": "g",
                "nodes": [agent("a"), agent("b")],
                "edges": [{"id": "e", "source": "a", "target": "b", "condition": "score > 1"}],
            }
        )
        assert errors == ["Edge 'e' condition references unknown binding 'score'"]
