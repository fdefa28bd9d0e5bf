"""
Expression and template evaluation over variable bindings.

Conditions (condition nodes and conditional edges) are evaluated with
simpleeval, never ``eval``. Names resolve to bindings directly, and
``vars`` exposes the whole map for ids that are not valid identifiers:

    score > 0.8
    facts.company == "Acme" and len(facts.people) > 0
    vars["scrape-1"].title != ""

Templates substitute ``{{name}}`` or ``{{name.field}}`` with the bound value;
non-string values are JSON encoded.
"""

import ast
import json
import re
from collections.abc import Mapping
from typing import Any

from simpleeval import EvalWithCompoundTypes

TEMPLATE_PATTERN = re.compile(r"\{\{\s*([^{}\s]+)\s*\}\}")

SAFE_FUNCTIONS = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "abs": abs,
    "min": min,
    "max": max,
    "any": any,
    "all": all,
    "lower": lambda s: str(s).lower(),
    "contains": lambda haystack, needle: needle in haystack,
}

_CONSTANTS = {
    "true": True,
    "false": False,
    "none": None,
    "null": None,
    "True": True,
    "False": False,
    "None": None,
}


def check_expression(expression: str) -> str | None:
    """
    Check expression syntax without evaluating it.

    Returns:
        None if the expression parses, otherwise a description of the problem
    """
    if not expression or not expression.strip():
        return "expression is empty"
    try:
        ast.parse(expression.strip(), mode="eval")
    except SyntaxError as e:
        return f"invalid expression '{expression}': {e.msg}"
    return None


def expression_names(expression: str) -> list[str]:
    """
    Binding names an expression reads, in order of first use.

    Covers bare names and ``vars["id"]`` lookups with a literal key.
    Builtins, constants and comprehension targets are not bindings.
    Raises SyntaxError if the expression does not parse.
    """
    tree = ast.parse(expression.strip(), mode="eval")
    bound = {
        n.id for n in ast.walk(tree) if isinstance(n, ast.Name) and isinstance(n.ctx, ast.Store)
    }
    ignored = bound | set(SAFE_FUNCTIONS) | set(_CONSTANTS) | {"vars"}

    names: list[str] = []
    for n in ast.walk(tree):
        name = None
        if isinstance(n, ast.Name) and isinstance(n.ctx, ast.Load) and n.id not in ignored:
            name = n.id
        elif (
            isinstance(n, ast.Subscript)
            and isinstance(n.value, ast.Name)
            and n.value.id == "vars"
            and isinstance(n.slice, ast.Constant)
            and isinstance(n.slice.value, str)
        ):
            name = n.slice.value
        if name is not None and name not in names:
            names.append(name)
    return names


def evaluate(expression: str, variables: Mapping[str, Any]) -> Any:
    """Evaluate an expression against variable bindings."""
    names = {**_CONSTANTS, **variables, "vars": dict(variables)}
    evaluator = EvalWithCompoundTypes(names=names, functions=SAFE_FUNCTIONS)
    return evaluator.eval(expression.strip())


def evaluate_condition(expression: str, variables: Mapping[str, Any]) -> bool:
    """Evaluate an expression and coerce the result to bool."""
    return bool(evaluate(expression, variables))


def template_names(template: str) -> list[str]:
    """Root binding names referenced by ``{{...}}`` placeholders."""
    return [match.split(".", 1)[0] for match in TEMPLATE_PATTERN.findall(template)]


def lookup_path(path: str, variables: Mapping[str, Any]) -> Any:
    """Resolve a dotted path such as ``facts.people.0.name``. Raises KeyError."""
    root, *rest = path.split(".")
    if root not in variables:
        raise KeyError(root)
    value = variables[root]
    for part in rest:
        if isinstance(value, Mapping) and part in value:
            value = value[part]
        elif isinstance(value, list) and part.isdigit() and int(part) < len(value):
            value = value[int(part)]
        else:
            raise KeyError(path)
    return value


def render_template(template: str, variables: Mapping[str, Any]) -> str:
    """
    Substitute ``{{path}}`` placeholders.

    Raises:
        KeyError: if a placeholder does not resolve
    """

    def _replace(match: re.Match) -> str:
        value = lookup_path(match.group(1), variables)
        if isinstance(value, str):
            return value
        return json.dumps(value, default=str)

    return TEMPLATE_PATTERN.sub(_replace, template)
