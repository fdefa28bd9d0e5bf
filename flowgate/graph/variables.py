"""
Variable bindings for a single run.

A flat map from name to a tagged value. Bindings only grow: each node
writes one binding named after its id, and nothing is ever removed or
overwritten within a run. Executors receive a read-only snapshot.
"""

import copy
from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from types import MappingProxyType
from typing import Any

from flowgate.errors import BindingError


class BindingType(StrEnum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    OBJECT = "object"
    ARRAY = "array"
    NULL = "null"


def infer_type(value: Any) -> BindingType:
    """Tag a Python value with its binding type."""
    if value is None:
        return BindingType.NULL
    if isinstance(value, bool):
        return BindingType.BOOLEAN
    if isinstance(value, int | float):
        return BindingType.NUMBER
    if isinstance(value, str):
        return BindingType.STRING
    if isinstance(value, list | tuple):
        return BindingType.ARRAY
    if isinstance(value, Mapping):
        return BindingType.OBJECT
    raise BindingError(f"Unsupported binding value of type {type(value).__name__}")


@dataclass(frozen=True)
class Binding:
    name: str
    type: BindingType
    value: Any


class VariableStore:
    """Monotonic binding store."""

    def __init__(self, initial: Mapping[str, Any] | None = None):
        self._bindings: dict[str, Binding] = {}
        for name, value in (initial or {}).items():
            self.bind(name, value)

    def bind(self, name: str, value: Any) -> Binding:
        """Add a binding. Rebinding an existing name is an error."""
        if name in self._bindings:
            raise BindingError(f"Binding '{name}' is already set")
        binding = Binding(name=name, type=infer_type(value), value=value)
        self._bindings[name] = binding
        return binding

    def require(
        self,
        name: str,
        expected: BindingType | tuple[BindingType, ...] | None = None,
        reader: str = "",
    ) -> Any:
        """
        Return a bound value, checking it against the reader's expectation.

        Raises:
            BindingError: if the binding is missing or has the wrong type
        """
        who = f"Node '{reader}'" if reader else "Reader"
        binding = self._bindings.get(name)
        if binding is None:
            raise BindingError(f"{who} reads '{name}' but it is not bound")
        if expected is not None:
            allowed = expected if isinstance(expected, tuple) else (expected,)
            if binding.type not in allowed:
                wanted = "|".join(t.value for t in allowed)
                raise BindingError(
                    f"{who} expects '{name}' to be {wanted}, got {binding.type.value}"
                )
        return binding.value

    def type_of(self, name: str) -> BindingType | None:
        binding = self._bindings.get(name)
        return binding.type if binding else None

    def snapshot(self) -> Mapping[str, Any]:
        """Read-only deep copy of the current values."""
        return MappingProxyType(
            {name: copy.deepcopy(b.value) for name, b in self._bindings.items()}
        )

    def to_dict(self) -> dict[str, Any]:
        return {name: b.value for name, b in self._bindings.items()}

    def __contains__(self, name: object) -> bool:
        return name in self._bindings

    def __len__(self) -> int:
        return len(self._bindings)
