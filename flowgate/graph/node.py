"""
Node Protocol - The typed units of work in a workflow graph.

A node is ``{id, kind, config}``. ``kind`` is a closed set; ``config`` is
parsed into the kind's own pydantic model when the graph is loaded, so a
malformed config fails before anything runs:

    NodeSpec(id="fetch", kind="scrape", config={"url": "{{input}}"})
    NodeSpec(id="facts", kind="extract", config={
        "instructions": "Pull the company facts",
        "json_schema": {"type": "object", "properties": {...}},
    })
"""

import json
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator


class NodeKind(StrEnum):
    """Closed set of node kinds the engine knows how to execute."""

    AGENT = "agent"  # Model call with instructions and optional tools
    EXTRACT = "extract"  # Model call constrained to a JSON schema
    SCRAPE = "scrape"  # Web-fetch dispatch
    CONDITION = "condition"  # Boolean expression over variables
    APPROVAL = "approval"  # Suspend pending a human decision


class _NodeConfig(BaseModel):
    """Fields shared by every node config."""

    inputs: list[str] = Field(
        default_factory=list,
        description="Bindings this node reads. Empty means 'all prior outputs' where relevant.",
    )
    timeout_seconds: float | None = Field(
        default=None, gt=0, description="Overrides the configured per-kind timeout"
    )

    model_config = {"extra": "forbid", "frozen": True}


class AgentConfig(_NodeConfig):
    instructions: str = Field(min_length=1)
    model: str | None = None
    tools: list[str] = Field(default_factory=list)
    max_tool_iterations: int = Field(default=10, ge=1)
    max_tokens: int | None = Field(default=None, gt=0)


class ExtractConfig(_NodeConfig):
    instructions: str = "Extract information from the input"
    json_schema: dict[str, Any]
    model: str | None = None
    max_tokens: int | None = Field(default=None, gt=0)

    @field_validator("json_schema", mode="before")
    @classmethod
    def _parse_schema_string(cls, value: Any) -> Any:
        # Editors store the schema as text
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError as e:
                raise ValueError(f"json_schema is not valid JSON: {e.msg}") from e
        if not isinstance(value, dict):
            raise ValueError("json_schema must be a JSON object")
        return value


class ScrapeAction(StrEnum):
    SCRAPE = "scrape"  # One page as markdown
    SEARCH = "search"  # Web search, url is the query
    MAP = "map"  # Links found on one page
    CRAWL = "crawl"  # A page plus same-host pages it links to
    BATCH_SCRAPE = "batch_scrape"  # Several pages, from a list or whitespace-separated urls


class ScrapeConfig(_NodeConfig):
    url: str = Field(description="URL or search query; may contain {{var}} templates")
    action: ScrapeAction = ScrapeAction.SCRAPE
    limit: int = Field(
        default=5, ge=1, le=50, description="Result count for search, page count for crawl"
    )
    use_browser: bool = Field(
        default=False, description="Render pages in a headless browser before conversion"
    )
    wait_for_selector: str | None = Field(
        default=None, description="CSS selector to wait for when rendering in a browser"
    )

    @field_validator("url")
    @classmethod
    def _non_empty_url(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("url must be a non-empty expression")
        return value


class ConditionConfig(_NodeConfig):
    expression: str = Field(min_length=1)


class ApprovalConfig(_NodeConfig):
    message: str = "Approval required"


CONFIG_MODELS: dict[NodeKind, type[_NodeConfig]] = {
    NodeKind.AGENT: AgentConfig,
    NodeKind.EXTRACT: ExtractConfig,
    NodeKind.SCRAPE: ScrapeConfig,
    NodeKind.CONDITION: ConditionConfig,
    NodeKind.APPROVAL: ApprovalConfig,
}

NodeConfig = AgentConfig | ExtractConfig | ScrapeConfig | ConditionConfig | ApprovalConfig


class NodeSpec(BaseModel):
    """
    Specification for a node in the graph.

    The node writes exactly one binding, named after its id.
    """

    id: str = Field(min_length=1)
    kind: NodeKind
    name: str = ""
    config: NodeConfig

    model_config = {"frozen": True}

    @model_validator(mode="before")
    @classmethod
    def _parse_config(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        try:
            kind = NodeKind(data.get("kind"))
        except ValueError:
            return data  # field validation reports the bad kind

        config = data.get("config") or {}
        model = CONFIG_MODELS[kind]
        if isinstance(config, model):
            return data
        if isinstance(config, BaseModel):
            config = config.model_dump()
        try:
            parsed = model.model_validate(config)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}"
                for err in e.errors()
            )
            raise ValueError(f"invalid {kind.value} config: {problems}") from None
        return {**data, "config": parsed}

    @property
    def binding_name(self) -> str:
        return self.id


@dataclass
class NodeResult:
    """Successful outcome of a node executor."""

    output: Any
    tool_trace: list[dict[str, Any]] = field(default_factory=list)
    attempts: int = 1
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class SuspendRequest:
    """Returned by approval nodes: the run must pause until a human decides."""

    message: str
