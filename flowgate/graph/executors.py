"""
Node executors - one per node kind.

The registry is closed: ``EXECUTORS`` maps every NodeKind to its executor
and ``resolve_executors`` binds a graph's nodes to them once, before the
run starts. Executors never mutate bindings; they receive a read-only
snapshot and return a NodeResult (or a SuspendRequest for approvals).
Capability failures surface as CapabilityError or NodeTimeoutError.
"""

import asyncio
import json
import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from flowgate.config import RuntimeConfig
from flowgate.errors import (
    BindingError,
    CapabilityError,
    FetchError,
    GraphValidationError,
    NodeTimeoutError,
)
from flowgate.graph.edge import GraphSpec
from flowgate.graph.expressions import (
    TEMPLATE_PATTERN,
    evaluate_condition,
    lookup_path,
    render_template,
    template_names,
)
from flowgate.graph.node import (
    AgentConfig,
    ApprovalConfig,
    ConditionConfig,
    ExtractConfig,
    NodeKind,
    NodeResult,
    NodeSpec,
    ScrapeAction,
    ScrapeConfig,
    SuspendRequest,
)
from flowgate.graph.validator import OutputValidator, ValidationResult
from flowgate.graph.variables import BindingType, VariableStore
from flowgate.llm.provider import LLMProvider, LLMResponse, parse_json_text
from flowgate.web.provider import FetchOptions, FetchResult, WebFetchProvider

logger = logging.getLogger(__name__)

AGENT_SYSTEM_PROMPT = (
    "You are one step in an automated workflow. Follow the instructions, "
    "using the context provided. Reply with the result only."
)
EXTRACT_SYSTEM_PROMPT = (
    "You extract structured data. Respond with a single JSON value that "
    "satisfies the given JSON Schema, and nothing else."
)

_URL_SEPARATOR = re.compile(r"[\s,]+")


@dataclass
class Capabilities:
    """External services a run may call."""

    llm: LLMProvider | None = None
    web: WebFetchProvider | None = None
    config: RuntimeConfig = field(default_factory=RuntimeConfig)
    output_validator: OutputValidator = field(default_factory=OutputValidator)

    def require_llm(self) -> LLMProvider:
        if self.llm is None:
            raise CapabilityError("No model provider configured", provider="llm")
        return self.llm

    def require_web(self) -> WebFetchProvider:
        if self.web is None:
            raise CapabilityError("No web-fetch provider configured", provider="web_fetch")
        return self.web


def _format_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, indent=2, default=str)


def _render(template: str, variables: Mapping[str, Any], node: NodeSpec) -> str:
    try:
        return render_template(template, variables)
    except KeyError as e:
        raise BindingError(
            f"Node '{node.id}' references {{{{{e.args[0]}}}}} but it is not bound"
        ) from None


def build_context(node: NodeSpec, variables: Mapping[str, Any]) -> str:
    """
    Context block for model prompts: the declared inputs, or every prior
    binding when the node declares none.
    """
    names = node.config.inputs or list(variables)
    sections = [f"## {name}\n{_format_value(variables[name])}" for name in names]
    return "\n\n".join(sections)


class NodeExecutor(ABC):
    """Executes one node kind."""

    kind: NodeKind

    def input_types(self, node: NodeSpec) -> dict[str, tuple[BindingType, ...] | None]:
        """Bindings the node reads, with the types it accepts (None: any)."""
        return {name: None for name in node.config.inputs}

    def check_bindings(self, node: NodeSpec, store: VariableStore) -> None:
        """
        Raises:
            BindingError: if a declared input is missing or mistyped
        """
        for name, expected in self.input_types(node).items():
            store.require(name, expected, reader=node.id)

    @abstractmethod
    async def execute(
        self,
        node: NodeSpec,
        variables: Mapping[str, Any],
        capabilities: Capabilities,
    ) -> NodeResult | SuspendRequest:
        pass


class AgentExecutor(NodeExecutor):
    kind = NodeKind.AGENT

    async def execute(self, node, variables, capabilities):
        config = node.config
        assert isinstance(config, AgentConfig)
        llm = capabilities.require_llm()

        prompt = _render(config.instructions, variables, node)
        context = build_context(node, variables)
        if context:
            prompt = f"{prompt}\n\n# Context\n\n{context}"

        response = await llm.invoke(
            prompt,
            system=AGENT_SYSTEM_PROMPT,
            tools=config.tools,
            model=config.model,
            max_tokens=config.max_tokens,
            max_tool_iterations=config.max_tool_iterations,
        )
        return NodeResult(
            output=response.text,
            tool_trace=response.tool_trace,
            metadata=_usage(response),
        )


class ExtractExecutor(NodeExecutor):
    """Schema-constrained model call with one repair attempt."""

    kind = NodeKind.EXTRACT

    async def execute(self, node, variables, capabilities):
        config = node.config
        assert isinstance(config, ExtractConfig)
        llm = capabilities.require_llm()
        validator = capabilities.output_validator
        schema = config.json_schema

        prompt = _render(config.instructions, variables, node)
        context = build_context(node, variables)
        if context:
            prompt = f"{prompt}\n\n# Content\n\n{context}"
        prompt += f"\n\n# JSON Schema\n\n{json.dumps(schema, indent=2)}"

        response = await self._invoke(llm, prompt, config)
        value, result = self._check(response, schema, validator)
        if result.success:
            return NodeResult(output=value, attempts=1, metadata=_usage(response))

        logger.info(
            f"Extract output for '{node.id}' failed validation, retrying once: {result.error}",
            extra={"attempt": 1},
        )
        feedback = validator.format_validation_feedback(result, schema)
        repair_prompt = (
            f"{prompt}\n\n# Previous response\n\n{response.text}\n\n# Problems\n\n{feedback}"
        )
        response = await self._invoke(llm, repair_prompt, config)
        value, result = self._check(response, schema, validator)
        if result.success:
            return NodeResult(output=value, attempts=2, metadata=_usage(response))

        raise CapabilityError(
            f"Extract output for '{node.id}' does not match its schema after repair: "
            f"{result.error}",
            provider=llm.name,
        )

    @staticmethod
    async def _invoke(llm: LLMProvider, prompt: str, config: ExtractConfig) -> LLMResponse:
        return await llm.invoke(
            prompt,
            system=EXTRACT_SYSTEM_PROMPT,
            schema=config.json_schema,
            model=config.model,
            max_tokens=config.max_tokens,
        )

    @staticmethod
    def _check(
        response: LLMResponse,
        schema: dict[str, Any],
        validator: OutputValidator,
    ) -> tuple[Any, ValidationResult]:
        value = response.structured
        if value is None:
            value = parse_json_text(response.text)
        if value is None:
            not_json = ValidationResult(success=False, errors=["root: response is not valid JSON"])
            return None, not_json
        return value, validator.validate_schema(value, schema)


class ScrapeExecutor(NodeExecutor):
    kind = NodeKind.SCRAPE

    def input_types(self, node):
        config = node.config
        assert isinstance(config, ScrapeConfig)
        types = super().input_types(node)
        for name in template_names(config.url):
            types.setdefault(name, None)
        return types

    def check_bindings(self, node, store):
        super().check_bindings(node, store)
        config = node.config
        assert isinstance(config, ScrapeConfig)
        # A URL that is exactly one placeholder must resolve to a string
        # (or a list of URLs for a batch)
        match = TEMPLATE_PATTERN.fullmatch(config.url.strip())
        if match:
            try:
                value = lookup_path(match.group(1), store.to_dict())
            except KeyError:
                raise BindingError(
                    f"Node '{node.id}' reads '{match.group(1)}' but it is not bound"
                ) from None
            batch = config.action == ScrapeAction.BATCH_SCRAPE
            if batch and isinstance(value, list):
                if not all(isinstance(url, str) for url in value):
                    raise BindingError(
                        f"Node '{node.id}' expects '{match.group(1)}' to be a list of strings"
                    )
            elif not isinstance(value, str):
                expected = "string or list" if batch else "string"
                raise BindingError(
                    f"Node '{node.id}' expects '{match.group(1)}' to be {expected}, "
                    f"got {type(value).__name__}"
                )

    async def execute(self, node, variables, capabilities):
        config = node.config
        assert isinstance(config, ScrapeConfig)
        web = capabilities.require_web()
        options = FetchOptions(
            use_browser=config.use_browser, wait_for_selector=config.wait_for_selector
        )

        if config.action == ScrapeAction.BATCH_SCRAPE:
            targets = self._batch_targets(node, config, variables)
            target = ", ".join(targets)
        else:
            target = _render(config.url, variables, node).strip()
            if not target:
                raise BindingError(f"Node '{node.id}' url resolved to an empty string")

        try:
            if config.action == ScrapeAction.SEARCH:
                hits = await web.search(target, limit=config.limit)
                output: Any = {"query": target, "results": [h.to_dict() for h in hits]}
            elif config.action == ScrapeAction.MAP:
                output = {"url": target, "links": await web.map(target, options)}
            elif config.action == ScrapeAction.CRAWL:
                pages = await web.crawl(target, limit=config.limit, options=options)
                output = {"url": target, "pages": [_page_dict(p) for p in pages]}
            elif config.action == ScrapeAction.BATCH_SCRAPE:
                pages = await web.batch_fetch(targets, options)
                output = {"pages": [_page_dict(p) for p in pages]}
            else:
                page = await web.fetch(target, options)
                output = page.to_dict()
        except CapabilityError:
            raise
        except Exception as e:
            raise CapabilityError(
                f"Web fetch failed for '{target}': {e}", provider=web.name
            ) from e
        return NodeResult(output=output, metadata={"provider": web.name})

    @staticmethod
    def _batch_targets(node: NodeSpec, config: ScrapeConfig, variables) -> list[str]:
        match = TEMPLATE_PATTERN.fullmatch(config.url.strip())
        if match:
            try:
                value = lookup_path(match.group(1), variables)
            except KeyError:
                raise BindingError(
                    f"Node '{node.id}' reads '{match.group(1)}' but it is not bound"
                ) from None
            if isinstance(value, list):
                targets = [url.strip() for url in value if url.strip()]
            else:
                targets = _URL_SEPARATOR.split(str(value).strip())
        else:
            targets = _URL_SEPARATOR.split(_render(config.url, variables, node).strip())
        targets = [url for url in targets if url]
        if not targets:
            raise BindingError(f"Node '{node.id}' url resolved to no URLs")
        return targets


def _page_dict(page: FetchResult | FetchError) -> dict[str, Any]:
    if isinstance(page, FetchError):
        return {"url": page.url, "error": str(page), "status_code": page.status_code}
    return page.to_dict()


class ConditionExecutor(NodeExecutor):
    kind = NodeKind.CONDITION

    async def execute(self, node, variables, capabilities):
        config = node.config
        assert isinstance(config, ConditionConfig)
        try:
            value = evaluate_condition(config.expression, variables)
        except Exception as e:
            raise CapabilityError(
                f"Condition '{config.expression}' could not be evaluated: {e}",
                provider="condition",
            ) from e
        return NodeResult(output=value)


class ApprovalExecutor(NodeExecutor):
    kind = NodeKind.APPROVAL

    async def execute(self, node, variables, capabilities):
        config = node.config
        assert isinstance(config, ApprovalConfig)
        try:
            message = render_template(config.message, variables)
        except KeyError:
            message = config.message
        return SuspendRequest(message=message)


def _usage(response: LLMResponse) -> dict[str, Any]:
    return {
        "model": response.model,
        "input_tokens": response.input_tokens,
        "output_tokens": response.output_tokens,
    }


EXECUTORS: dict[NodeKind, NodeExecutor] = {
    NodeKind.AGENT: AgentExecutor(),
    NodeKind.EXTRACT: ExtractExecutor(),
    NodeKind.SCRAPE: ScrapeExecutor(),
    NodeKind.CONDITION: ConditionExecutor(),
    NodeKind.APPROVAL: ApprovalExecutor(),
}


def resolve_executors(
    graph: GraphSpec,
    registry: Mapping[NodeKind, NodeExecutor] | None = None,
) -> dict[str, NodeExecutor]:
    """
    Bind each node to its kind's executor.

    Raises:
        GraphValidationError: if a node's kind has no executor
    """
    registry = EXECUTORS if registry is None else registry
    resolved: dict[str, NodeExecutor] = {}
    missing = []
    for node in graph.nodes:
        executor = registry.get(node.kind)
        if executor is None:
            missing.append(f"No executor registered for kind '{node.kind}' (node '{node.id}')")
        else:
            resolved[node.id] = executor
    if missing:
        raise GraphValidationError(missing)
    return resolved


async def run_node(
    executor: NodeExecutor,
    node: NodeSpec,
    variables: Mapping[str, Any],
    capabilities: Capabilities,
) -> NodeResult | SuspendRequest:
    """
    Execute a node under its time budget.

    Raises:
        NodeTimeoutError: if the budget expires
    """
    timeout = node.config.timeout_seconds or capabilities.config.timeout_for(node.kind.value)
    try:
        async with asyncio.timeout(timeout) as budget:
            return await executor.execute(node, variables, capabilities)
    except TimeoutError:
        if budget.expired():
            uses_llm = node.kind in (NodeKind.AGENT, NodeKind.EXTRACT)
            provider = capabilities.llm if uses_llm else capabilities.web
            name = getattr(provider, "name", "")
            raise NodeTimeoutError(node.id, timeout, provider=name) from None
        raise
