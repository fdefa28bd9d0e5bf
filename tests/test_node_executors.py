"""Tests for the per-kind node executors, called directly."""

import pytest
from conftest import COMPANY_SCHEMA, PAGE, PAGE_URL, FakeWeb

from flowgate.errors import (
    BindingError,
    CapabilityError,
    FetchError,
    GraphValidationError,
    NodeTimeoutError,
)
from flowgate.graph.edge import load_graph
from flowgate.graph.executors import (
    EXECUTORS,
    Capabilities,
    build_context,
    resolve_executors,
    run_node,
)
from flowgate.graph.node import NodeKind, NodeResult, NodeSpec, SuspendRequest
from flowgate.graph.variables import VariableStore
from flowgate.llm.mock import MockLLMProvider
from flowgate.llm.provider import LLMResponse
from flowgate.web.provider import SearchHit


SITE = {
    "https://site.example/": (
        "# Home\n\n[About](/about) [Team](team \"Our team\") "
        "[Out](https://elsewhere.example/) [Mail](mailto:hi@site.example) [Top](/about#top)"
    ),
    "https://site.example/about": "# About",
}


def node(node_id: str, kind: str, **config) -> NodeSpec:
    return NodeSpec(id=node_id, kind=kind, config=config)


def extract_node(**overrides) -> NodeSpec:
    config = {"instructions": "Pull facts", "json_schema": COMPANY_SCHEMA, **overrides}
    return node("facts", "extract", **config)


class TestRegistry:
    def test_every_kind_has_an_executor(self):
        assert set(EXECUTORS) == set(NodeKind)

    def test_resolve_binds_nodes_by_kind(self):
        graph = load_graph(
            {
                "id": "g",
                "nodes": [
                    {"id": "a", "kind": "agent", "config": {"instructions": "x"}},
                    {"id": "ok", "kind": "approval", "config": {}},
                ],
            }
        )
        resolved = resolve_executors(graph)
        assert resolved["a"] is EXECUTORS[NodeKind.AGENT]
        assert resolved["ok"] is EXECUTORS[NodeKind.APPROVAL]

    def test_resolve_reports_missing_kinds(self):
        graph = load_graph(
            {"id": "g", "nodes": [{"id": "a", "kind": "agent", "config": {"instructions": "x"}}]}
        )
        with pytest.raises(GraphValidationError, match="No executor registered"):
            resolve_executors(graph, registry={})


class TestContext:
    def test_declared_inputs_only(self):
        spec = node("d", "agent", instructions="x", inputs=["b"])
        text = build_context(spec, {"input": "i", "a": "A", "b": {"k": 1}})
        assert text.startswith("## b\n")
        assert "## a" not in text

    def test_all_bindings_when_none_declared(self):
        spec = node("d", "agent", instructions="x")
        text = build_context(spec, {"input": "i", "a": "A"})
        assert text == "## input\ni\n\n## a\nA"


class TestAgentExecutor:
    @pytest.mark.asyncio
    async def test_renders_instructions_and_returns_text(self):
        llm = MockLLMProvider(
            [LLMResponse(text="hello", model="m", input_tokens=5, output_tokens=2)]
        )
        spec = node("greet", "agent", instructions="Greet {{input}}", tools=["lookup"])

        result = await EXECUTORS[NodeKind.AGENT].execute(
            spec, {"input": "Ada"}, Capabilities(llm=llm)
        )

        assert isinstance(result, NodeResult)
        assert result.output == "hello"
        assert result.metadata == {"model": "m", "input_tokens": 5, "output_tokens": 2}
        assert llm.calls[0]["prompt"].startswith("Greet Ada")
        assert llm.calls[0]["tools"] == ["lookup"]

    @pytest.mark.asyncio
    async def test_requires_model_provider(self):
        spec = node("greet", "agent", instructions="hi")
        with pytest.raises(CapabilityError, match="No model provider"):
            await EXECUTORS[NodeKind.AGENT].execute(spec, {}, Capabilities())


class TestExtractExecutor:
    @pytest.mark.asyncio
    async def test_valid_first_response(self):
        llm = MockLLMProvider([{"company": "Acme"}])

        result = await EXECUTORS[NodeKind.EXTRACT].execute(
            extract_node(), {"input": PAGE}, Capabilities(llm=llm)
        )

        assert result.output == {"company": "Acme"}
        assert result.attempts == 1
        assert llm.calls[0]["schema"] == COMPANY_SCHEMA
        assert "# JSON Schema" in llm.calls[0]["prompt"]

    @pytest.mark.asyncio
    async def test_text_response_is_parsed(self):
        llm = MockLLMProvider(['```json\n{"company": "Acme"}\n```'])

        result = await EXECUTORS[NodeKind.EXTRACT].execute(
            extract_node(), {"input": PAGE}, Capabilities(llm=llm)
        )

        assert result.output == {"company": "Acme"}

    @pytest.mark.asyncio
    async def test_one_repair_attempt(self):
        llm = MockLLMProvider([{"name": "Acme"}, {"company": "Acme"}])

        result = await EXECUTORS[NodeKind.EXTRACT].execute(
            extract_node(), {"input": PAGE}, Capabilities(llm=llm)
        )

        assert result.output == {"company": "Acme"}
        assert result.attempts == 2
        assert llm.call_count == 2
        repair_prompt = llm.calls[1]["prompt"]
        assert "# Previous response" in repair_prompt
        assert "'company' is a required property" in repair_prompt

    @pytest.mark.asyncio
    async def test_gives_up_after_repair(self):
        llm = MockLLMProvider(["not json", {"employees": "many"}, {"company": "late"}])

        with pytest.raises(CapabilityError, match="after repair"):
            await EXECUTORS[NodeKind.EXTRACT].execute(
                extract_node(), {"input": PAGE}, Capabilities(llm=llm)
            )
        assert llm.call_count == 2

    @pytest.mark.asyncio
    async def test_wrong_type_is_rejected(self):
        llm = MockLLMProvider([{"company": 7}, {"company": 8}])

        with pytest.raises(CapabilityError) as exc_info:
            await EXECUTORS[NodeKind.EXTRACT].execute(
                extract_node(), {"input": PAGE}, Capabilities(llm=llm)
            )
        assert "company" in str(exc_info.value)
        assert exc_info.value.provider == "mock"


class TestScrapeExecutor:
    @pytest.mark.asyncio
    async def test_fetch(self):
        web = FakeWeb(pages={PAGE_URL: PAGE})
        spec = node("page", "scrape", url="{{input}}")

        result = await EXECUTORS[NodeKind.SCRAPE].execute(
            spec, {"input": PAGE_URL}, Capabilities(web=web)
        )

        assert result.output == {"url": PAGE_URL, "content": PAGE, "title": PAGE_URL}
        assert result.metadata == {"provider": "fake_web"}

    @pytest.mark.asyncio
    async def test_search(self):
        hits = [SearchHit(title=f"t{i}", url=f"https://r/{i}") for i in range(5)]
        web = FakeWeb(hits=hits)
        spec = node("find", "scrape", url="acme {{input.topic}}", action="search", limit=2)

        result = await EXECUTORS[NodeKind.SCRAPE].execute(
            spec, {"input": {"topic": "anvils"}}, Capabilities(web=web)
        )

        assert web.searched == ["acme anvils"]
        assert result.output["query"] == "acme anvils"
        assert [r["title"] for r in result.output["results"]] == ["t0", "t1"]

    @pytest.mark.asyncio
    async def test_fetch_error_is_typed(self):
        web = FakeWeb(error=FetchError("Jina returned 502", url=PAGE_URL, status_code=502))
        spec = node("page", "scrape", url=PAGE_URL)

        with pytest.raises(FetchError) as exc_info:
            await EXECUTORS[NodeKind.SCRAPE].execute(spec, {}, Capabilities(web=web))
        assert exc_info.value.status_code == 502
        assert exc_info.value.error_type == "fetch_error"

    @pytest.mark.asyncio
    async def test_unexpected_provider_error_is_wrapped(self):
        web = FakeWeb(error=OSError("socket closed"))
        spec = node("page", "scrape", url=PAGE_URL)

        with pytest.raises(CapabilityError, match="socket closed"):
            await EXECUTORS[NodeKind.SCRAPE].execute(spec, {}, Capabilities(web=web))

    def test_url_binding_must_be_string(self):
        spec = node("page", "scrape", url="{{input}}")
        store = VariableStore({"input": ["not", "a", "url"]})

        with pytest.raises(BindingError, match="to be string"):
            EXECUTORS[NodeKind.SCRAPE].check_bindings(spec, store)

    def test_url_template_reads_are_checked(self):
        spec = node("page", "scrape", url="https://x/{{missing}}")

        with pytest.raises(BindingError, match="not bound"):
            EXECUTORS[NodeKind.SCRAPE].check_bindings(spec, VariableStore({"input": 1}))

    @pytest.mark.asyncio
    async def test_browser_options_reach_the_provider(self):
        web = FakeWeb(pages={PAGE_URL: PAGE})
        spec = node("page", "scrape", url=PAGE_URL, use_browser=True, wait_for_selector="#main")

        await EXECUTORS[NodeKind.SCRAPE].execute(spec, {}, Capabilities(web=web))

        assert web.options[0].use_browser is True
        assert web.options[0].wait_for_selector == "#main"

    @pytest.mark.asyncio
    async def test_map_lists_links(self):
        web = FakeWeb(pages=SITE)
        spec = node("links", "scrape", url="{{input}}", action="map")

        result = await EXECUTORS[NodeKind.SCRAPE].execute(
            spec, {"input": "https://site.example/"}, Capabilities(web=web)
        )

        assert result.output == {
            "url": "https://site.example/",
            "links": [
                "https://site.example/about",
                "https://site.example/team",
                "https://elsewhere.example/",
            ],
        }

    @pytest.mark.asyncio
    async def test_crawl_reports_failed_pages_inline(self):
        web = FakeWeb(pages=SITE)
        spec = node("site", "scrape", url="https://site.example/", action="crawl", limit=3)

        result = await EXECUTORS[NodeKind.SCRAPE].execute(spec, {}, Capabilities(web=web))

        pages = result.output["pages"]
        assert [p["url"] for p in pages] == [
            "https://site.example/",
            "https://site.example/about",
            "https://site.example/team",
        ]
        assert pages[1]["content"] == "# About"
        assert pages[2]["status_code"] == 404
        assert "https://elsewhere.example/" not in web.fetched

    @pytest.mark.asyncio
    async def test_batch_scrape_from_list_binding(self):
        web = FakeWeb(pages=SITE)
        spec = node("many", "scrape", url="{{input}}", action="batch_scrape")
        urls = ["https://site.example/about", "https://site.example/"]

        result = await EXECUTORS[NodeKind.SCRAPE].execute(
            spec, {"input": urls}, Capabilities(web=web)
        )

        assert [p["url"] for p in result.output["pages"]] == urls
        assert sorted(web.fetched) == sorted(urls)

    @pytest.mark.asyncio
    async def test_batch_scrape_splits_text(self):
        web = FakeWeb(pages=SITE)
        spec = node(
            "many", "scrape", url="https://site.example/about, {{input}}", action="batch_scrape"
        )

        result = await EXECUTORS[NodeKind.SCRAPE].execute(
            spec, {"input": "https://site.example/"}, Capabilities(web=web)
        )

        assert [p["title"] for p in result.output["pages"]] == [
            "https://site.example/about",
            "https://site.example/",
        ]

    def test_batch_binding_may_be_a_list(self):
        spec = node("many", "scrape", url="{{input}}", action="batch_scrape")
        EXECUTORS[NodeKind.SCRAPE].check_bindings(spec, VariableStore({"input": ["https://a"]}))

        with pytest.raises(BindingError, match="list of strings"):
            EXECUTORS[NodeKind.SCRAPE].check_bindings(spec, VariableStore({"input": [1, 2]}))


class TestConditionAndApproval:
    @pytest.mark.asyncio
    async def test_condition_returns_bool(self):
        spec = node("check", "condition", expression="len(input) > 2")
        result = await EXECUTORS[NodeKind.CONDITION].execute(
            spec, {"input": [1, 2, 3]}, Capabilities()
        )
        assert result.output is True

    @pytest.mark.asyncio
    async def test_condition_error_is_capability_error(self):
        spec = node("check", "condition", expression="missing > 2")
        with pytest.raises(CapabilityError) as exc_info:
            await EXECUTORS[NodeKind.CONDITION].execute(spec, {}, Capabilities())
        assert exc_info.value.provider == "condition"

    @pytest.mark.asyncio
    async def test_approval_suspends_with_rendered_message(self):
        spec = node("gate", "approval", message="Send to {{input.to}}?")
        result = await EXECUTORS[NodeKind.APPROVAL].execute(
            spec, {"input": {"to": "board"}}, Capabilities()
        )
        assert result == SuspendRequest(message="Send to board?")

    @pytest.mark.asyncio
    async def test_approval_keeps_raw_message_when_unresolved(self):
        spec = node("gate", "approval", message="Send to {{nobody}}?")
        result = await EXECUTORS[NodeKind.APPROVAL].execute(spec, {}, Capabilities())
        assert result.message == "Send to {{nobody}}?"


class TestRunNode:
    @pytest.mark.asyncio
    async def test_timeout_names_provider(self):
        llm = MockLLMProvider(default="late", delay=1.0)
        spec = node("slow", "agent", instructions="x", timeout_seconds=0.05)

        with pytest.raises(NodeTimeoutError) as exc_info:
            await run_node(EXECUTORS[NodeKind.AGENT], spec, {}, Capabilities(llm=llm))

        assert exc_info.value.node_id == "slow"
        assert exc_info.value.provider == "mock"
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_configured_kind_timeout_applies(self):
        web = FakeWeb(pages={PAGE_URL: PAGE}, delay=1.0)
        capabilities = Capabilities(web=web)
        capabilities.config.node_timeouts["scrape"] = 0.05
        spec = node("page", "scrape", url=PAGE_URL)

        with pytest.raises(NodeTimeoutError) as exc_info:
            await run_node(EXECUTORS[NodeKind.SCRAPE], spec, {}, capabilities)
        assert exc_info.value.provider == "fake_web"

    @pytest.mark.asyncio
    async def test_condition_has_no_default_timeout(self):
        spec = node("check", "condition", expression="true")
        result = await run_node(EXECUTORS[NodeKind.CONDITION], spec, {}, Capabilities())
        assert result.output is True
