"""Shared fixtures and fakes for flowgate tests."""

import asyncio
from typing import Any

import pytest

from flowgate.errors import FetchError
from flowgate.graph.approval import ApprovalGate
from flowgate.graph.executor import GraphExecutor
from flowgate.graph.executors import Capabilities
from flowgate.llm.mock import MockLLMProvider
from flowgate.observability import clear_trace_context
from flowgate.storage.backend import InMemoryApprovalStore, InMemoryExecutionStore
from flowgate.web.provider import FetchOptions, FetchResult, SearchHit, WebFetchProvider

COMPANY_SCHEMA = {
    "type": "object",
    "properties": {"company": {"type": "string"}, "employees": {"type": "integer"}},
    "required": ["company"],
}


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Point configuration at an empty location and reset log context."""
    monkeypatch.setenv("FLOWGATE_CONFIG", str(tmp_path / "configuration.json"))
    clear_trace_context()
    yield
    clear_trace_context()


class FakeWeb(WebFetchProvider):
    """In-memory web-fetch provider."""

    name = "fake_web"

    def __init__(
        self,
        pages: dict[str, str] | None = None,
        hits: list[SearchHit] | None = None,
        error: Exception | None = None,
        delay: float = 0.0,
    ):
        self.pages = pages or {}
        self.hits = hits or []
        self.error = error
        self.delay = delay
        self.fetched: list[str] = []
        self.options: list[FetchOptions | None] = []
        self.searched: list[str] = []
        self.closed = False

    async def fetch(self, url: str, options: FetchOptions | None = None) -> FetchResult:
        self.fetched.append(url)
        self.options.append(options)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if url not in self.pages:
            raise FetchError(f"Jina returned 404 for {url}", url=url, status_code=404)
        return FetchResult(url=url, content=self.pages[url], title=url)

    async def search(self, query: str, limit: int = 5) -> list[SearchHit]:
        self.searched.append(query)
        if self.error is not None:
            raise self.error
        return self.hits[:limit]

    async def close(self) -> None:
        self.closed = True


def research_graph(approval_message: str = "Publish facts about {{B.company}}?") -> dict[str, Any]:
    """scrape A -> extract B -> approval C -> agent D."""
    return {
        "id": "wf-research",
        "name": "Research a company",
        "nodes": [
            {"id": "A", "kind": "scrape", "config": {"url": "{{input}}"}},
            {
                "id": "B",
                "kind": "extract",
                "config": {
                    "instructions": "Pull the company facts",
                    "inputs": ["A"],
                    "json_schema": COMPANY_SCHEMA,
                },
            },
            {"id": "C", "kind": "approval", "config": {"message": approval_message}},
            {
                "id": "D",
                "kind": "agent",
                "config": {"instructions": "Write a short summary", "inputs": ["B"]},
            },
        ],
        "edges": [
            {"id": "e1", "source": "A", "target": "B"},
            {"id": "e2", "source": "B", "target": "C"},
            {"id": "e3", "source": "C", "target": "D"},
        ],
    }


def branching_graph() -> dict[str, Any]:
    """condition check -> big | small."""
    return {
        "id": "wf-branch",
        "nodes": [
            {"id": "check", "kind": "condition", "config": {"expression": "input > 5"}},
            {"id": "big", "kind": "agent", "config": {"instructions": "Say big"}},
            {"id": "small", "kind": "agent", "config": {"instructions": "Say small"}},
        ],
        "edges": [
            {"id": "e-big", "source": "check", "target": "big", "condition": "check"},
            {"id": "e-small", "source": "check", "target": "small", "condition": "not check"},
        ],
    }


def single_agent_graph(timeout_seconds: float | None = None) -> dict[str, Any]:
    config: dict[str, Any] = {"instructions": "Answer {{input}}"}
    if timeout_seconds is not None:
        config["timeout_seconds"] = timeout_seconds
    return {
        "id": "wf-single",
        "nodes": [{"id": "answer", "kind": "agent", "config": config}],
        "edges": [],
    }


PAGE_URL = "https://example.com"
PAGE = "# Acme Corp\n\nAcme makes anvils. 40 employees."


@pytest.fixture
def web() -> FakeWeb:
    return FakeWeb(pages={PAGE_URL: PAGE})


@pytest.fixture
def llm() -> MockLLMProvider:
    return MockLLMProvider([{"company": "Acme", "employees": 40}, "Acme makes anvils."])


@pytest.fixture
def executor(llm, web) -> GraphExecutor:
    return GraphExecutor(
        store=InMemoryExecutionStore(),
        approvals=ApprovalGate(InMemoryApprovalStore()),
        capabilities=Capabilities(llm=llm, web=web),
    )
