"""Scripted model provider for tests and offline runs."""

import asyncio
import json
from collections.abc import Callable
from typing import Any

from flowgate.errors import CapabilityError
from flowgate.llm.provider import LLMProvider, LLMResponse, parse_json_text

Script = str | dict | list | LLMResponse | Exception


class MockLLMProvider(LLMProvider):
    """
    Returns scripted responses in order and records every call.

    Each script entry is one of:
    - str: returned as text (parsed into ``structured`` when a schema is given)
    - dict or list: returned as structured output, JSON-encoded as text
    - LLMResponse: returned as-is
    - Exception: raised

    Example:
        llm = MockLLMProvider(["a summary", {"company": "Acme"}])
    """

    name = "mock"

    def __init__(
        self,
        responses: list[Script] | None = None,
        default: Script | None = None,
        responder: Callable[..., Script] | None = None,
        delay: float = 0.0,
        model: str = "mock-model",
    ):
        self.responses = list(responses or [])
        self.default = default
        self.responder = responder
        self.delay = delay
        self.model = model
        self.calls: list[dict[str, Any]] = []

    @property
    def call_count(self) -> int:
        return len(self.calls)

    async def invoke(
        self,
        prompt: str,
        *,
        system: str = "",
        tools: list[str] | None = None,
        schema: dict[str, Any] | None = None,
        model: str | None = None,
        max_tokens: int | None = None,
        max_tool_iterations: int = 10,
    ) -> LLMResponse:
        call = {
            "prompt": prompt,
            "system": system,
            "tools": list(tools or []),
            "schema": schema,
            "model": model or self.model,
        }
        self.calls.append(call)

        if self.delay:
            await asyncio.sleep(self.delay)

        if self.responder is not None:
            script = self.responder(**call)
        elif self.responses:
            script = self.responses.pop(0)
        elif self.default is not None:
            script = self.default
        else:
            raise CapabilityError("No scripted response left", provider=self.name)

        if isinstance(script, Exception):
            raise script
        if isinstance(script, LLMResponse):
            return script
        if isinstance(script, dict | list):
            return LLMResponse(text=json.dumps(script), model=call["model"], structured=script)
        text = str(script)
        return LLMResponse(
            text=text,
            model=call["model"],
            structured=parse_json_text(text) if schema is not None else None,
        )
