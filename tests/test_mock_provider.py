"""Tests for the scripted MockLLMProvider."""

import pytest

from flowgate.errors import CapabilityError
from flowgate.llm.mock import MockLLMProvider
from flowgate.llm.provider import LLMResponse, parse_json_text


class TestParseJsonText:
    @pytest.mark.parametrize(
        "text, expected",
        [
            ('{"a": 1}', {"a": 1}),
            ('```json\n{"a": 1}\n```', {"a": 1}),
            ("  [1, 2]  ", [1, 2]),
            ("not json", None),
            ("```\n```", None),
        ],
    )
    def test_parse(self, text, expected):
        assert parse_json_text(text) == expected


class TestMockLLMProvider:
    @pytest.mark.asyncio
    async def test_scripted_in_order(self):
        llm = MockLLMProvider(["first", {"k": "v"}, LLMResponse(text="third", model="x")])

        first = await llm.invoke("a")
        second = await llm.invoke("b", schema={"type": "object"})
        third = await llm.invoke("c", model="override")

        assert (first.text, first.structured) == ("first", None)
        assert second.structured == {"k": "v"}
        assert third.model == "x"
        assert [c["prompt"] for c in llm.calls] == ["a", "b", "c"]
        assert llm.calls[2]["model"] == "override"

    @pytest.mark.asyncio
    async def test_text_is_parsed_only_with_schema(self):
        llm = MockLLMProvider(['{"k": 1}', '{"k": 1}'])
        assert (await llm.invoke("a")).structured is None
        assert (await llm.invoke("a", schema={})).structured == {"k": 1}

    @pytest.mark.asyncio
    async def test_exhausted_script(self):
        llm = MockLLMProvider(["only"])
        await llm.invoke("a")
        with pytest.raises(CapabilityError, match="No scripted response left"):
            await llm.invoke("b")
        assert llm.call_count == 2

    @pytest.mark.asyncio
    async def test_default_and_exceptions(self):
        llm = MockLLMProvider([CapabilityError("down", provider="mock")], default="fallback")
        with pytest.raises(CapabilityError, match="down"):
            await llm.invoke("a")
        assert (await llm.invoke("b")).text == "fallback"

    @pytest.mark.asyncio
    async def test_responder(self):
        llm = MockLLMProvider(responder=lambda prompt, **kwargs: prompt.upper())
        assert (await llm.invoke("shout")).text == "SHOUT"
