"""LiteLLM-backed model provider.

Routes to any backend LiteLLM supports (Anthropic, OpenAI, Gemini, local
servers) through ``litellm.acompletion``. Structured output is requested
with a JSON-schema response format; tool calls are executed through a
ToolRegistry until the model returns a final message.
"""

import logging
from typing import Any

import litellm

from flowgate.errors import CapabilityError
from flowgate.llm.provider import LLMProvider, LLMResponse, ToolUse, parse_json_text
from flowgate.runner.tool_registry import ToolRegistry

logger = logging.getLogger(__name__)

# Provider-side failures worth retrying later
_TRANSIENT_ERRORS = (
    litellm.InternalServerError,
    litellm.ServiceUnavailableError,
    litellm.BadGatewayError,
    litellm.APIConnectionError,
)

_PERMANENT_ERRORS = (
    litellm.AuthenticationError,
    litellm.PermissionDeniedError,
    litellm.NotFoundError,
    litellm.BadRequestError,
    litellm.UnprocessableEntityError,
    litellm.APIResponseValidationError,
)


class LiteLLMProvider(LLMProvider):
    """
    Model-call capability over LiteLLM.

    Example:
        provider = LiteLLMProvider(model="anthropic/claude-haiku-4-5-20251001")
        response = await provider.invoke("Summarize: ...", system="Be brief")
    """

    name = "litellm"

    def __init__(
        self,
        model: str,
        api_key: str | None = None,
        api_base: str | None = None,
        temperature: float = 0.2,
        max_tokens: int = 4096,
        tool_registry: ToolRegistry | None = None,
    ):
        self.model = model
        self.api_key = api_key
        self.api_base = api_base
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.tool_registry = tool_registry or ToolRegistry()

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
        messages: list[dict[str, Any]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        try:
            tool_defs = [t.to_openai() for t in self.tool_registry.get_tools(tools or [])]
        except KeyError as e:
            raise CapabilityError(str(e), provider=self.name) from None

        kwargs: dict[str, Any] = {
            "model": model or self.model,
            "max_tokens": max_tokens or self.max_tokens,
            "temperature": self.temperature,
        }
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if tool_defs:
            kwargs["tools"] = tool_defs
        if schema is not None:
            kwargs["response_format"] = {
                "type": "json_schema",
                "json_schema": {"name": "output", "schema": schema},
            }

        trace: list[dict[str, Any]] = []
        input_tokens = output_tokens = 0

        for iteration in range(max_tool_iterations + 1):
            response = await self._complete(messages, kwargs)
            usage = getattr(response, "usage", None)
            if usage is not None:
                input_tokens += getattr(usage, "prompt_tokens", 0) or 0
                output_tokens += getattr(usage, "completion_tokens", 0) or 0

            try:
                choice = response.choices[0]
                message = choice.message
            except (AttributeError, IndexError) as e:
                raise CapabilityError(
                    f"Malformed model response: {e}", provider=self.name
                ) from None

            tool_calls = getattr(message, "tool_calls", None) or []
            if not tool_calls:
                text = message.content or ""
                return LLMResponse(
                    text=text,
                    model=getattr(response, "model", None) or kwargs["model"],
                    structured=parse_json_text(text) if schema is not None else None,
                    tool_trace=trace,
                    input_tokens=input_tokens,
                    output_tokens=output_tokens,
                    stop_reason=getattr(choice, "finish_reason", "") or "",
                )

            if iteration == max_tool_iterations:
                break

            messages.append(
                {
                    "role": "assistant",
                    "content": message.content or "",
                    "tool_calls": [
                        {
                            "id": tc.id,
                            "type": "function",
                            "function": {
                                "name": tc.function.name,
                                "arguments": tc.function.arguments,
                            },
                        }
                        for tc in tool_calls
                    ],
                }
            )
            for tc in tool_calls:
                arguments = parse_json_text(tc.function.arguments or "{}")
                tool_use = ToolUse(
                    id=tc.id,
                    name=tc.function.name,
                    input=arguments if isinstance(arguments, dict) else {},
                )
                result = await self.tool_registry.execute(tool_use)
                trace.append(
                    {
                        "tool": tool_use.name,
                        "input": tool_use.input,
                        "output": result.content,
                        "is_error": result.is_error,
                    }
                )
                messages.append(
                    {"role": "tool", "tool_call_id": tc.id, "content": result.content}
                )
            logger.debug(
                f"Tool round {iteration + 1}: {[tc.function.name for tc in tool_calls]}",
                extra={"attempt": iteration + 1, "provider": self.name},
            )

        raise CapabilityError(
            f"Model did not finish within {max_tool_iterations} tool iterations",
            provider=self.name,
        )

    async def _complete(self, messages: list[dict[str, Any]], kwargs: dict[str, Any]) -> Any:
        try:
            return await litellm.acompletion(messages=messages, **kwargs)
        except litellm.RateLimitError as e:
            raise CapabilityError(
                f"Rate limited: {e}", provider=self.name, retryable=True
            ) from e
        except litellm.Timeout as e:
            raise CapabilityError(
                f"Model call timed out: {e}", provider=self.name, retryable=True
            ) from e
        except _TRANSIENT_ERRORS as e:
            raise CapabilityError(
                f"Model provider unavailable: {e}", provider=self.name, retryable=True
            ) from e
        except _PERMANENT_ERRORS as e:
            raise CapabilityError(f"Model call failed: {e}", provider=self.name) from e
        except litellm.APIError as e:
            retryable = (getattr(e, "status_code", None) or 0) >= 500
            raise CapabilityError(
                f"Model call failed: {e}", provider=self.name, retryable=retryable
            ) from e
