from typing import Any, AsyncIterator

from openai import AsyncOpenAI

from agentwire.cancellation import CancellationSignal
from agentwire.interface import MISSING, is_present
from agentwire.tools.interface import ToolSpec

from .models import (
    LLMAssistantMessage,
    LLMMessage,
    LLMProviderBase,
    LLMRequest,
    LLMResponseFormat,
    LLMToolUseMessage,
    RawChunk,
)
from .openai_chat import OpenAIChatNormalizer
from .openai_responses import OpenAIResponsesNormalizer


class _OpenAIBase(LLMProviderBase):
    def __init__(self, client: AsyncOpenAI, *, default_model: str):
        self._client = client
        self._default_model = default_model

    @property
    def default_model(self) -> str:
        return self._default_model

    def _model_name(self, request: LLMRequest) -> str:
        return request.get("metadata", {}).get("model", self._default_model)


class OpenAIChatModel(_OpenAIBase):
    """Streams `chat.completions` chunks from any OpenAI-compatible endpoint."""

    def new_normalizer(self) -> OpenAIChatNormalizer:
        return OpenAIChatNormalizer()

    def _format_messages(self, messages: list[LLMMessage]) -> list[dict[str, Any]]:
        formatted: list[dict[str, Any]] = []
        for message in messages:
            if isinstance(message, LLMToolUseMessage):
                formatted.append(
                    {
                        "role": "tool",
                        "tool_call_id": message.call_id,
                        "content": message.content,
                    }
                )
            elif isinstance(message, LLMAssistantMessage) and message.tool_calls:
                formatted.append(
                    {
                        "role": "assistant",
                        "content": message.content or None,
                        "tool_calls": [
                            {
                                "id": tc.call_id,
                                "type": "function",
                                "function": {"name": tc.name, "arguments": tc.arguments},
                            }
                            for tc in message.tool_calls
                        ],
                    }
                )
            else:
                formatted.append({"role": message.role, "content": message.content})
        return formatted

    def _format_tool(self, tool: ToolSpec) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": tool["name"],
                "description": tool["description"],
                "parameters": tool["parameters"],
            },
        }

    def _format_response_format(self, response_format: LLMResponseFormat) -> dict[str, Any] | None:
        match response_format.type:
            case "json_object":
                return {"type": "json_object"}
            case "json_schema":
                return {
                    "type": "json_schema",
                    "json_schema": {"name": "response_schema", "schema": response_format.schema},
                }
            case _:
                return None

    def build_kwargs(self, request: LLMRequest) -> dict[str, Any]:
        """Translate LLMRequest into chat-completions kwargs."""
        kwargs: dict[str, Any] = {
            "model": self._model_name(request),
            "messages": self._format_messages(request["messages"]),
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if is_present(max_tokens := request.get("max_tokens", MISSING)):
            kwargs["max_tokens"] = max_tokens
        if is_present(temperature := request.get("temperature", MISSING)):
            kwargs["temperature"] = temperature
        if is_present(top_p := request.get("top_p", MISSING)):
            kwargs["top_p"] = top_p
        if is_present(response_format := request.get("response_format", MISSING)):
            if fmt := self._format_response_format(response_format):
                kwargs["response_format"] = fmt
        if tools := request.get("tools"):
            kwargs["tools"] = [self._format_tool(tool) for tool in tools]
        if is_present(tool_choice := request.get("tool_choice", MISSING)):
            kwargs["tool_choice"] = tool_choice
        return kwargs

    async def stream(
        self, request: LLMRequest, cancellation: CancellationSignal
    ) -> AsyncIterator[RawChunk]:
        cancellation.raise_if_cancelled()
        stream = await self._client.chat.completions.create(**self.build_kwargs(request))
        try:
            async for chunk in stream:
                yield chunk.model_dump(exclude_none=True)
        finally:
            await stream.close()


class OpenAIResponsesModel(_OpenAIBase):
    """Streams Responses-API events."""

    def new_normalizer(self) -> OpenAIResponsesNormalizer:
        return OpenAIResponsesNormalizer()

    def _format_messages(self, messages: list[LLMMessage]) -> list[dict[str, Any]]:
        """Project internal chat messages into Responses API input items."""
        formatted: list[dict[str, Any]] = []
        for message in messages:
            if isinstance(message, LLMToolUseMessage):
                formatted.append(
                    {
                        "type": "function_call_output",
                        "call_id": message.call_id,
                        "output": message.content,
                    }
                )
            elif isinstance(message, LLMAssistantMessage):
                if message.content:
                    formatted.append({"role": message.role, "content": message.content})
                for tc in message.tool_calls:
                    formatted.append(tc.asdict())
            else:
                formatted.append({"role": message.role, "content": message.content})
        return formatted

    def _format_tool(self, tool: ToolSpec) -> dict[str, Any]:
        return {
            "type": "function",
            "name": tool["name"],
            "description": tool["description"],
            "parameters": tool["parameters"],
            "strict": False,
        }

    def build_kwargs(self, request: LLMRequest) -> dict[str, Any]:
        """Translate LLMRequest into Responses kwargs."""
        model_name = self._model_name(request)
        kwargs: dict[str, Any] = {
            "model": model_name,
            "input": self._format_messages(request["messages"]),
            "stream": True,
        }
        if is_present(max_tokens := request.get("max_tokens", MISSING)):
            kwargs["max_output_tokens"] = max_tokens
        if is_present(temperature := request.get("temperature", MISSING)):
            # reasoning models reject sampling temperature
            if not model_name.startswith("gpt-5"):
                kwargs["temperature"] = temperature
        if is_present(top_p := request.get("top_p", MISSING)):
            kwargs["top_p"] = top_p
        if is_present(response_format := request.get("response_format", MISSING)):
            match response_format.type:
                case "json_object":
                    kwargs["text"] = {"format": {"type": "json_object"}}
                case "json_schema":
                    kwargs["text"] = {
                        "format": {
                            "type": "json_schema",
                            "schema": response_format.schema,
                            "name": "response_schema",
                        }
                    }
                case _:
                    pass
        if tools := request.get("tools"):
            kwargs["tools"] = [self._format_tool(tool) for tool in tools]
        if is_present(tool_choice := request.get("tool_choice", MISSING)):
            kwargs["tool_choice"] = tool_choice
        return kwargs

    async def stream(
        self, request: LLMRequest, cancellation: CancellationSignal
    ) -> AsyncIterator[RawChunk]:
        cancellation.raise_if_cancelled()
        stream = await self._client.responses.create(**self.build_kwargs(request))
        try:
            async for event in stream:
                yield event.model_dump(exclude_none=True)
        finally:
            await stream.close()
