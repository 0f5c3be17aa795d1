"""LLM Service - pairs a model transport with its normalizer."""

from typing import Any, AsyncIterator, Mapping, Unpack

from msgspec.json import encode as json_encode

from agentwire.cancellation import CancellationSignal
from agentwire.errors import AgentWireValidationError, LLMProviderError
from agentwire.events import StreamError, StreamEvent, TextDelta, ToolCallEnd
from agentwire.jsonrepair import recover
from agentwire.structured import (
    ObjectRepair,
    parse_and_validate,
    parse_and_validate_with_repair,
)

from .models import LLMMessage, LLMProviderBase, LLMRequest
from .normalizer import stream_events

SCHEMA_HINT_TEMPLATE = (
    "\n\nReturn Format Advisory:\n"
    "You must respond with ONLY JSON that matches the following JSON Schema.\n"
    "Do not include explanations or surrounding text.\n"
    "JSON Schema:\n{schema}\n"
)


class LLMService:
    """
    Entry point for model calls.

    Responsibilities:
    - Request defaults (model name) and validation
    - Canonical event streaming through the provider's normalizer
    - Structured object generation on top of the event stream

    Does NOT own:
    - Provider routing or transport retries
    - Conversation state across steps
    """

    def __init__(self, provider: LLMProviderBase):
        self._provider = provider

    @property
    def provider(self) -> LLMProviderBase:
        return self._provider

    def _validate_messages(self, request: LLMRequest) -> None:
        messages = request.get("messages")
        if not messages:
            raise AgentWireValidationError("LLM requests require at least one message")
        for message in messages:
            if not isinstance(message, LLMMessage):
                raise TypeError(f"Expected LLMMessage, got {type(message).__name__}")

    def _apply_defaults(self, request: LLMRequest) -> LLMRequest:
        self._validate_messages(request)
        metadata = request.setdefault("metadata", {})
        if "model" not in metadata:
            metadata["model"] = self._provider.default_model
        return request

    async def stream(
        self,
        *,
        cancellation: CancellationSignal | None = None,
        **request: Unpack[LLMRequest],
    ) -> AsyncIterator[StreamEvent]:
        """Canonical events for one model call."""
        request = self._apply_defaults(request)
        cancellation = cancellation or CancellationSignal()
        events = stream_events(self._provider, request, cancellation)
        try:
            async for event in events:
                yield event
        finally:
            await events.aclose()

    def _with_schema_hint(
        self, request: LLMRequest, schema: Mapping[str, Any]
    ) -> LLMRequest:
        hint = LLMMessage(
            role="system",
            content=SCHEMA_HINT_TEMPLATE.format(schema=json_encode(schema).decode()),
        )
        messages = list(request["messages"])
        insert_at = 1 if messages and messages[0].role == "system" else 0
        messages.insert(insert_at, hint)
        return {**request, "messages": messages}

    async def _object_text(
        self,
        request: LLMRequest,
        cancellation: CancellationSignal | None,
    ) -> str:
        text_parts: list[str] = []
        tool_arguments: str | None = None
        async for event in self.stream(cancellation=cancellation, **request):
            match event:
                case TextDelta(delta=delta):
                    text_parts.append(delta)
                case ToolCallEnd(arguments=arguments) if tool_arguments is None:
                    tool_arguments = arguments
                case StreamError(message=message, error=error):
                    raise LLMProviderError(message) from error
                case _:
                    pass
        text = "".join(text_parts)
        if not text.strip() and tool_arguments is not None:
            return tool_arguments
        return text

    async def generate_object(
        self,
        *,
        schema: Mapping[str, Any],
        repair: ObjectRepair | None = None,
        cancellation: CancellationSignal | None = None,
        **request: Unpack[LLMRequest],
    ) -> Any:
        """Ask the model for a JSON value conforming to `schema`.

        The answer is recovered, parsed and validated; when `repair` is given
        it gets exactly one chance to fix a failing answer. Raises
        NoObjectGeneratedError when no valid object comes out.
        """
        request = self._with_schema_hint(self._apply_defaults(request), schema)
        text = await self._object_text(request, cancellation)
        if repair is None:
            return parse_and_validate(text, schema)
        return await parse_and_validate_with_repair(text, schema, repair)

    async def stream_object(
        self,
        *,
        schema: Mapping[str, Any],
        repair: ObjectRepair | None = None,
        cancellation: CancellationSignal | None = None,
        **request: Unpack[LLMRequest],
    ) -> AsyncIterator[Any]:
        """Yield progressively more complete partial objects.

        Partials are not schema-validated; the final accumulated text is.
        When `repair` is given it gets one chance to fix a failing final
        answer, and the repaired object is yielded last. A final answer that
        still fails raises NoObjectGeneratedError.
        """
        request = self._with_schema_hint(self._apply_defaults(request), schema)
        text = ""
        last: Any = None
        has_last = False
        async for event in self.stream(cancellation=cancellation, **request):
            match event:
                case TextDelta(delta=delta):
                    text += delta
                case StreamError(message=message, error=error):
                    raise LLMProviderError(message) from error
                case _:
                    continue
            value, state, _ = recover(text)
            if state not in ("successful", "repaired"):
                continue
            if has_last and value == last:
                continue
            last, has_last = value, True
            yield value

        if repair is None:
            parse_and_validate(text, schema)
            return
        value = await parse_and_validate_with_repair(text, schema, repair)
        if not has_last or value != last:
            yield value
