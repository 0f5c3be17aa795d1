"""Messages-API (content block) stream event adapter."""

from typing import Any

from msgspec import Struct
from msgspec.json import encode

from agentwire.errors import StreamProtocolError
from agentwire.events import (
    ReasoningDelta,
    ReasoningEnd,
    ReasoningStart,
    StreamError,
    StreamEvent,
    ToolCallEnd,
)

from .models import FinishReason, LLMUsage
from .normalizer import BaseNormalizer


class AnthropicEvent(Struct, tag_field="type"):
    pass


class MessageUsage(Struct):
    input_tokens: int | None = None
    output_tokens: int | None = None


class MessageBody(Struct):
    id: str = ""
    usage: MessageUsage | None = None


class MessageStart(AnthropicEvent, tag="message_start"):
    message: MessageBody


class ContentBlock(Struct):
    type: str
    id: str | None = None
    name: str | None = None
    text: str | None = None
    input: Any = None
    data: str | None = None


class ContentBlockStart(AnthropicEvent, tag="content_block_start"):
    index: int
    content_block: ContentBlock


class BlockDelta(Struct):
    type: str
    text: str | None = None
    thinking: str | None = None
    signature: str | None = None
    partial_json: str | None = None


class ContentBlockDelta(AnthropicEvent, tag="content_block_delta"):
    index: int
    delta: BlockDelta


class ContentBlockStop(AnthropicEvent, tag="content_block_stop"):
    index: int


class StopDelta(Struct):
    stop_reason: str | None = None


class MessageDelta(AnthropicEvent, tag="message_delta"):
    delta: StopDelta
    usage: MessageUsage | None = None


class MessageStop(AnthropicEvent, tag="message_stop"):
    pass


class Ping(AnthropicEvent, tag="ping"):
    pass


class ErrorBody(Struct):
    type: str = ""
    message: str = ""


class ErrorEvent(AnthropicEvent, tag="error"):
    error: ErrorBody


AnthropicStreamEvent = (
    MessageStart
    | ContentBlockStart
    | ContentBlockDelta
    | ContentBlockStop
    | MessageDelta
    | MessageStop
    | Ping
    | ErrorEvent
)

_KNOWN_TYPES = frozenset(
    {
        "message_start",
        "content_block_start",
        "content_block_delta",
        "content_block_stop",
        "message_delta",
        "message_stop",
        "ping",
        "error",
    }
)

_STOP_REASONS: dict[str, FinishReason] = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "max_tokens": "length",
    "tool_use": "tool-calls",
    "refusal": "content-filter",
}


class AnthropicNormalizer(BaseNormalizer[AnthropicStreamEvent]):
    """Normalizes Messages-API stream events.

    Thinking blocks carry explicit start/stop boundaries, so reasoning
    events follow the wire one to one. Blocks are keyed by content index,
    except tool-use blocks which surface their tool-use id.
    """

    vendor = "anthropic"
    chunk_type = AnthropicStreamEvent
    known_types = _KNOWN_TYPES

    def __init__(self) -> None:
        super().__init__()
        self._index_blocks: dict[int, str] = {}
        self._tool_inputs: dict[str, Any] = {}
        self._input_tokens: int | None = None

    def _block_at(self, index: int) -> str:
        try:
            return self._index_blocks[index]
        except KeyError:
            raise StreamProtocolError(f"content block #{index} was never started") from None

    def _on_start(self, index: int, block: ContentBlock, out: list[StreamEvent]) -> None:
        if index in self._index_blocks:
            raise StreamProtocolError(f"content block #{index} started twice")

        match block.type:
            case "text":
                block_id = str(index)
                self._blocks.open(block_id, "text")
                if block.text:
                    self._text_delta(out, block_id, block.text)
            case "thinking" | "redacted_thinking":
                block_id = str(index)
                self._blocks.open(block_id, "reasoning")
                out.append(ReasoningStart(block_id=block_id))
                if block.type == "redacted_thinking":
                    self._blocks.append(block_id, "reasoning")
                    out.append(
                        ReasoningDelta(
                            block_id=block_id,
                            delta="",
                            metadata={"redacted_data": block.data or ""},
                        )
                    )
            case "tool_use":
                if not block.id or not block.name:
                    raise StreamProtocolError("tool_use block lacks an id or name")
                block_id = block.id
                self._tool_inputs[block_id] = block.input
                self._open_tool_call(out, block_id, block.name)
            case _:
                return
        self._index_blocks[index] = block_id

    def _on_delta(self, index: int, delta: BlockDelta, out: list[StreamEvent]) -> None:
        if delta.type not in ("text_delta", "thinking_delta", "signature_delta", "input_json_delta"):
            return
        block_id = self._block_at(index)
        match delta.type:
            case "text_delta":
                self._text_delta(out, block_id, delta.text or "")
            case "thinking_delta":
                self._blocks.append(block_id, "reasoning")
                out.append(ReasoningDelta(block_id=block_id, delta=delta.thinking or ""))
            case "signature_delta":
                self._blocks.append(block_id, "reasoning")
                out.append(
                    ReasoningDelta(
                        block_id=block_id,
                        delta="",
                        metadata={"signature": delta.signature},
                    )
                )
            case "input_json_delta":
                self._tool_delta(out, block_id, delta.partial_json or "")

    def _on_stop(self, index: int, out: list[StreamEvent]) -> None:
        if index not in self._index_blocks:
            # stop for a block kind this adapter does not surface
            return
        block_id = self._index_blocks[index]
        block = self._blocks.get(block_id)
        match block.kind:
            case "text":
                self._blocks.close(block_id, "text")
            case "reasoning":
                self._blocks.close(block_id, "reasoning")
                out.append(ReasoningEnd(block_id=block_id))
            case "tool-call":
                self._blocks.close(block_id, "tool-call")
                arguments = block.arguments
                initial = self._tool_inputs.get(block_id)
                if not arguments and initial is not None:
                    arguments = encode(initial).decode()
                out.append(
                    ToolCallEnd(
                        block_id=block_id, tool_name=block.tool_name, arguments=arguments
                    )
                )

    def _on_usage(self, usage: MessageUsage | None) -> None:
        if usage is None:
            return
        if usage.input_tokens is not None:
            self._input_tokens = usage.input_tokens
        output_tokens = usage.output_tokens
        total = None
        if self._input_tokens is not None or output_tokens is not None:
            total = (self._input_tokens or 0) + (output_tokens or 0)
        self._usage = LLMUsage(
            input_tokens=self._input_tokens,
            output_tokens=output_tokens,
            total_tokens=total,
        )

    def _handle(self, chunk: AnthropicStreamEvent, out: list[StreamEvent]) -> None:
        match chunk:
            case MessageStart(message=message):
                self._on_usage(message.usage)
            case ContentBlockStart(index=index, content_block=block):
                self._on_start(index, block, out)
            case ContentBlockDelta(index=index, delta=delta):
                self._on_delta(index, delta, out)
            case ContentBlockStop(index=index):
                self._on_stop(index, out)
            case MessageDelta(delta=delta, usage=usage):
                if delta.stop_reason:
                    self._finish_reason = _STOP_REASONS.get(delta.stop_reason, "other")
                self._on_usage(usage)
            case MessageStop():
                self._flush(out)
                self._emit_finish(out)
            case ErrorEvent(error=error):
                out.append(StreamError(message=f"{error.type}: {error.message}"))
            case Ping():
                pass

    def _flush(self, out: list[StreamEvent]) -> None:
        for index, block_id in self._index_blocks.items():
            if self._blocks.status(block_id) != "closed":
                self._on_stop(index, out)
