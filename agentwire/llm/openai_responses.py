"""Responses-API stream event adapter."""

from typing import Any

from msgspec import Struct

from agentwire.errors import StreamProtocolError
from agentwire.events import StreamError, StreamEvent, ToolCallEnd

from .models import FinishReason, LLMUsage
from .normalizer import BaseNormalizer, InlineReasoning


class ResponseEvent(Struct, tag_field="type"):
    pass


class OutputItem(Struct):
    type: str
    id: str | None = None
    call_id: str | None = None
    name: str | None = None
    arguments: str | None = None


class OutputItemAdded(ResponseEvent, tag="response.output_item.added"):
    item: OutputItem
    output_index: int = 0


class OutputItemDone(ResponseEvent, tag="response.output_item.done"):
    item: OutputItem
    output_index: int = 0


class OutputTextDelta(ResponseEvent, tag="response.output_text.delta"):
    item_id: str
    delta: str = ""


class ReasoningSummaryDelta(ResponseEvent, tag="response.reasoning_summary_text.delta"):
    item_id: str
    delta: str = ""


class ReasoningTextDelta(ResponseEvent, tag="response.reasoning_text.delta"):
    item_id: str
    delta: str = ""


class FunctionArgumentsDelta(ResponseEvent, tag="response.function_call_arguments.delta"):
    item_id: str
    delta: str = ""


class ResponseUsage(Struct):
    input_tokens: int | None = None
    output_tokens: int | None = None
    total_tokens: int | None = None


class IncompleteDetails(Struct):
    reason: str | None = None


class ResponseErrorBody(Struct):
    message: str = ""
    code: str | None = None


class ResponseBody(Struct):
    status: str | None = None
    usage: ResponseUsage | None = None
    incomplete_details: IncompleteDetails | None = None
    error: ResponseErrorBody | None = None


class ResponseCompleted(ResponseEvent, tag="response.completed"):
    response: ResponseBody


class ResponseIncomplete(ResponseEvent, tag="response.incomplete"):
    response: ResponseBody


class ResponseFailed(ResponseEvent, tag="response.failed"):
    response: ResponseBody


class ErrorEvent(ResponseEvent, tag="error"):
    message: str = ""
    code: str | None = None


ResponseStreamEvent = (
    OutputItemAdded
    | OutputItemDone
    | OutputTextDelta
    | ReasoningSummaryDelta
    | ReasoningTextDelta
    | FunctionArgumentsDelta
    | ResponseCompleted
    | ResponseIncomplete
    | ResponseFailed
    | ErrorEvent
)

_KNOWN_TYPES = frozenset(
    cls.__struct_config__.tag  # type: ignore[attr-defined]
    for cls in (
        OutputItemAdded,
        OutputItemDone,
        OutputTextDelta,
        ReasoningSummaryDelta,
        ReasoningTextDelta,
        FunctionArgumentsDelta,
        ResponseCompleted,
        ResponseIncomplete,
        ResponseFailed,
        ErrorEvent,
    )
)

_INCOMPLETE_REASONS: dict[str, FinishReason] = {
    "max_output_tokens": "length",
    "content_filter": "content-filter",
}


class OpenAIResponsesNormalizer(BaseNormalizer[ResponseStreamEvent]):
    """Normalizes Responses-API server-sent events.

    Function-call blocks are tracked by output item id but surface the
    model's `call_id` as their block id, which is what tool outputs have to
    reference on the next request. Reasoning items have explicit boundaries
    on the wire, but their start is still deferred to the first summary
    token so empty reasoning items never reach consumers.
    """

    vendor = "openai-responses"
    chunk_type = ResponseStreamEvent
    known_types = _KNOWN_TYPES

    def __init__(self) -> None:
        super().__init__()
        self._reasoning = InlineReasoning(self._blocks)
        self._item_blocks: dict[str, str] = {}
        self._saw_tool_call = False

    def _tool_block(self, item_id: str) -> str:
        try:
            return self._item_blocks[item_id]
        except KeyError:
            raise StreamProtocolError(
                f"function call arguments for unknown item {item_id!r}"
            ) from None

    def _on_item_added(self, item: OutputItem, out: list[StreamEvent]) -> None:
        match item.type:
            case "function_call":
                self._reasoning.end(out)
                block_id = item.call_id or item.id
                if not block_id or not item.name:
                    raise StreamProtocolError("function call item lacks an id or name")
                self._item_blocks[block_id] = block_id
                if item.id:
                    self._item_blocks[item.id] = block_id
                self._saw_tool_call = True
                self._open_tool_call(out, block_id, item.name)
                if item.arguments:
                    self._tool_delta(out, block_id, item.arguments)
            case "message":
                self._reasoning.end(out)
            case _:
                pass

    def _on_item_done(self, item: OutputItem, out: list[StreamEvent]) -> None:
        match item.type:
            case "function_call":
                block_id = self._tool_block(item.id or item.call_id or "")
                block = self._blocks.get(block_id)
                if not block.arguments and item.arguments:
                    self._tool_delta(out, block_id, item.arguments)
                self._close_tool_call(block_id, out)
            case "message":
                if item.id and self._blocks.status(item.id) != "absent":
                    self._blocks.close(item.id, "text")
            case "reasoning":
                self._reasoning.end(out)
            case _:
                pass

    def _close_tool_call(self, block_id: str, out: list[StreamEvent]) -> None:
        block = self._blocks.close(block_id, "tool-call")
        out.append(
            ToolCallEnd(
                block_id=block_id, tool_name=block.tool_name, arguments=block.arguments
            )
        )

    def _on_response_done(self, body: ResponseBody, reason: FinishReason) -> None:
        if body.usage is not None:
            self._usage = LLMUsage(
                input_tokens=body.usage.input_tokens,
                output_tokens=body.usage.output_tokens,
                total_tokens=body.usage.total_tokens,
            )
        self._finish_reason = reason

    def _handle(self, chunk: ResponseStreamEvent, out: list[StreamEvent]) -> None:
        match chunk:
            case OutputItemAdded(item=item):
                self._on_item_added(item, out)
            case OutputItemDone(item=item):
                self._on_item_done(item, out)
            case OutputTextDelta(item_id=item_id, delta=delta):
                self._reasoning.end(out)
                self._text_delta(out, item_id, delta)
            case ReasoningSummaryDelta(delta=delta) | ReasoningTextDelta(delta=delta):
                self._reasoning.delta(out, delta)
            case FunctionArgumentsDelta(item_id=item_id, delta=delta):
                self._tool_delta(out, self._tool_block(item_id), delta)
            case ResponseCompleted(response=body):
                self._flush(out)
                reason: FinishReason = "tool-calls" if self._saw_tool_call else "stop"
                self._on_response_done(body, reason)
                self._emit_finish(out)
            case ResponseIncomplete(response=body):
                self._flush(out)
                detail = body.incomplete_details.reason if body.incomplete_details else None
                self._on_response_done(body, _INCOMPLETE_REASONS.get(detail or "", "other"))
                self._emit_finish(out)
            case ResponseFailed(response=body):
                message = body.error.message if body.error else "response failed"
                out.append(StreamError(message=message))
            case ErrorEvent(message=message, code=code):
                out.append(StreamError(message=_error_message(message, code)))

    def _flush(self, out: list[StreamEvent]) -> None:
        self._reasoning.end(out)
        for block_id in self._blocks.open_ids("text"):
            self._blocks.close(block_id, "text")
        self._close_tool_calls(out)


def _error_message(message: str, code: Any) -> str:
    return f"{code}: {message}" if code else message or "stream error"
