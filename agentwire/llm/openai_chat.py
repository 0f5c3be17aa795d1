"""Chat-completions chunk adapter.

Also covers OpenAI-compatible vendors that stream reasoning inline through
`reasoning_content` (DeepSeek, vLLM) or `reasoning` (OpenRouter).
"""

from msgspec import Struct, field

from agentwire.errors import StreamProtocolError
from agentwire.events import StreamEvent

from .models import FinishReason, LLMUsage
from .normalizer import BaseNormalizer, InlineReasoning


class ChatFunctionDelta(Struct):
    name: str | None = None
    arguments: str | None = None


class ChatToolCallDelta(Struct):
    index: int
    id: str | None = None
    type: str | None = None
    function: ChatFunctionDelta | None = None


class ChatDelta(Struct):
    role: str | None = None
    content: str | None = None
    reasoning_content: str | None = None
    reasoning: str | None = None
    tool_calls: list[ChatToolCallDelta] | None = None


class ChatChoice(Struct):
    index: int = 0
    delta: ChatDelta = field(default_factory=ChatDelta)
    finish_reason: str | None = None


class ChatUsage(Struct):
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None


class ChatCompletionChunk(Struct):
    id: str = ""
    choices: list[ChatChoice] = field(default_factory=list)
    usage: ChatUsage | None = None


_FINISH_REASONS: dict[str, FinishReason] = {
    "stop": "stop",
    "length": "length",
    "tool_calls": "tool-calls",
    "function_call": "tool-calls",
    "content_filter": "content-filter",
}


class OpenAIChatNormalizer(BaseNormalizer[ChatCompletionChunk]):
    """Normalizes `chat.completion.chunk` payloads.

    Tool calls are keyed by their `index`; the first delta for an index has
    to carry the call id and function name. Answer text or a finish reason
    closes every open tool call.
    """

    vendor = "openai-chat"
    chunk_type = ChatCompletionChunk

    def __init__(self) -> None:
        super().__init__()
        self._reasoning = InlineReasoning(self._blocks)
        self._tool_indices: dict[int, str] = {}
        self._text_id: str | None = None
        self._text_count = 0

    def _close_text(self) -> None:
        if self._text_id is not None:
            self._blocks.close(self._text_id, "text")
            self._text_id = None

    def _handle_tool_delta(
        self, out: list[StreamEvent], tc: ChatToolCallDelta
    ) -> None:
        function = tc.function or ChatFunctionDelta()
        arguments = function.arguments or ""

        block_id = self._tool_indices.get(tc.index)
        if block_id is None:
            if not tc.id or not function.name:
                raise StreamProtocolError(
                    f"first delta of tool call #{tc.index} lacks an id or function name"
                )
            block_id = tc.id
            self._tool_indices[tc.index] = block_id
            self._open_tool_call(out, block_id, function.name)

        self._tool_delta(out, block_id, arguments)

    def _handle(self, chunk: ChatCompletionChunk, out: list[StreamEvent]) -> None:
        for choice in chunk.choices:
            delta = choice.delta

            if reasoning := (delta.reasoning_content or delta.reasoning):
                self._reasoning.delta(out, reasoning)

            if delta.content:
                self._reasoning.end(out)
                self._close_tool_calls(out)
                if self._text_id is None:
                    self._text_id = f"text-{self._text_count}"
                    self._text_count += 1
                self._text_delta(out, self._text_id, delta.content)

            if delta.tool_calls:
                self._reasoning.end(out)
                self._close_text()
                for tc in delta.tool_calls:
                    self._handle_tool_delta(out, tc)

            if choice.finish_reason is not None:
                self._reasoning.end(out)
                self._close_text()
                self._close_tool_calls(out)
                self._finish_reason = _FINISH_REASONS.get(choice.finish_reason, "other")

        if chunk.usage is not None:
            self._usage = LLMUsage(
                input_tokens=chunk.usage.prompt_tokens,
                output_tokens=chunk.usage.completion_tokens,
                total_tokens=chunk.usage.total_tokens,
            )

    def _flush(self, out: list[StreamEvent]) -> None:
        self._reasoning.end(out)
        self._close_text()
        self._close_tool_calls(out)
