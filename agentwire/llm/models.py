"""Shared LLM data models and model-call contracts."""

from abc import ABC, abstractmethod
from typing import (
    TYPE_CHECKING,
    Any,
    AsyncIterator,
    Literal,
    Mapping,
    Required,
    TypedDict,
)

from msgspec import field

from agentwire.interface import MessageRole, Record, Struct
from agentwire.tools.interface import ToolSpec

if TYPE_CHECKING:
    from agentwire.cancellation import CancellationSignal

    from .normalizer import StreamNormalizer


type RawChunk = bytes | str | Mapping[str, Any]

FinishReason = Literal[
    "stop",
    "length",
    "tool-calls",
    "content-filter",
    "error",
    "other",
    "unknown",
]


class LLMToolCall(Record, kw_only=True):
    """Normalized representation of an LLM-triggered tool/function call."""

    type: Literal["function_call"] = "function_call"
    """Provider-declared call category."""

    name: str
    """Registered tool name the model wants to invoke."""

    arguments: str
    """Raw JSON payload emitted by the model for the tool invocation."""

    call_id: str
    """Stable identifier used to correlate streaming deltas and tool outputs."""


class LLMMessage(Struct, kw_only=True):
    """Typed chat message that backs `LLMRequest.messages`."""

    role: MessageRole
    """Canonical chat role assigned to this turn."""

    content: str = ""
    """Plain text content of the turn."""


class LLMAssistantMessage(LLMMessage, kw_only=True):
    """Assistant turn generated during a run, including its tool calls."""

    role: Literal["assistant"] = "assistant"

    reasoning: str = ""
    """Concatenated reasoning text the model produced before answering."""

    tool_calls: list[LLMToolCall] = field(default_factory=list[LLMToolCall])
    """Structured tool invocations emitted within this turn."""


class LLMToolUseMessage(LLMMessage, kw_only=True):
    """Tool output relayed back to the model."""

    role: Literal["tool"] = "tool"

    name: str
    """Tool/function label associated with the message."""

    call_id: str
    """Identifier of the `LLMToolCall` whose output is being returned."""

    is_error: bool = False
    """Marks the content as an error description rather than a tool output."""


class LLMUsage(Record):
    """Token accounting for a single completion."""

    input_tokens: int | None = None
    output_tokens: int | None = None
    total_tokens: int | None = None

    def __add__(self, other: "LLMUsage") -> "LLMUsage":
        def _sum(left: int | None, right: int | None) -> int | None:
            if left is None and right is None:
                return None
            return (left or 0) + (right or 0)

        return LLMUsage(
            input_tokens=_sum(self.input_tokens, other.input_tokens),
            output_tokens=_sum(self.output_tokens, other.output_tokens),
            total_tokens=_sum(self.total_tokens, other.total_tokens),
        )


class LLMResponseFormat(Record):
    """Response format hint shared between adapters and providers."""

    type: Literal["json_object", "text", "json_schema"] = "text"
    schema: dict[str, Any] | None = None


class LLMRequestMeta(TypedDict, total=False):
    """Adapter-specific metadata attached to a request."""

    model: str
    """Explicit provider model identifier overriding adapter defaults."""


class LLMRequest(TypedDict, total=False):
    """Unified request bag accepted by all model transports."""

    messages: Required[list[LLMMessage]]
    temperature: float
    top_p: float
    max_tokens: int
    tools: list[ToolSpec]
    tool_choice: Literal["auto", "none", "required"] | str
    response_format: LLMResponseFormat
    metadata: LLMRequestMeta


class LLMProviderBase(ABC):
    """Model collaborator: a transport plus the normalizer for its wire format."""

    @abstractmethod
    def stream(
        self,
        request: LLMRequest,
        cancellation: "CancellationSignal",
    ) -> AsyncIterator[RawChunk]:
        """Issue one model call and lazily yield vendor-native chunks."""
        raise NotImplementedError

    @abstractmethod
    def new_normalizer(self) -> "StreamNormalizer":
        """Fresh normalizer instance for a single response."""
        raise NotImplementedError

    @property
    @abstractmethod
    def default_model(self) -> str:
        """Return the provider's default model identifier."""
        raise NotImplementedError
