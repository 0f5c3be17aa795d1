"""Canonical stream events shared by every vendor adapter."""

from typing import Any, Literal

from msgspec import field

from agentwire.interface import Record
from agentwire.llm.models import FinishReason, LLMUsage

EventKind = Literal[
    "text-delta",
    "reasoning-start",
    "reasoning-delta",
    "reasoning-end",
    "tool-call-start",
    "tool-call-delta",
    "tool-call-end",
    "tool-result",
    "step-finish",
    "error",
    "finish",
]

StepTerminalReason = Literal["finish", "tool-calls-pending", "error"]

ToolErrorKind = Literal["invalid-arguments", "unknown-tool", "tool-error", "cancelled"]


class StreamEventBase(Record, tag_field="type"):
    """Base class shared by all canonical events."""

    @property
    def kind(self) -> EventKind:
        return self.__struct_config__.tag  # type: ignore[return-value]


class BlockEvent(StreamEventBase):
    block_id: str
    """Content-block identifier, stable across a block's start/delta/end."""


class TextDelta(BlockEvent, tag="text-delta"):
    delta: str


class ReasoningStart(BlockEvent, tag="reasoning-start"):
    pass


class ReasoningDelta(BlockEvent, tag="reasoning-delta"):
    delta: str
    metadata: dict[str, Any] = field(default_factory=dict)
    """Vendor extras such as thinking signatures."""


class ReasoningEnd(BlockEvent, tag="reasoning-end"):
    pass


class ToolCallStart(BlockEvent, tag="tool-call-start"):
    tool_name: str


class ToolCallDelta(BlockEvent, tag="tool-call-delta"):
    arguments_delta: str


class ToolCallEnd(BlockEvent, tag="tool-call-end"):
    """Completed tool call; `block_id` doubles as the call identifier."""

    tool_name: str
    arguments: str


class ToolResult(BlockEvent, tag="tool-result"):
    """Outcome of one dispatched tool call; `block_id` is the call identifier."""

    tool_name: str
    output: str
    is_error: bool = False
    error_kind: ToolErrorKind | None = None


class StepFinish(BlockEvent, tag="step-finish"):
    """Emitted by the agent loop once a step is complete; `block_id` is the step id."""

    step_index: int
    reason: StepTerminalReason


class StreamError(StreamEventBase, tag="error"):
    message: str
    error: Exception | None = None
    """Originating exception, kept for callers; never serialized."""


class Finish(StreamEventBase, tag="finish"):
    finish_reason: FinishReason = "unknown"
    usage: LLMUsage | None = None


type StreamEvent = (
    TextDelta
    | ReasoningStart
    | ReasoningDelta
    | ReasoningEnd
    | ToolCallStart
    | ToolCallDelta
    | ToolCallEnd
    | ToolResult
    | StepFinish
    | StreamError
    | Finish
)
