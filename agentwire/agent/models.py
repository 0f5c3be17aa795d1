from datetime import datetime, timezone
from typing import Literal
from uuid import uuid4

from msgspec import field

from agentwire.events import StepTerminalReason, StreamEvent, ToolErrorKind
from agentwire.interface import Record
from agentwire.llm.models import FinishReason, LLMMessage, LLMToolCall, LLMUsage

RunTerminalReason = Literal["finished", "max-steps", "cancelled", "errored", "stopped"]


def _default_step_id() -> str:
    return str(uuid4())


def _default_timestamp() -> datetime:
    return datetime.now(timezone.utc)


class ToolExecutionResult(Record, kw_only=True):
    """Structured record describing the outcome of a tool invocation."""

    call: LLMToolCall
    """Tool call as emitted by the model."""

    output: str = ""
    """Tool output, or the error description when `is_error` is set."""

    is_error: bool = False

    error_kind: ToolErrorKind | None = None


class AgentStep(Record, kw_only=True):
    """Single model-call-and-consume cycle, including its tool outcomes."""

    step_id: str = field(default_factory=_default_step_id)
    """Stable identifier for this step."""

    step_index: int
    """0-based position of the step within its run."""

    events: list[StreamEvent] = field(default_factory=list)
    """Every canonical event observed during the step, in arrival order."""

    text: str = ""
    """Concatenated answer text."""

    reasoning: str = ""
    """Concatenated reasoning text."""

    tool_calls: list[LLMToolCall] = field(default_factory=list[LLMToolCall])
    """Tool calls issued by the model, in the order their blocks ended."""

    tool_results: list[ToolExecutionResult] = field(
        default_factory=list[ToolExecutionResult]
    )
    """Resolved results, aligned with `tool_calls`."""

    finish_reason: FinishReason = "unknown"

    usage: LLMUsage | None = None

    terminal_reason: StepTerminalReason = "finish"

    timestamp: datetime = field(default_factory=_default_timestamp)
    """UTC timestamp for when the step was recorded."""


class RunResult(Record, kw_only=True):
    """Outcome of one agent run."""

    conversation: list[LLMMessage]
    """Final conversation: system prompt, user prompt and every applied step."""

    terminal_reason: RunTerminalReason

    error: Exception | None = None
    """First fatal error, set only when the run `errored`."""

    steps: list[AgentStep] = field(default_factory=list[AgentStep])

    usage: LLMUsage = field(default_factory=LLMUsage)
    """Token usage summed over every model call of the run."""

    @property
    def final_text(self) -> str:
        return self.steps[-1].text if self.steps else ""


class StreamOutcome(Record, kw_only=True):
    terminal_reason: RunTerminalReason
    error: Exception | None = None
