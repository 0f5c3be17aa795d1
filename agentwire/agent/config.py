from enum import Enum
from typing import Any, Awaitable, Callable

from msgspec import Struct, field

from agentwire.cancellation import CancellationSignal
from agentwire.errors import AgentWireConfigurationError
from agentwire.events import (
    EventKind,
    Finish,
    ReasoningDelta,
    ReasoningEnd,
    ReasoningStart,
    StepFinish,
    StreamError,
    StreamEvent,
    TextDelta,
    ToolCallDelta,
    ToolCallEnd,
    ToolCallStart,
    ToolResult,
)
from agentwire.tools import ITool


class ObserverSignal(Enum):
    STOP = "stop"


STOP = ObserverSignal.STOP
"""Returned by an observer to stop consuming the current step."""

type ObserverReturn = ObserverSignal | None
type Observer[E] = Callable[[E], ObserverReturn | Awaitable[ObserverReturn]]


class Observers(Struct, kw_only=True):
    """Per-kind event callbacks; each may be sync or async."""

    on_text_delta: Observer[TextDelta] | None = None
    on_reasoning_start: Observer[ReasoningStart] | None = None
    on_reasoning_delta: Observer[ReasoningDelta] | None = None
    on_reasoning_end: Observer[ReasoningEnd] | None = None
    on_tool_call_start: Observer[ToolCallStart] | None = None
    on_tool_call_delta: Observer[ToolCallDelta] | None = None
    on_tool_call_end: Observer[ToolCallEnd] | None = None
    on_tool_result: Observer[ToolResult] | None = None
    on_step_finish: Observer[StepFinish] | None = None
    on_error: Observer[StreamError] | None = None
    on_finish: Observer[Finish] | None = None

    def for_event(self, event: StreamEvent) -> Observer[Any] | None:
        return getattr(self, _OBSERVER_FIELDS[event.kind])


_OBSERVER_FIELDS: dict[EventKind, str] = {
    "text-delta": "on_text_delta",
    "reasoning-start": "on_reasoning_start",
    "reasoning-delta": "on_reasoning_delta",
    "reasoning-end": "on_reasoning_end",
    "tool-call-start": "on_tool_call_start",
    "tool-call-delta": "on_tool_call_delta",
    "tool-call-end": "on_tool_call_end",
    "tool-result": "on_tool_result",
    "step-finish": "on_step_finish",
    "error": "on_error",
    "finish": "on_finish",
}


class AgentConfig(Struct, kw_only=True):
    max_steps: int = 5
    """Upper bound on model calls per run."""

    system_prompt: str = ""

    tools: list[ITool] = field(default_factory=list)

    observers: Observers = field(default_factory=Observers)

    cancellation: CancellationSignal | None = None
    """Signal shared by the run; a fresh one is created per run when unset."""

    model: str | None = None
    """Model name override, defaults to the provider's default model."""

    def __post_init__(self) -> None:
        if self.max_steps < 1:
            raise AgentWireConfigurationError("max_steps must be at least 1")
        seen: set[str] = set()
        for tool in self.tools:
            if tool.name in seen:
                raise AgentWireConfigurationError(f"Duplicate tool name {tool.name!r}")
            seen.add(tool.name)
