import asyncio
from inspect import isawaitable
from typing import Literal
from uuid import uuid4

from ididi import Graph
from opentelemetry import trace
from opentelemetry.context import Context
from opentelemetry.trace import SpanKind, set_span_in_context

from agentwire.cancellation import CancellationSignal
from agentwire.errors import LLMProviderError, RunCancelledError
from agentwire.events import (
    Finish,
    ReasoningDelta,
    StepFinish,
    StepTerminalReason,
    StreamError,
    StreamEvent,
    TextDelta,
    ToolCallEnd,
    ToolResult,
)
from agentwire.llm.models import (
    FinishReason,
    LLMAssistantMessage,
    LLMMessage,
    LLMToolCall,
    LLMToolUseMessage,
    LLMUsage,
)
from agentwire.llm.service import LLMService

from .config import STOP, AgentConfig
from .dispatcher import ToolDispatcher
from .models import AgentStep, RunResult, RunTerminalReason, StreamOutcome, ToolExecutionResult

type StepStatus = Literal["completed", "stopped", "cancelled", "errored"]


class _StepOutcome:
    __slots__ = ("status", "step", "error")

    def __init__(
        self,
        status: StepStatus,
        step: AgentStep | None = None,
        error: Exception | None = None,
    ):
        self.status = status
        self.step = step
        self.error = error


class _StepState:
    """Mutable accumulation for the step in flight; frozen into AgentStep at the end."""

    def __init__(self, step_id: str, step_index: int):
        self.step_id = step_id
        self.step_index = step_index
        self.events: list[StreamEvent] = []
        self.text: list[str] = []
        self.reasoning: list[str] = []
        self.tool_calls: list[LLMToolCall] = []
        self.pending: dict[str, asyncio.Task[ToolResult]] = {}
        self.finish_reason: FinishReason = "unknown"
        self.usage: LLMUsage | None = None
        self.stopped = False

    def record(self, event: StreamEvent) -> Exception | None:
        self.events.append(event)
        match event:
            case TextDelta(delta=delta):
                self.text.append(delta)
            case ReasoningDelta(delta=delta):
                self.reasoning.append(delta)
            case Finish(finish_reason=reason, usage=usage):
                self.finish_reason = reason
                self.usage = usage
            case StreamError(message=message, error=error):
                return error or LLMProviderError(message)
            case _:
                pass
        return None

    async def cancel_pending(self) -> None:
        for task in self.pending.values():
            task.cancel()
        if self.pending:
            await asyncio.gather(*self.pending.values(), return_exceptions=True)

    def build(
        self, results: dict[str, ToolResult], terminal_reason: StepTerminalReason
    ) -> AgentStep:
        tool_results = [
            ToolExecutionResult(
                call=call,
                output=results[call.call_id].output,
                is_error=results[call.call_id].is_error,
                error_kind=results[call.call_id].error_kind,
            )
            for call in self.tool_calls
            if call.call_id in results
        ]
        return AgentStep(
            step_id=self.step_id,
            step_index=self.step_index,
            events=list(self.events),
            text="".join(self.text),
            reasoning="".join(self.reasoning),
            tool_calls=list(self.tool_calls),
            tool_results=tool_results,
            finish_reason=self.finish_reason,
            usage=self.usage,
            terminal_reason=terminal_reason,
        )


class Agent:
    """Drives a model through generate / dispatch-tools steps until done."""

    def __init__(
        self,
        llm_service: LLMService,
        config: AgentConfig | None = None,
        *,
        dispatcher: ToolDispatcher | None = None,
        graph: Graph | None = None,
        tracer: trace.Tracer | None = None,
    ):
        self.llm_service = llm_service
        self.config = config or AgentConfig()
        self._dispatcher = dispatcher or ToolDispatcher(
            self.config.tools, graph=graph, tracer=tracer
        )
        self._tracer = tracer or trace.get_tracer("agentwire.agent")

    @property
    def max_steps(self) -> int:
        return self.config.max_steps

    @property
    def dispatcher(self) -> ToolDispatcher:
        return self._dispatcher

    async def _deliver(self, event: StreamEvent) -> bool:
        """Hand `event` to its observer; True when the observer asked to stop."""
        observer = self.config.observers.for_event(event)
        if observer is None:
            return False
        signal = observer(event)
        if isawaitable(signal):
            signal = await signal
        return signal is STOP

    def _initial_conversation(self, prompt: str) -> list[LLMMessage]:
        conversation: list[LLMMessage] = []
        if self.config.system_prompt:
            conversation.append(LLMMessage(role="system", content=self.config.system_prompt))
        conversation.append(LLMMessage(role="user", content=prompt))
        return conversation

    async def _consume_stream(
        self,
        state: _StepState,
        conversation: list[LLMMessage],
        cancellation: CancellationSignal,
        step_context: Context,
    ) -> Exception | None:
        """Consume one model call, dispatching tools as their calls complete."""
        request_meta = {"model": self.config.model} if self.config.model else {}
        stream = self.llm_service.stream(
            cancellation=cancellation,
            messages=list(conversation),
            tools=self._dispatcher.tool_specs,
            metadata=request_meta,
        )
        try:
            async for event in stream:
                if error := state.record(event):
                    await self._deliver(event)
                    return error
                if isinstance(event, ToolCallEnd):
                    state.tool_calls.append(
                        LLMToolCall(
                            name=event.tool_name,
                            arguments=event.arguments,
                            call_id=event.block_id,
                        )
                    )
                    state.pending[event.block_id] = asyncio.create_task(
                        self._dispatcher.dispatch(event, cancellation, step_context)
                    )
                if await self._deliver(event):
                    state.stopped = True
                    return None
        finally:
            await stream.aclose()
        return None

    async def _collect_results(
        self, state: _StepState, cancellation: CancellationSignal
    ) -> dict[str, ToolResult]:
        results: dict[str, ToolResult] = {}
        for next_done in asyncio.as_completed(state.pending.values()):
            result = await next_done
            results[result.block_id] = result
            state.events.append(result)
            if state.stopped or cancellation.cancelled:
                continue
            if await self._deliver(result):
                state.stopped = True
        return results

    async def _step_body(
        self,
        state: _StepState,
        conversation: list[LLMMessage],
        cancellation: CancellationSignal,
        step_context: Context,
    ) -> _StepOutcome:
        error = await self._consume_stream(state, conversation, cancellation, step_context)
        if error is not None:
            return _StepOutcome("errored", error=error)

        results = await self._collect_results(state, cancellation)
        if cancellation.cancelled:
            return _StepOutcome("cancelled")

        reason: StepTerminalReason = "tool-calls-pending" if state.tool_calls else "finish"
        step = state.build(results, reason)
        if state.stopped:
            return _StepOutcome("stopped", step=step)

        finish_event = StepFinish(
            block_id=state.step_id, step_index=state.step_index, reason=reason
        )
        if await self._deliver(finish_event):
            return _StepOutcome("stopped", step=step)
        return _StepOutcome("completed", step=step)

    async def _run_step(
        self,
        step_index: int,
        conversation: list[LLMMessage],
        cancellation: CancellationSignal,
        trace_ctx: Context,
    ) -> _StepOutcome:
        step_id = str(uuid4())
        step_span = self._tracer.start_span(
            "agent.step",
            kind=SpanKind.INTERNAL,
            context=trace_ctx,
            attributes={
                "agent.step_id": step_id,
                "agent.step_index": step_index,
                "agent.max_steps": self.max_steps,
            },
        )
        step_context = set_span_in_context(step_span, trace_ctx)
        state = _StepState(step_id, step_index)

        try:
            try:
                outcome = await self._step_body(
                    state, conversation, cancellation, step_context
                )
            except RunCancelledError:
                outcome = _StepOutcome("cancelled")
            except Exception as exc:
                outcome = _StepOutcome("errored", error=exc)

            if outcome.status in ("cancelled", "errored"):
                await state.cancel_pending()
            if outcome.status == "errored":
                assert outcome.error is not None
                step_span.record_exception(outcome.error)
                outcome.step = state.build({}, "error")

            step_span.set_attribute("agent.step.outcome", outcome.status)
            step_span.set_attribute("agent.step.tool_calls", len(state.tool_calls))
            return outcome
        finally:
            if step_span.is_recording():
                step_span.end()

    def _apply(self, conversation: list[LLMMessage], step: AgentStep) -> None:
        conversation.append(
            LLMAssistantMessage(
                content=step.text,
                reasoning=step.reasoning,
                tool_calls=list(step.tool_calls),
            )
        )
        for result in step.tool_results:
            conversation.append(
                LLMToolUseMessage(
                    name=result.call.name,
                    call_id=result.call.call_id,
                    content=result.output,
                    is_error=result.is_error,
                )
            )

    async def run(self, prompt: str, trace_ctx: Context | None = None) -> RunResult:
        """Run the agent to a terminal reason and return everything it produced."""
        cancellation = self.config.cancellation or CancellationSignal()
        conversation = self._initial_conversation(prompt)
        steps: list[AgentStep] = []
        usage = LLMUsage()

        run_span = self._tracer.start_span(
            "agent.run",
            kind=SpanKind.INTERNAL,
            context=trace_ctx,
            attributes={
                "agent.max_steps": self.max_steps,
                "agent.run.input": prompt,
            },
        )
        run_context = set_span_in_context(run_span, trace_ctx or Context())

        def finish(reason: RunTerminalReason, error: Exception | None = None) -> RunResult:
            run_span.set_attribute("agent.run.terminal_reason", reason)
            if error is not None:
                run_span.record_exception(error)
                run_span.set_attribute("agent.run.output", str(error))
            elif steps:
                run_span.set_attribute("agent.run.output", steps[-1].text)
            return RunResult(
                conversation=list(conversation),
                terminal_reason=reason,
                error=error,
                steps=list(steps),
                usage=usage,
            )

        try:
            for step_index in range(self.max_steps):
                if cancellation.cancelled:
                    return finish("cancelled")

                outcome = await self._run_step(
                    step_index, conversation, cancellation, run_context
                )
                if outcome.step is not None and outcome.step.usage is not None:
                    usage = usage + outcome.step.usage

                match outcome.status:
                    case "cancelled":
                        return finish("cancelled")
                    case "errored":
                        assert outcome.step is not None
                        steps.append(outcome.step)
                        return finish("errored", outcome.error)
                    case _:
                        assert outcome.step is not None
                        steps.append(outcome.step)
                        self._apply(conversation, outcome.step)

                if outcome.status == "stopped":
                    return finish("stopped")
                if not outcome.step.tool_calls:
                    return finish("finished")
            return finish("max-steps")
        finally:
            if run_span.is_recording():
                run_span.end()

    async def stream(self, prompt: str, trace_ctx: Context | None = None) -> StreamOutcome:
        """Run for the side effects on observers; report only how it ended."""
        result = await self.run(prompt, trace_ctx=trace_ctx)
        return StreamOutcome(terminal_reason=result.terminal_reason, error=result.error)
