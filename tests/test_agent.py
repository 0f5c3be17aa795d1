import asyncio
import time
from typing import Any, AsyncIterator

import pytest
from msgspec import DecodeError

from agentwire.agent import STOP, Agent, AgentConfig, Observers
from agentwire.cancellation import CancellationSignal
from agentwire.errors import AgentWireConfigurationError, LLMProviderError
from agentwire.events import StepFinish, StreamError, TextDelta, ToolCallEnd, ToolResult
from agentwire.llm.models import (
    LLMAssistantMessage,
    LLMProviderBase,
    LLMRequest,
    LLMToolUseMessage,
    LLMUsage,
    RawChunk,
)
from agentwire.llm.openai_chat import OpenAIChatNormalizer
from agentwire.llm.service import LLMService
from agentwire.tools import Annotated, spec, tool

type Script = list[RawChunk] | Exception


def chunk(finish_reason: str | None = None, **delta: Any) -> dict[str, Any]:
    return {"choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}]}


def usage_chunk(prompt: int, completion: int) -> dict[str, Any]:
    return {
        "choices": [],
        "usage": {
            "prompt_tokens": prompt,
            "completion_tokens": completion,
            "total_tokens": prompt + completion,
        },
    }


def text_script(text: str, *, usage: tuple[int, int] | None = None) -> list[RawChunk]:
    script: list[RawChunk] = [chunk(content=text), chunk(finish_reason="stop")]
    if usage is not None:
        script.append(usage_chunk(*usage))
    return script


def tool_script(*calls: tuple[str, str, str]) -> list[RawChunk]:
    return [
        chunk(
            tool_calls=[
                {"index": idx, "id": call_id, "function": {"name": name, "arguments": arguments}}
                for idx, (call_id, name, arguments) in enumerate(calls)
            ]
        ),
        chunk(finish_reason="tool_calls"),
    ]


class ScriptedModel(LLMProviderBase):
    """Replays one chat-completions script per model call."""

    def __init__(self, *scripts: Script, hang_after: bool = False):
        self._scripts = list(scripts)
        self.hang_after = hang_after
        self.requests: list[LLMRequest] = []
        self.closed = 0

    @property
    def default_model(self) -> str:
        return "scripted-model"

    def new_normalizer(self) -> OpenAIChatNormalizer:
        return OpenAIChatNormalizer()

    async def stream(
        self, request: LLMRequest, cancellation: CancellationSignal
    ) -> AsyncIterator[RawChunk]:
        if not self._scripts:
            raise AssertionError("ScriptedModel has no remaining scripts")
        self.requests.append(request)
        script = self._scripts.pop(0)
        try:
            if isinstance(script, Exception):
                raise script
            for raw in script:
                yield raw
            if self.hang_after:
                await asyncio.Event().wait()
        finally:
            self.closed += 1


def lookup_order(order_id: Annotated[str, spec(description="Order identifier")]) -> str:
    """Look up an order."""
    return f"order:{order_id}"


def broken(order_id: Annotated[str, spec(description="Order identifier")]) -> str:
    raise RuntimeError("database unavailable")


async def slow_lookup(order_id: Annotated[str, spec(description="Order identifier")]) -> str:
    await asyncio.sleep(0.05)
    return "slow"


async def fast_lookup(order_id: Annotated[str, spec(description="Order identifier")]) -> str:
    return "fast"


def make_agent(model: ScriptedModel, /, **config: Any) -> Agent:
    return Agent(LLMService(model), AgentConfig(**config))


@pytest.mark.anyio
async def test_run_without_tool_calls_finishes_after_one_step() -> None:
    model = ScriptedModel(text_script("Hello!", usage=(5, 2)))
    agent = make_agent(model, system_prompt="Be brief.")

    result = await agent.run("hi")

    assert result.terminal_reason == "finished"
    assert result.error is None
    assert result.final_text == "Hello!"
    assert [m.role for m in result.conversation] == ["system", "user", "assistant"]
    assert result.conversation[-1].content == "Hello!"
    assert result.usage == LLMUsage(input_tokens=5, output_tokens=2, total_tokens=7)
    assert len(result.steps) == 1
    assert result.steps[0].terminal_reason == "finish"
    assert result.steps[0].finish_reason == "stop"


@pytest.mark.anyio
async def test_tool_call_results_feed_the_next_step() -> None:
    model = ScriptedModel(
        tool_script(("call-1", "lookup_order", '{"order_id": "ORD-1"}')),
        text_script("Your order is ORD-1."),
    )
    agent = make_agent(model, tools=[tool(lookup_order)])

    result = await agent.run("where is my order?")

    assert result.terminal_reason == "finished"
    assert len(model.requests) == 2
    assert [t["name"] for t in model.requests[0]["tools"]] == ["lookup_order"]
    assert model.requests[0]["metadata"]["model"] == "scripted-model"

    second_messages = model.requests[1]["messages"]
    assistant, tool_message = second_messages[-2], second_messages[-1]
    assert isinstance(assistant, LLMAssistantMessage)
    assert [tc.call_id for tc in assistant.tool_calls] == ["call-1"]
    assert isinstance(tool_message, LLMToolUseMessage)
    assert tool_message.call_id == "call-1"
    assert tool_message.content == "order:ORD-1"

    first_step = result.steps[0]
    assert first_step.terminal_reason == "tool-calls-pending"
    assert first_step.tool_results[0].output == "order:ORD-1"
    assert result.final_text == "Your order is ORD-1."


@pytest.mark.anyio
async def test_max_steps_reached_after_single_model_call() -> None:
    model = ScriptedModel(tool_script(("call-1", "lookup_order", '{"order_id": "A"}')))
    agent = make_agent(model, max_steps=1, tools=[tool(lookup_order)])

    result = await agent.run("go")

    assert result.terminal_reason == "max-steps"
    assert result.error is None
    assert len(model.requests) == 1
    assert isinstance(result.conversation[-1], LLMToolUseMessage)


@pytest.mark.anyio
async def test_tool_errors_are_reported_to_the_model_and_run_continues() -> None:
    model = ScriptedModel(
        tool_script(
            ("call-1", "broken", '{"order_id": "A"}'),
            ("call-2", "missing_tool", "{}"),
            ("call-3", "lookup_order", '{"wrong": 1}'),
        ),
        text_script("Sorry, I could not find it."),
    )
    agent = make_agent(model, tools=[tool(broken), tool(lookup_order)])

    result = await agent.run("go")

    assert result.terminal_reason == "finished"
    tool_messages = [m for m in result.conversation if isinstance(m, LLMToolUseMessage)]
    assert [m.call_id for m in tool_messages] == ["call-1", "call-2", "call-3"]
    assert all(m.is_error for m in tool_messages)
    assert tool_messages[0].content == "database unavailable"
    assert [r.error_kind for r in result.steps[0].tool_results] == [
        "tool-error",
        "unknown-tool",
        "invalid-arguments",
    ]


@pytest.mark.anyio
async def test_tool_results_are_delivered_in_completion_order() -> None:
    delivered: list[str] = []
    model = ScriptedModel(
        tool_script(
            ("call-slow", "slow_lookup", '{"order_id": "A"}'),
            ("call-fast", "fast_lookup", '{"order_id": "B"}'),
        ),
        text_script("done"),
    )
    agent = make_agent(
        model,
        tools=[tool(slow_lookup), tool(fast_lookup)],
        observers=Observers(on_tool_result=lambda e: delivered.append(e.output)),
    )

    result = await agent.run("go")

    assert delivered == ["fast", "slow"]
    assert [r.call.call_id for r in result.steps[0].tool_results] == [
        "call-slow",
        "call-fast",
    ]


def blocking_lookup(order_id: Annotated[str, spec(description="Order identifier")]) -> str:
    time.sleep(0.3)
    return f"order:{order_id}"


@pytest.mark.anyio
async def test_sync_tools_in_one_step_run_concurrently() -> None:
    model = ScriptedModel(
        tool_script(
            ("call-1", "blocking_lookup", '{"order_id": "A"}'),
            ("call-2", "blocking_lookup", '{"order_id": "B"}'),
        ),
        text_script("done"),
    )
    agent = make_agent(model, tools=[tool(blocking_lookup)])

    start = time.perf_counter()
    result = await agent.run("go")
    elapsed = time.perf_counter() - start

    assert result.terminal_reason == "finished"
    assert [r.output for r in result.steps[0].tool_results] == ["order:A", "order:B"]
    assert elapsed < 0.5


@pytest.mark.anyio
async def test_deadline_ends_run_while_sync_tool_blocks() -> None:
    model = ScriptedModel(
        tool_script(("call-1", "blocking_lookup", '{"order_id": "A"}')),
        text_script("never requested"),
    )
    agent = make_agent(
        model,
        tools=[tool(blocking_lookup)],
        cancellation=CancellationSignal.with_timeout(0.1),
    )

    start = time.perf_counter()
    result = await agent.run("go")
    elapsed = time.perf_counter() - start

    assert result.terminal_reason == "cancelled"
    assert len(model.requests) == 1
    assert elapsed < 0.25


@pytest.mark.anyio
async def test_observers_receive_events_in_arrival_order() -> None:
    seen: list[str] = []

    async def on_text(event: TextDelta) -> None:
        seen.append(f"text:{event.delta}")

    def on_step_finish(event: StepFinish) -> None:
        seen.append(f"step:{event.step_index}:{event.reason}")

    model = ScriptedModel(
        [chunk(content="a"), chunk(content="b"), chunk(finish_reason="stop")]
    )
    agent = make_agent(
        model,
        observers=Observers(
            on_text_delta=on_text,
            on_step_finish=on_step_finish,
            on_finish=lambda e: seen.append(f"finish:{e.finish_reason}"),
        ),
    )

    await agent.run("hi")

    assert seen == ["text:a", "text:b", "finish:stop", "step:0:finish"]


@pytest.mark.anyio
async def test_observer_stop_ends_run_as_stopped() -> None:
    model = ScriptedModel(
        [chunk(content="first"), chunk(content=" second"), chunk(finish_reason="stop")]
    )
    agent = make_agent(model, observers=Observers(on_text_delta=lambda e: STOP))

    result = await agent.run("hi")

    assert result.terminal_reason == "stopped"
    assert result.final_text == "first"
    assert result.conversation[-1].content == "first"
    assert model.closed == 1


@pytest.mark.anyio
async def test_stop_after_tool_call_still_completes_dispatched_tools() -> None:
    delivered: list[ToolResult] = []

    def on_call_end(event: ToolCallEnd):
        return STOP

    model = ScriptedModel(tool_script(("call-1", "lookup_order", '{"order_id": "Z"}')))
    agent = make_agent(
        model,
        tools=[tool(lookup_order)],
        observers=Observers(on_tool_call_end=on_call_end, on_tool_result=delivered.append),
    )

    result = await agent.run("go")

    assert result.terminal_reason == "stopped"
    assert delivered == []
    assert result.steps[0].tool_results[0].output == "order:Z"
    assert isinstance(result.conversation[-1], LLMToolUseMessage)
    assert len(model.requests) == 1


@pytest.mark.anyio
async def test_cancellation_while_streaming_discards_the_step() -> None:
    cancellation = CancellationSignal()
    model = ScriptedModel([chunk(content="partial")], hang_after=True)
    agent = make_agent(
        model,
        cancellation=cancellation,
        observers=Observers(on_text_delta=lambda e: cancellation.cancel("user abort")),
    )

    result = await asyncio.wait_for(agent.run("hi"), timeout=2)

    assert result.terminal_reason == "cancelled"
    assert result.error is None
    assert result.steps == []
    assert [m.role for m in result.conversation] == ["user"]
    assert model.closed == 1


@pytest.mark.anyio
async def test_cancellation_during_tool_execution_cancels_the_run() -> None:
    cancellation = CancellationSignal()

    async def wait_forever(
        order_id: Annotated[str, spec(description="Order identifier")],
    ) -> str:
        await asyncio.Event().wait()
        return "unreachable"

    model = ScriptedModel(
        tool_script(("call-1", "wait_forever", '{"order_id": "A"}')),
        text_script("never requested"),
    )
    agent = make_agent(
        model,
        tools=[tool(wait_forever)],
        cancellation=cancellation,
        observers=Observers(
            on_finish=lambda e: asyncio.get_running_loop().call_later(
                0.01, cancellation.cancel
            )
        ),
    )

    result = await asyncio.wait_for(agent.run("go"), timeout=2)

    assert result.terminal_reason == "cancelled"
    assert result.steps == []
    assert len(model.requests) == 1


@pytest.mark.anyio
async def test_already_cancelled_signal_skips_the_model_call() -> None:
    cancellation = CancellationSignal()
    cancellation.cancel()
    model = ScriptedModel(text_script("unused"))
    agent = make_agent(model, cancellation=cancellation)

    result = await agent.run("hi")

    assert result.terminal_reason == "cancelled"
    assert model.requests == []


@pytest.mark.anyio
async def test_model_failure_keeps_prior_steps() -> None:
    model = ScriptedModel(
        tool_script(("call-1", "lookup_order", '{"order_id": "A"}')),
        ConnectionError("connection reset"),
    )
    agent = make_agent(model, tools=[tool(lookup_order)])

    result = await agent.run("go")

    assert result.terminal_reason == "errored"
    assert isinstance(result.error, LLMProviderError)
    assert "connection reset" in str(result.error)
    assert len(result.steps) == 2
    assert result.steps[-1].terminal_reason == "error"
    assert [m.role for m in result.conversation] == ["user", "assistant", "tool"]


@pytest.mark.anyio
async def test_stream_error_event_ends_run_errored() -> None:
    errors: list[StreamError] = []
    model = ScriptedModel([chunk(content="par"), b"{broken"])
    agent = make_agent(model, observers=Observers(on_error=errors.append))

    result = await agent.run("hi")

    assert result.terminal_reason == "errored"
    assert isinstance(result.error, DecodeError)
    assert len(errors) == 1
    assert [m.role for m in result.conversation] == ["user"]


@pytest.mark.anyio
async def test_stream_reports_only_the_outcome() -> None:
    model = ScriptedModel(text_script("ok"))
    agent = make_agent(model)

    outcome = await agent.stream("hi")

    assert outcome.terminal_reason == "finished"
    assert outcome.error is None


@pytest.mark.anyio
async def test_model_override_is_sent_with_each_request() -> None:
    model = ScriptedModel(text_script("ok"))
    agent = make_agent(model, model="gpt-4o-mini")

    await agent.run("hi")

    assert model.requests[0]["metadata"]["model"] == "gpt-4o-mini"


def test_config_rejects_non_positive_max_steps() -> None:
    with pytest.raises(AgentWireConfigurationError, match="max_steps"):
        AgentConfig(max_steps=0)


def test_config_rejects_duplicate_tool_names() -> None:
    with pytest.raises(AgentWireConfigurationError, match="Duplicate tool name"):
        AgentConfig(tools=[tool(lookup_order), tool(lookup_order)])
