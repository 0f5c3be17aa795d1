from time import perf_counter
from types import MappingProxyType
from typing import Any, Callable, Mapping, Sequence

from ididi import Graph
from opentelemetry import trace
from opentelemetry.context import Context
from opentelemetry.trace import SpanKind

from agentwire.cancellation import CancellationSignal
from agentwire.errors import (
    AgentWireConfigurationError,
    NoObjectGeneratedError,
    RunCancelledError,
    ToolExecutionFailure,
)
from agentwire.events import ToolCallEnd, ToolErrorKind, ToolResult
from agentwire.structured import parse_and_validate
from agentwire.tools import ITool, Tool, ToolSpec


class ToolDispatcher:
    """Validates tool-call arguments and invokes the matching tool.

    Every outcome, including unknown tools, bad arguments, tool exceptions
    and cancellation, comes back as a `ToolResult`; nothing propagates.
    """

    def __init__(
        self,
        tools: Sequence[ITool],
        graph: Graph | None = None,
        tracer: trace.Tracer | None = None,
    ):
        registry: dict[str, ITool] = {}
        for tool in tools:
            if tool.name in registry:
                raise AgentWireConfigurationError(f"Duplicate tool name {tool.name!r}")
            registry[tool.name] = tool
        self._tools = MappingProxyType(registry)
        self._graph = graph
        self._tracer = tracer or trace.get_tracer("agentwire.dispatcher")
        self._tool_specs = [tool.tool_spec for tool in tools]

        if graph is not None:
            for tool in tools:
                if isinstance(tool, Tool) and tool.signature.dep_nodes:
                    graph.add_nodes(*tool.signature.dep_nodes.values())

    @property
    def tools(self) -> Mapping[str, ITool]:
        return self._tools

    @property
    def tool_specs(self) -> list[ToolSpec]:
        return self._tool_specs

    def _failed(
        self, call: ToolCallEnd, error_kind: ToolErrorKind, output: str
    ) -> ToolResult:
        return ToolResult(
            block_id=call.block_id,
            tool_name=call.tool_name,
            output=output,
            is_error=True,
            error_kind=error_kind,
        )

    async def dispatch(
        self,
        call: ToolCallEnd,
        cancellation: CancellationSignal,
        trace_ctx: Context | None = None,
    ) -> ToolResult:
        tool = self._tools.get(call.tool_name)
        if tool is None:
            return self._failed(
                call, "unknown-tool", f"Unknown tool {call.tool_name!r}"
            )

        try:
            arguments = parse_and_validate(call.arguments, tool.input_schema)
        except NoObjectGeneratedError as exc:
            return self._failed(
                call,
                "invalid-arguments",
                f"Invalid arguments for tool {call.tool_name!r}: {exc}",
            )

        try:
            output = await self.execute(
                tool,
                arguments,
                call_id=call.block_id,
                raw_arguments=call.arguments,
                cancellation=cancellation,
                trace_ctx=trace_ctx,
            )
        except RunCancelledError as exc:
            return self._failed(call, "cancelled", f"Tool call cancelled: {exc}")
        except ToolExecutionFailure as exc:
            return self._failed(call, "tool-error", str(exc))

        return ToolResult(
            block_id=call.block_id, tool_name=call.tool_name, output=output
        )

    async def _invoke(
        self, tool: ITool, arguments: Any, call_id: str, cancellation: CancellationSignal
    ) -> str:
        if isinstance(tool, Tool):
            return await tool.invoke(arguments, call_id, cancellation, graph=self._graph)
        result = tool.invoke(arguments, call_id, cancellation)
        return result if isinstance(result, str) else await result

    async def execute(
        self,
        tool: ITool,
        arguments: Any,
        *,
        call_id: str,
        raw_arguments: str,
        cancellation: CancellationSignal,
        trace_ctx: Context | None = None,
    ) -> str:
        """Invoke `tool`, raced against the cancellation signal.

        Raises ToolExecutionFailure when the tool raises and RunCancelledError
        when the signal fires first.
        """
        with self._tracer.start_as_current_span(
            f"tool.{tool.name}",
            kind=SpanKind.INTERNAL,
            record_exception=True,
            set_status_on_exception=True,
            context=trace_ctx,
            attributes={
                "tool.call_id": call_id,
                "tool.arguments": raw_arguments,
            },
        ):
            try:
                return await cancellation.guard(
                    self._invoke(tool, arguments, call_id, cancellation)
                )
            except RunCancelledError:
                raise
            except Exception as exc:
                raise ToolExecutionFailure(
                    tool_name=tool.name, call_id=call_id, error=exc
                ) from exc


class ILogger:
    def info(self, msg: str, /, **kwargs: Any) -> None: ...

    def success(self, msg: str, /, **kwargs: Any) -> None: ...

    def exception(self, msg: str, /, **kwargs: Any) -> None: ...


type ITimer = Callable[[], float]


class LoggingToolDispatcher(ToolDispatcher):
    def __init__(
        self,
        tools: Sequence[ITool],
        logger: ILogger,
        timer: ITimer = perf_counter,
        graph: Graph | None = None,
        tracer: trace.Tracer | None = None,
    ) -> None:
        super().__init__(tools, graph=graph, tracer=tracer)
        self.logger = logger
        self.timer = timer

    async def execute(
        self,
        tool: ITool,
        arguments: Any,
        *,
        call_id: str,
        raw_arguments: str,
        cancellation: CancellationSignal,
        trace_ctx: Context | None = None,
    ) -> str:
        self.logger.info(
            f"Tool {tool.name} starting (call_id={call_id}) with {raw_arguments}"
        )
        start = self.timer()
        try:
            result = await super().execute(
                tool,
                arguments,
                call_id=call_id,
                raw_arguments=raw_arguments,
                cancellation=cancellation,
                trace_ctx=trace_ctx,
            )
        except RunCancelledError:
            duration = self.timer() - start
            self.logger.info(f"Tool {tool.name} cancelled after {duration:.2f}s")
            raise
        except Exception:
            duration = self.timer() - start
            self.logger.exception(f"Tool {tool.name} failed after {duration:.2f}s")
            raise
        duration = self.timer() - start
        self.logger.success(
            f"Tool {tool.name} finished in {duration:.2f}s, result: {result}"
        )
        return result
