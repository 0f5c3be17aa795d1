import asyncio
from inspect import isawaitable, iscoroutinefunction, signature
from typing import Any, Awaitable, Callable, TypedDict, Unpack, overload

from ididi import Graph
from msgspec import Struct, convert
from msgspec.json import encode as msg_encode
from msgspec.structs import asdict as msg_asdict

from agentwire.cancellation import CancellationSignal
from agentwire.errors import AgentWireConfigurationError
from agentwire.interface import MISSING, Maybe, is_present

from .interface import ToolSpec
from .signature import ToolSignature


def encode_output(value: Any) -> str:
    """Tool output as text; non-string results are JSON encoded."""
    if isinstance(value, str):
        return value
    return msg_encode(value).decode("utf-8")


class IToolMeta(TypedDict, total=False):
    name: str
    """
    Name exposed to the model, defaults to the function name.
    """
    description: str
    """
    Human-readable description of the tool.
    """


class ToolMeta(Struct):
    "Every meta field should be optional."

    name: str = ""
    description: str = ""


class Tool[**P, R]:
    """Tool built from an annotated python function.

    Parameters annotated with `spec(...)` form the input schema; parameters
    marked with `ididi.use(...)` are resolved from a dependency graph at
    invocation time.
    """

    def __init__(
        self,
        name: str,
        signature: ToolSignature,
        func: Callable[P, R],
        metadata: ToolMeta,
    ):
        self.name = name
        self.signature = signature
        self.func = func
        self._meta = metadata
        self._params_struct = signature.build_struct()
        self._is_async = iscoroutinefunction(func)
        self._input_schema: dict[str, Any] | None = None

    @property
    def metadata(self) -> ToolMeta:
        return self._meta

    @property
    def description(self) -> str:
        return self._meta.description

    @property
    def is_async(self) -> bool:
        """Whether the tool function is asynchronous."""
        return self._is_async

    @property
    def input_schema(self) -> dict[str, Any]:
        if self._input_schema is None:
            self._input_schema = self.signature.generate_params_schema()
        return self._input_schema

    @property
    def tool_spec(self) -> ToolSpec:
        return ToolSpec(
            type="function",
            name=self.name,
            description=self.description,
            parameters=self.input_schema,
        )

    def convert_params(self, arguments: Any) -> dict[str, Any]:
        """Typed keyword arguments for the wrapped function."""
        payload = convert(arguments or {}, self._params_struct, strict=False)
        return msg_asdict(payload)

    def encode_return(self, value: R) -> str:
        return encode_output(value)

    def __call__(self, *args: P.args, **kwds: P.kwargs) -> R:
        """Invoke the wrapped tool function directly."""
        return self.func(*args, **kwds)

    async def invoke(
        self,
        arguments: Any,
        call_id: str,
        cancellation: CancellationSignal,
        *,
        graph: Graph | None = None,
    ) -> str:
        params = self.convert_params(arguments)
        dep_params: dict[str, Any] = {}
        if self.signature.dep_nodes:
            if graph is None:
                raise AgentWireConfigurationError(
                    f"Tool {self.name!r} has dependencies but no graph was provided"
                )
            for dname, dep in self.signature.dep_nodes.items():
                dep_params[dname] = await graph.aresolve(dep, **params)

        # sync tools run on a worker thread
        if self._is_async:
            result: Any = await self.func(**params, **dep_params)  # type: ignore[call-arg]
        else:
            result = await asyncio.to_thread(self.func, **params, **dep_params)  # type: ignore[call-arg]
        return self.encode_return(result)

    @classmethod
    def from_func(
        cls, func: Callable[P, R], meta: Maybe[ToolMeta] = MISSING
    ) -> "Tool[P, R]":
        """Construct a Tool from a callable using its annotated signature."""
        tool_signature = ToolSignature.from_signature(signature(func))

        if not is_present(meta):
            meta = ToolMeta()
        if meta.description == "":
            meta.description = func.__doc__ or ""

        return cls(
            name=meta.name or func.__name__,
            signature=tool_signature,
            func=func,
            metadata=meta,
        )


@overload
def tool[**P, R](func: Callable[P, R]) -> Tool[P, R]: ...


@overload
def tool[**P, R](
    **tool_meta: Unpack[IToolMeta],
) -> Callable[[Callable[P, R]], Tool[P, R]]: ...


def tool[**P, R](
    func: Maybe[Callable[P, R]] = MISSING,
    **tool_meta: Unpack[IToolMeta],
) -> Tool[P, R] | Callable[[Callable[P, R]], Tool[P, R]]:
    if is_present(func):  # without any config
        return Tool[P, R].from_func(func=func)

    def wrapper(f: Callable[P, R]) -> Tool[P, R]:
        return Tool[P, R].from_func(func=f, meta=ToolMeta(**tool_meta))

    return wrapper


type ToolHandler = Callable[[Any, str, CancellationSignal], Any | Awaitable[Any]]


class FunctionTool:
    """Tool registered with an explicit name, description and input schema.

    `handler(arguments, call_id, cancellation)` receives the validated JSON
    value as-is; its result goes through the same encoding as `Tool`.
    """

    def __init__(
        self,
        name: str,
        input_schema: dict[str, Any],
        handler: ToolHandler,
        *,
        description: str = "",
    ):
        if not name:
            raise AgentWireConfigurationError("Tool name must not be empty")
        self.name = name
        self.description = description
        self.input_schema = input_schema
        self._handler = handler

    @property
    def tool_spec(self) -> ToolSpec:
        return ToolSpec(
            type="function",
            name=self.name,
            description=self.description,
            parameters=self.input_schema,
        )

    async def invoke(
        self, arguments: Any, call_id: str, cancellation: CancellationSignal
    ) -> str:
        if iscoroutinefunction(self._handler):
            result = await self._handler(arguments, call_id, cancellation)
        else:
            result = await asyncio.to_thread(
                self._handler, arguments, call_id, cancellation
            )
        if isawaitable(result):
            result = await result
        return encode_output(result)
