from typing import TYPE_CHECKING, Any, Awaitable, Literal, Protocol, TypedDict

if TYPE_CHECKING:
    from agentwire.cancellation import CancellationSignal


class ToolSpec(TypedDict):
    """Tool specification compatible with common LLM tool schemas (JSON Schema)."""

    type: Literal["function"]
    name: str
    description: str
    parameters: dict[str, Any]


class ITool(Protocol):
    """A capability the model may invoke by name."""

    @property
    def name(self) -> str: ...

    @property
    def description(self) -> str: ...

    @property
    def input_schema(self) -> dict[str, Any]: ...

    @property
    def tool_spec(self) -> ToolSpec: ...

    def invoke(
        self,
        arguments: Any,
        call_id: str,
        cancellation: "CancellationSignal",
    ) -> str | Awaitable[str]:
        """Run the tool with already validated arguments."""
        ...
