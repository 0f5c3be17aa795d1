from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .schema import FieldError


class AgentWireError(Exception):
    """Base exception class for agentwire errors."""


class AgentWireConfigurationError(AgentWireError):
    """Raised when agentwire is misconfigured or missing required settings."""


class UnannotatedToolParamError(AgentWireConfigurationError):
    """Raised when a tool parameter is missing a type annotation."""


class AgentWireValidationError(AgentWireError):
    """Raised when inputs fail validation."""


class AgentWireRuntimeError(AgentWireError):
    """Raised when runtime execution fails unexpectedly."""


class LLMProviderError(AgentWireError):
    """Wrapper for model-call failures bubbled up from the transport."""


class StreamProtocolError(AgentWireRuntimeError):
    """Raised when a vendor stream violates the content-block protocol."""


class JSONRepairError(AgentWireValidationError):
    """Raised when malformed JSON text cannot be repaired into a parseable value."""


class SchemaValidationError(AgentWireValidationError):
    """Aggregated schema violations for one validated value."""

    def __init__(self, message: str, errors: "list[FieldError] | None" = None):
        super().__init__(message)
        self.errors: list[FieldError] = errors or []


class NoObjectGeneratedError(AgentWireError):
    """Raised when no valid object could be extracted from model output.

    Exactly one of `parse_error` and `validation_error` is populated.
    """

    def __init__(
        self,
        *,
        raw_text: str,
        parse_error: Exception | None = None,
        validation_error: Exception | None = None,
    ):
        cause = parse_error if parse_error is not None else validation_error
        super().__init__(f"no object generated: {cause}")
        self.raw_text = raw_text
        self.parse_error = parse_error
        self.validation_error = validation_error


class ToolExecutionFailure(AgentWireRuntimeError):
    """Raised when a tool invocation fails during a reasoning step."""

    def __init__(self, *, tool_name: str, call_id: str, error: Exception):
        super().__init__(str(error))
        self.tool_name = tool_name
        self.call_id = call_id
        self.original_error = error


class RunCancelledError(AgentWireError):
    """Raised internally when the run's cancellation signal fires."""


__all__ = [
    "AgentWireError",
    "AgentWireConfigurationError",
    "UnannotatedToolParamError",
    "AgentWireValidationError",
    "AgentWireRuntimeError",
    "LLMProviderError",
    "StreamProtocolError",
    "JSONRepairError",
    "SchemaValidationError",
    "NoObjectGeneratedError",
    "ToolExecutionFailure",
    "RunCancelledError",
]
