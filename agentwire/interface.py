from typing import Any, Literal, TypedDict, TypeGuard

from msgspec import Struct
from msgspec.structs import asdict
from typing_extensions import dataclass_transform


@dataclass_transform(frozen_default=True)
class Record(Struct, frozen=True, kw_only=True):
    def asdict(self) -> dict[str, Any]:
        return asdict(self)


class _Missed:
    def __bool__(self) -> Literal[False]:
        return False

    def __repr__(self) -> str:
        return "agentwire.MISSING"


type Maybe[T] = T | _Missed

MISSING = _Missed()


def is_present[T](value: Maybe[T]) -> TypeGuard[T]:
    return value is not MISSING


def is_json_compatible(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (str, int, bool)):
        return True
    if isinstance(value, float):
        return value == value and value not in (float("inf"), float("-inf"))
    if isinstance(value, (list, tuple)):
        return all(is_json_compatible(item) for item in value)
    if isinstance(value, dict):
        return all(
            isinstance(key, str) and is_json_compatible(val)
            for key, val in value.items()
        )
    return False


JSONType = Literal["string", "number", "integer", "boolean", "object", "array", "null"]

MessageRole = Literal["system", "user", "assistant", "tool"]


class JsonSchema(TypedDict, total=False):
    type: JSONType

    # For object
    properties: dict[str, Any]
    required: list[str]
    additionalProperties: bool

    # For array
    items: Any
    minItems: int
    maxItems: int

    # For string
    minLength: int
    maxLength: int
    pattern: str
    format: str

    # For numbers
    minimum: float
    maximum: float

    enum: list[Any]
    const: Any
    default: Any

    anyOf: list[Any]
    oneOf: list[Any]

    description: str
    examples: list[Any]


__all__ = [
    "Record",
    "Struct",
    "MISSING",
    "Maybe",
    "JsonSchema",
    "MessageRole",
    "is_present",
    "is_json_compatible",
]
