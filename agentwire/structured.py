"""Parse-then-validate pipeline for structured model output."""

import inspect
from typing import Any, Awaitable, Mapping, Protocol

from .errors import NoObjectGeneratedError
from .jsonrepair import recover
from .schema import validate


class ObjectRepair(Protocol):
    """Caller-supplied strategy that gets exactly one chance to fix the text.

    Receives the raw text and the parse or validation error, returns the
    repaired text. May be a plain function or a coroutine function.
    """

    def __call__(self, text: str, error: Exception) -> str | Awaitable[str]: ...


def _attempt(text: str, schema: Mapping[str, Any]) -> tuple[Any, NoObjectGeneratedError | None]:
    value, state, parse_error = recover(text)
    if state == "failed":
        return None, NoObjectGeneratedError(raw_text=text, parse_error=parse_error)

    if validation_error := validate(value, schema):
        return None, NoObjectGeneratedError(
            raw_text=text, validation_error=validation_error
        )
    return value, None


def parse_and_validate(text: str, schema: Mapping[str, Any]) -> Any:
    """Return the validated value or raise NoObjectGeneratedError."""
    value, failure = _attempt(text, schema)
    if failure is not None:
        raise failure
    return value


async def parse_and_validate_with_repair(
    text: str,
    schema: Mapping[str, Any],
    repair: ObjectRepair,
) -> Any:
    """Like `parse_and_validate`, with a single repair attempt on failure.

    The repair callback runs at most once. When the second attempt fails too,
    the raised error describes the second attempt, not the first.
    """
    value, failure = _attempt(text, schema)
    if failure is None:
        return value

    cause = failure.parse_error or failure.validation_error
    assert cause is not None
    try:
        repaired = repair(text, cause)
        if inspect.isawaitable(repaired):
            repaired = await repaired
    except Exception as exc:
        raise NoObjectGeneratedError(raw_text=text, parse_error=exc) from exc

    value, second_failure = _attempt(repaired, schema)
    if second_failure is not None:
        raise second_failure
    return value
