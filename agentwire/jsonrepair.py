"""Best-effort recovery of incomplete or malformed JSON text.

`recover` is what callers use: it tries a strict decode first and only falls
back to `repair_json` when that fails. Repair only ever closes or truncates
structure that is already present in the input; it never invents keys or
values.

    >>> recover('{"name": "John", "age": 25')
    ParseResult(value={'name': 'John', 'age': 25}, state='repaired', error=None)
"""

import json
import re
from typing import Any, Literal, NamedTuple

from msgspec import DecodeError
from msgspec.json import decode

from .errors import JSONRepairError

ParseState = Literal["undefined", "successful", "repaired", "failed"]


class ParseResult(NamedTuple):
    value: Any
    state: ParseState
    error: Exception | None


_NUMBER = re.compile(r"-?(?:0|[1-9]\d*)(?:\.\d+)?(?:[eE][+-]?\d+)?")
_NUMBER_CHARS = frozenset("0123456789+-.eE")
_PARTIAL_UNICODE_ESCAPE = re.compile(r"\\u[0-9a-fA-F]{0,3}$")
_LITERALS = ("true", "false", "null")
_CLOSERS = {"{": "}", "[": "]"}


def _starts_with_value(source: str) -> bool:
    if source[0] in "{[\"-" or source[0].isdigit():
        return True
    return any(
        source.startswith(literal) or literal.startswith(source) for literal in _LITERALS
    )


def _strip_noise(text: str) -> str:
    source = text.strip()
    if source.startswith("```"):
        newline = source.find("\n")
        source = source[newline + 1 :] if newline != -1 else ""
        if source.rstrip().endswith("```"):
            source = source.rstrip()[:-3]
        source = source.strip()
    if source and not _starts_with_value(source):
        starts = [pos for pos in (source.find("{"), source.find("[")) if pos != -1]
        if not starts:
            raise JSONRepairError("input does not contain a JSON value")
        source = source[min(starts) :]
    return source


class _Repairer:
    """Single forward scan over the source keeping a container stack.

    A "safe point" is an output offset where everything before it is
    structurally complete, so cutting there and appending the pending
    closers yields valid JSON.
    """

    def __init__(self, source: str):
        self.source = source
        self.pos = 0
        self.out: list[str] = []
        self.length = 0
        # each frame is [container, expectation]
        self.stack: list[list[str]] = []
        self.safe_length = -1
        self.safe_stack: list[str] = []
        self.done = False

    def _emit(self, piece: str) -> None:
        self.out.append(piece)
        self.length += len(piece)

    def _mark_safe(self) -> None:
        self.safe_length = self.length
        self.safe_stack = [frame[0] for frame in self.stack]

    def _fail(self, reason: str) -> JSONRepairError:
        return JSONRepairError(f"{reason} at offset {self.pos}")

    def _skip_ws(self) -> None:
        source = self.source
        while self.pos < len(source) and source[self.pos] in " \t\r\n":
            self.pos += 1

    def _value_done(self) -> None:
        if not self.stack:
            self.done = True
            self._mark_safe()
            return
        self.stack[-1][1] = "comma_or_end"
        self._mark_safe()

    def _drop_trailing_comma(self) -> None:
        if self.out and self.out[-1] == ",":
            self.out.pop()
            self.length -= 1

    def _close(self, closer: str) -> None:
        container = self.stack[-1][0]
        if _CLOSERS[container] != closer:
            raise self._fail(f"mismatched {closer!r} for {container!r}")
        self._drop_trailing_comma()
        self.stack.pop()
        self._emit(closer)
        self.pos += 1
        self._value_done()

    def _read_string(self) -> tuple[str, bool]:
        source = self.source
        idx = self.pos + 1
        while idx < len(source):
            char = source[idx]
            if char == "\\":
                idx += 2
                continue
            if char == '"':
                return source[self.pos : idx + 1], True
            idx += 1
        return source[self.pos :], False

    def _read_value(self, *, is_key: bool = False) -> bool:
        """Consume one value; returns False when the input ran out mid-token."""
        source = self.source
        char = source[self.pos]

        if char in "{[":
            self.stack.append([char, "key_or_end" if char == "{" else "value_or_end"])
            self._emit(char)
            self.pos += 1
            self._mark_safe()
            return True

        if char == '"':
            literal, closed = self._read_string()
            if closed:
                self._emit(literal)
                self.pos += len(literal)
                if not is_key:
                    self._value_done()
                return True
            if is_key:
                return False
            if literal.endswith("\\") and (
                len(literal) - len(literal.rstrip("\\"))
            ) % 2:
                literal = literal[:-1]
            literal = _PARTIAL_UNICODE_ESCAPE.sub("", literal)
            self._emit(literal + '"')
            self.pos = len(source)
            self._value_done()
            return True

        if char == "-" or char.isdigit():
            end = self.pos
            while end < len(source) and source[end] in _NUMBER_CHARS:
                end += 1
            token = source[self.pos : end]
            if _NUMBER.fullmatch(token):
                self._emit(token)
                self.pos = end
                self._value_done()
                return True
            if end < len(source):
                raise self._fail(f"invalid number {token!r}")
            token = token.rstrip(".eE+-")
            if not token or not _NUMBER.fullmatch(token):
                return False
            self._emit(token)
            self.pos = len(source)
            self._value_done()
            return True

        for literal in _LITERALS:
            if source.startswith(literal, self.pos):
                self._emit(literal)
                self.pos += len(literal)
                self._value_done()
                return True
            if literal.startswith(source[self.pos :]):
                return False

        raise self._fail(f"unexpected character {char!r}")

    def run(self) -> str:
        source = self.source
        while not self.done:
            self._skip_ws()
            if self.pos >= len(source):
                break
            char = source[self.pos]

            if not self.stack:
                if not self._read_value():
                    break
                continue

            frame = self.stack[-1]
            container, expect = frame

            if expect == "comma_or_end":
                if char == ",":
                    self._emit(",")
                    self.pos += 1
                    frame[1] = "key" if container == "{" else "value"
                elif char in "}]":
                    self._close(char)
                else:
                    raise self._fail(f"expected ',' or closer, got {char!r}")
            elif expect in ("key_or_end", "key"):
                if char == "}":
                    self._close(char)
                elif char == '"':
                    if not self._read_value(is_key=True):
                        break
                    frame[1] = "colon"
                else:
                    raise self._fail(f"expected object key, got {char!r}")
            elif expect == "colon":
                if char != ":":
                    raise self._fail(f"expected ':', got {char!r}")
                self._emit(":")
                self.pos += 1
                frame[1] = "value"
            elif expect == "value_or_end" and char == "]":
                self._close(char)
            elif expect == "value" and container == "[" and char == "]":
                self._close(char)
            else:
                if not self._read_value():
                    break

        if self.done:
            return "".join(self.out)
        if self.safe_length < 0:
            raise JSONRepairError("no recoverable JSON value in input")

        repaired = "".join(self.out)[: self.safe_length]
        closers = "".join(_CLOSERS[container] for container in reversed(self.safe_stack))
        return repaired + closers


def repair_json(text: str) -> str:
    """Close or truncate structure so that `text` becomes parseable JSON.

    Raises JSONRepairError when the input cannot be repaired without
    inventing data (mismatched closers, unquoted tokens, no value at all).
    """
    source = _strip_noise(text)
    if not source:
        raise JSONRepairError("input does not contain a JSON value")
    return _Repairer(source).run()


def _reject_constant(name: str) -> Any:
    raise ValueError(f"{name} is not valid JSON")


def _strict_decode(text: str) -> Any:
    """Decode well-formed JSON.

    msgspec rejects some grammar-valid documents (numbers outside the float
    range, lone surrogate escapes); those go through the stdlib parser.
    """
    try:
        return decode(text)
    except DecodeError as exc:
        try:
            return json.loads(text, parse_constant=_reject_constant)
        except ValueError:
            raise exc from None


def recover(text: str) -> ParseResult:
    if not text:
        return ParseResult(None, "undefined", None)

    try:
        return ParseResult(_strict_decode(text), "successful", None)
    except DecodeError:
        pass

    try:
        repaired = repair_json(text)
    except JSONRepairError as exc:
        error = JSONRepairError(f"json repair failed: {exc}")
        error.__cause__ = exc
        return ParseResult(None, "failed", error)

    try:
        value = _strict_decode(repaired)
    except DecodeError as exc:
        error = JSONRepairError(f"failed to parse repaired json: {exc}")
        error.__cause__ = exc
        return ParseResult(None, "failed", error)

    return ParseResult(value, "repaired", None)
