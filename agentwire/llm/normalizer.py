"""Vendor-independent machinery for turning raw chunks into canonical events.

Every adapter owns one `BlockTable` per response. The table is the only state
that survives from one chunk to the next, so two concurrent responses can
never observe each other's blocks.
"""

from typing import Any, AsyncIterator, ClassVar, Literal, Mapping, Protocol

from msgspec import DecodeError, Struct, ValidationError, convert
from msgspec.json import decode

from agentwire.cancellation import CancellationSignal
from agentwire.errors import LLMProviderError, StreamProtocolError
from agentwire.events import (
    Finish,
    ReasoningDelta,
    ReasoningEnd,
    ReasoningStart,
    StreamError,
    StreamEvent,
    TextDelta,
    ToolCallDelta,
    ToolCallEnd,
    ToolCallStart,
)

from .models import FinishReason, LLMProviderBase, LLMRequest, LLMUsage, RawChunk

BlockKind = Literal["text", "reasoning", "tool-call"]
BlockStatus = Literal["absent", "open", "accumulating", "closed"]


class BlockState(Struct, kw_only=True):
    kind: BlockKind
    status: BlockStatus = "open"
    tool_name: str = ""
    arguments: str = ""


class BlockTable:
    """Open/closed bookkeeping for the content blocks of one response."""

    def __init__(self) -> None:
        self._blocks: dict[str, BlockState] = {}

    def status(self, block_id: str) -> BlockStatus:
        block = self._blocks.get(block_id)
        return block.status if block else "absent"

    def get(self, block_id: str) -> BlockState:
        return self._require(block_id)

    def open(self, block_id: str, kind: BlockKind, *, tool_name: str = "") -> BlockState:
        if (current := self.status(block_id)) != "absent":
            raise StreamProtocolError(
                f"cannot start block {block_id!r}: it is already {current}"
            )
        block = BlockState(kind=kind, tool_name=tool_name)
        self._blocks[block_id] = block
        return block

    def append(self, block_id: str, kind: BlockKind, delta: str = "") -> BlockState:
        block = self._require(block_id, kind)
        if block.status == "closed":
            raise StreamProtocolError(f"delta for closed block {block_id!r}")
        block.status = "accumulating"
        if kind == "tool-call":
            block.arguments += delta
        return block

    def close(self, block_id: str, kind: BlockKind) -> BlockState:
        block = self._require(block_id, kind)
        if block.status == "closed":
            raise StreamProtocolError(f"block {block_id!r} is already closed")
        block.status = "closed"
        return block

    def open_ids(self, kind: BlockKind | None = None) -> list[str]:
        return [
            block_id
            for block_id, block in self._blocks.items()
            if block.status != "closed" and (kind is None or block.kind == kind)
        ]

    def _require(self, block_id: str, kind: BlockKind | None = None) -> BlockState:
        block = self._blocks.get(block_id)
        if block is None:
            raise StreamProtocolError(f"block {block_id!r} was never started")
        if kind is not None and block.kind != kind:
            raise StreamProtocolError(
                f"block {block_id!r} is a {block.kind} block, not {kind}"
            )
        return block


class StreamNormalizer(Protocol):
    @property
    def terminated(self) -> bool: ...

    def normalize(self, chunk: RawChunk) -> list[StreamEvent]:
        """Canonical events for one raw vendor chunk."""
        ...

    def close(self) -> list[StreamEvent]:
        """Flush at end of transport: close open blocks and emit `finish`."""
        ...


class InlineReasoning:
    """Reasoning policy for vendors that stream reasoning without boundaries.

    `reasoning-start` is emitted lazily on the first non-empty token and
    `reasoning-end` as soon as `end()` is called, which adapters do whenever
    answer text or tool-call content shows up.
    """

    def __init__(self, blocks: BlockTable, prefix: str = "reasoning"):
        self._blocks = blocks
        self._prefix = prefix
        self._active: str | None = None
        self._count = 0

    @property
    def active(self) -> str | None:
        return self._active

    def delta(self, out: list[StreamEvent], text: str, **metadata: Any) -> None:
        if not text and not metadata:
            return
        if self._active is None:
            self._active = f"{self._prefix}-{self._count}"
            self._count += 1
            self._blocks.open(self._active, "reasoning")
            out.append(ReasoningStart(block_id=self._active))
        self._blocks.append(self._active, "reasoning")
        out.append(ReasoningDelta(block_id=self._active, delta=text, metadata=metadata))

    def end(self, out: list[StreamEvent]) -> None:
        if self._active is None:
            return
        self._blocks.close(self._active, "reasoning")
        out.append(ReasoningEnd(block_id=self._active))
        self._active = None


class BaseNormalizer[ChunkT]:
    """Shared decode/dispatch/error handling for vendor adapters.

    Subclasses set `chunk_type` (usually a tagged union of msgspec structs)
    and implement `_handle`. When `known_types` is set, chunks whose `type`
    is not listed are skipped before typed decoding.
    """

    vendor: ClassVar[str] = "vendor"
    chunk_type: ClassVar[Any]
    known_types: ClassVar[frozenset[str] | None] = None

    def __init__(self) -> None:
        self._blocks = BlockTable()
        self._terminated = False
        self._finished = False
        self._usage: LLMUsage | None = None
        self._finish_reason: FinishReason = "unknown"

    @property
    def terminated(self) -> bool:
        return self._terminated

    @property
    def blocks(self) -> BlockTable:
        return self._blocks

    def _decode(self, chunk: RawChunk) -> ChunkT | None:
        raw = chunk if isinstance(chunk, Mapping) else decode(chunk)
        if not isinstance(raw, Mapping):
            raise ValidationError(f"expected a JSON object, got {type(raw).__name__}")
        if self.known_types is not None and raw.get("type") not in self.known_types:
            return None
        return convert(dict(raw), self.chunk_type)

    def _handle(self, chunk: ChunkT, out: list[StreamEvent]) -> None:
        raise NotImplementedError

    def _flush(self, out: list[StreamEvent]) -> None:
        """Close whatever is still open at the end of the response."""

    def _fail(self, out: list[StreamEvent], message: str, error: Exception) -> list[StreamEvent]:
        self._terminated = True
        out.append(StreamError(message=message, error=error))
        return out

    def _emit_finish(self, out: list[StreamEvent]) -> None:
        if self._finished:
            return
        self._finished = True
        out.append(Finish(finish_reason=self._finish_reason, usage=self._usage))

    def _close_tool_calls(self, out: list[StreamEvent]) -> None:
        for block_id in self._blocks.open_ids("tool-call"):
            block = self._blocks.close(block_id, "tool-call")
            out.append(
                ToolCallEnd(
                    block_id=block_id,
                    tool_name=block.tool_name,
                    arguments=block.arguments,
                )
            )

    def _open_tool_call(
        self, out: list[StreamEvent], block_id: str, tool_name: str
    ) -> None:
        self._blocks.open(block_id, "tool-call", tool_name=tool_name)
        out.append(ToolCallStart(block_id=block_id, tool_name=tool_name))

    def _tool_delta(self, out: list[StreamEvent], block_id: str, delta: str) -> None:
        self._blocks.append(block_id, "tool-call", delta)
        if delta:
            out.append(ToolCallDelta(block_id=block_id, arguments_delta=delta))

    def _text_delta(self, out: list[StreamEvent], block_id: str, delta: str) -> None:
        if self._blocks.status(block_id) == "absent":
            self._blocks.open(block_id, "text")
        self._blocks.append(block_id, "text")
        out.append(TextDelta(block_id=block_id, delta=delta))

    def normalize(self, chunk: RawChunk) -> list[StreamEvent]:
        if self._terminated:
            return []
        out: list[StreamEvent] = []
        try:
            decoded = self._decode(chunk)
            if decoded is not None:
                self._handle(decoded, out)
        except (DecodeError, ValidationError) as exc:
            return self._fail(out, f"unparseable {self.vendor} chunk: {exc}", exc)
        except StreamProtocolError as exc:
            return self._fail(out, f"{self.vendor} stream protocol violation: {exc}", exc)

        for idx, event in enumerate(out):
            if isinstance(event, StreamError):
                self._terminated = True
                return out[: idx + 1]
        return out

    def close(self) -> list[StreamEvent]:
        if self._terminated:
            return []
        out: list[StreamEvent] = []
        try:
            self._flush(out)
        except StreamProtocolError as exc:
            return self._fail(out, f"{self.vendor} stream protocol violation: {exc}", exc)
        self._emit_finish(out)
        self._terminated = True
        return out


_EXHAUSTED = object()


async def _next_chunk(chunks: AsyncIterator[RawChunk]) -> Any:
    try:
        return await anext(chunks)
    except StopAsyncIteration:
        return _EXHAUSTED
    except LLMProviderError:
        raise
    except Exception as exc:
        raise LLMProviderError(f"model call failed: {exc}") from exc


async def stream_events(
    provider: LLMProviderBase,
    request: LLMRequest,
    cancellation: CancellationSignal,
) -> AsyncIterator[StreamEvent]:
    """Drive one model call through a fresh normalizer.

    Each chunk pull is raced against `cancellation`; when it fires the
    transport is closed and RunCancelledError propagates to the caller.
    """
    cancellation.raise_if_cancelled()
    normalizer = provider.new_normalizer()
    chunks = aiter(provider.stream(request, cancellation))
    try:
        while True:
            chunk = await cancellation.guard(_next_chunk(chunks))
            if chunk is _EXHAUSTED:
                break
            for event in normalizer.normalize(chunk):
                yield event
            if normalizer.terminated:
                return
        for event in normalizer.close():
            yield event
    finally:
        aclose = getattr(chunks, "aclose", None)
        if aclose is not None:
            await aclose()
