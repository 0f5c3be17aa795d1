from typing import Any, AsyncIterator

import pytest

from agentwire.cancellation import CancellationSignal
from agentwire.errors import AgentWireValidationError, LLMProviderError, NoObjectGeneratedError
from agentwire.llm.models import LLMMessage, LLMProviderBase, LLMRequest, RawChunk
from agentwire.llm.openai_chat import OpenAIChatNormalizer
from agentwire.llm.service import LLMService

CITY_SCHEMA = {
    "type": "object",
    "properties": {"city": {"type": "string"}, "days": {"type": "integer"}},
    "required": ["city"],
}


def text_chunks(*parts: str) -> list[RawChunk]:
    chunks: list[RawChunk] = [
        {"choices": [{"index": 0, "delta": {"content": part}}]} for part in parts
    ]
    chunks.append({"choices": [{"index": 0, "delta": {}, "finish_reason": "stop"}]})
    return chunks


class RecordingProvider(LLMProviderBase):
    def __init__(self, *scripts: list[RawChunk], default_model: str = "gpt-4o") -> None:
        self._scripts = list(scripts)
        self._default_model = default_model
        self.requests: list[LLMRequest] = []

    @property
    def default_model(self) -> str:
        return self._default_model

    def new_normalizer(self) -> OpenAIChatNormalizer:
        return OpenAIChatNormalizer()

    async def stream(
        self, request: LLMRequest, cancellation: CancellationSignal
    ) -> AsyncIterator[RawChunk]:
        self.requests.append(request)
        for raw in self._scripts.pop(0):
            yield raw


def user(content: str) -> list[LLMMessage]:
    return [LLMMessage(role="user", content=content)]


@pytest.mark.anyio
async def test_stream_applies_default_model() -> None:
    provider = RecordingProvider(text_chunks("hi"))
    service = LLMService(provider)

    kinds = [event.kind async for event in service.stream(messages=user("hello"))]

    assert kinds == ["text-delta", "finish"]
    assert provider.requests[0]["metadata"] == {"model": "gpt-4o"}


@pytest.mark.anyio
async def test_stream_keeps_explicit_model() -> None:
    provider = RecordingProvider(text_chunks("hi"))
    service = LLMService(provider)

    async for _ in service.stream(messages=user("hello"), metadata={"model": "o3"}):
        pass

    assert provider.requests[0]["metadata"]["model"] == "o3"


@pytest.mark.anyio
async def test_stream_validates_messages() -> None:
    service = LLMService(RecordingProvider())

    with pytest.raises(AgentWireValidationError):
        async for _ in service.stream(messages=[]):
            pass

    with pytest.raises(TypeError, match="Expected LLMMessage"):
        async for _ in service.stream(messages=[{"role": "user", "content": "x"}]):  # type: ignore[list-item]
            pass


@pytest.mark.anyio
async def test_generate_object_inserts_schema_hint_after_system_prompt() -> None:
    provider = RecordingProvider(text_chunks('{"city": "Oslo", ', '"days": 3}'))
    service = LLMService(provider)

    value = await service.generate_object(
        schema=CITY_SCHEMA,
        messages=[
            LLMMessage(role="system", content="You plan trips."),
            LLMMessage(role="user", content="Plan a trip"),
        ],
    )

    assert value == {"city": "Oslo", "days": 3}
    messages = provider.requests[0]["messages"]
    assert [m.role for m in messages] == ["system", "system", "user"]
    assert "Return Format Advisory" in messages[1].content
    assert '"required":["city"]' in messages[1].content


@pytest.mark.anyio
async def test_generate_object_recovers_fenced_answer() -> None:
    provider = RecordingProvider(text_chunks('```json\n{"city": "Rome"', "\n```"))
    service = LLMService(provider)

    value = await service.generate_object(schema=CITY_SCHEMA, messages=user("go"))

    assert value == {"city": "Rome"}
    assert provider.requests[0]["messages"][0].role == "system"


@pytest.mark.anyio
async def test_generate_object_falls_back_to_tool_call_arguments() -> None:
    provider = RecordingProvider(
        [
            {
                "choices": [
                    {
                        "delta": {
                            "tool_calls": [
                                {
                                    "index": 0,
                                    "id": "call-1",
                                    "function": {"name": "answer", "arguments": '{"city": "Lima"}'},
                                }
                            ]
                        }
                    }
                ]
            },
            {"choices": [{"delta": {}, "finish_reason": "tool_calls"}]},
        ]
    )
    service = LLMService(provider)

    value = await service.generate_object(schema=CITY_SCHEMA, messages=user("go"))

    assert value == {"city": "Lima"}


@pytest.mark.anyio
async def test_generate_object_raises_when_answer_does_not_validate() -> None:
    service = LLMService(RecordingProvider(text_chunks('{"days": "many"}')))

    with pytest.raises(NoObjectGeneratedError) as exc_info:
        await service.generate_object(schema=CITY_SCHEMA, messages=user("go"))

    assert exc_info.value.raw_text == '{"days": "many"}'
    assert exc_info.value.validation_error is not None


@pytest.mark.anyio
async def test_generate_object_uses_repair_once() -> None:
    calls: list[str] = []

    async def repair(text: str, error: Exception) -> str:
        calls.append(text)
        return '{"city": "Paris"}'

    service = LLMService(RecordingProvider(text_chunks("I think Paris")))

    value = await service.generate_object(
        schema=CITY_SCHEMA, messages=user("go"), repair=repair
    )

    assert value == {"city": "Paris"}
    assert calls == ["I think Paris"]


@pytest.mark.anyio
async def test_generate_object_surfaces_stream_errors() -> None:
    service = LLMService(RecordingProvider([b"not json at all"]))

    with pytest.raises(LLMProviderError, match="unparseable"):
        await service.generate_object(schema=CITY_SCHEMA, messages=user("go"))


@pytest.mark.anyio
async def test_stream_object_yields_deduplicated_partials() -> None:
    provider = RecordingProvider(
        text_chunks('{"city": "Os', 'lo", "days"', ": 3}", " ")
    )
    service = LLMService(provider)

    partials = [
        value
        async for value in service.stream_object(schema=CITY_SCHEMA, messages=user("go"))
    ]

    assert partials == [
        {"city": "Os"},
        {"city": "Oslo"},
        {"city": "Oslo", "days": 3},
    ]


@pytest.mark.anyio
async def test_stream_object_validates_final_text() -> None:
    service = LLMService(RecordingProvider(text_chunks('{"days": 1}')))
    partials: list[Any] = []

    with pytest.raises(NoObjectGeneratedError):
        async for value in service.stream_object(schema=CITY_SCHEMA, messages=user("go")):
            partials.append(value)

    assert partials == [{"days": 1}]


@pytest.mark.anyio
async def test_stream_object_repairs_failing_final_text_once() -> None:
    calls: list[str] = []

    def repair(text: str, error: Exception) -> str:
        calls.append(text)
        return '{"city": "Oslo", "days": 1}'

    service = LLMService(RecordingProvider(text_chunks('{"days": 1}')))

    partials = [
        value
        async for value in service.stream_object(
            schema=CITY_SCHEMA, messages=user("go"), repair=repair
        )
    ]

    assert partials == [{"days": 1}, {"city": "Oslo", "days": 1}]
    assert calls == ['{"days": 1}']


@pytest.mark.anyio
async def test_stream_object_skips_repair_for_valid_final_text() -> None:
    calls: list[str] = []

    async def repair(text: str, error: Exception) -> str:
        calls.append(text)
        return text

    service = LLMService(RecordingProvider(text_chunks('{"city": "Rome"}')))

    partials = [
        value
        async for value in service.stream_object(
            schema=CITY_SCHEMA, messages=user("go"), repair=repair
        )
    ]

    assert partials == [{"city": "Rome"}]
    assert calls == []


@pytest.mark.anyio
async def test_stream_object_raises_when_repaired_text_still_fails() -> None:
    service = LLMService(RecordingProvider(text_chunks("no json here")))

    with pytest.raises(NoObjectGeneratedError) as exc_info:
        async for _ in service.stream_object(
            schema=CITY_SCHEMA, messages=user("go"), repair=lambda text, error: "still none"
        ):
            pass

    assert exc_info.value.raw_text == "still none"
