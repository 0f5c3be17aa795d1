import json

import pytest

from agentwire.errors import JSONRepairError
from agentwire.jsonrepair import recover, repair_json

WELL_FORMED = [
    '{"a": 1, "b": [true, false, null], "c": {"d": "e"}}',
    "[1, 2.5, -3e2]",
    '"plain string"',
    "42",
    "null",
    '{"escaped": "quote \\" and \\\\ slash", "unicode": "\\u00e9"}',
    "  {\"padded\": 1}  ",
    '{"a": 1e999}',
    "1E400",
    '"\\ud800"',
]


@pytest.mark.parametrize("text", WELL_FORMED)
def test_well_formed_json_parses_successfully_and_matches_json_loads(text: str) -> None:
    value, state, error = recover(text)

    assert state == "successful"
    assert error is None
    assert value == json.loads(text)


@pytest.mark.parametrize("text", ["NaN", "-Infinity"])
def test_non_standard_constants_are_not_json(text: str) -> None:
    value, state, error = recover(text)

    assert value is None
    assert state == "failed"
    assert isinstance(error, JSONRepairError)


def test_empty_input_is_undefined() -> None:
    assert recover("") == (None, "undefined", None)


def test_whitespace_only_input_fails() -> None:
    value, state, error = recover("   ")

    assert value is None
    assert state == "failed"
    assert isinstance(error, JSONRepairError)


def test_truncated_object_is_repaired() -> None:
    value, state, error = recover('{"name": "John", "age": 25')

    assert state == "repaired"
    assert error is None
    assert value == {"name": "John", "age": 25}


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ('{"city": "Par', {"city": "Par"}),
        ('{"a": 1, "b"', {"a": 1}),
        ('{"a": 1, "b":', {"a": 1}),
        ('{"a": 1,', {"a": 1}),
        ('{"a": tr', {}),
        ('{"a": 1.', {"a": 1}),
        ('{"a": -', {}),
        ('[1, 2, [3, 4', [1, 2, [3, 4]]),
        ('{"items": [{"id": 1}, {"id": 2', {"items": [{"id": 1}, {"id": 2}]}),
        ('{"a": [1, 2,]}', {"a": [1, 2]}),
        ('{"a": 1,}', {"a": 1}),
    ],
)
def test_truncations_recover_the_complete_prefix(text: str, expected: object) -> None:
    value, state, _ = recover(text)

    assert state == "repaired"
    assert value == expected


def test_truncation_keeping_a_complete_key_value_is_repaired() -> None:
    document = '{"title": "Report", "pages": 12, "tags": ["a", "b"], "draft": false}'
    first_pair_end = document.index(",")

    for cut in range(first_pair_end, len(document)):
        value, state, _ = recover(document[:cut])
        assert state in ("successful", "repaired"), document[:cut]
        assert value["title"] == "Report"


def test_markdown_fences_are_stripped() -> None:
    text = '```json\n{"answer": 42}\n```'

    value, state, _ = recover(text)

    assert state == "repaired"
    assert value == {"answer": 42}


def test_leading_prose_is_skipped() -> None:
    value, state, _ = recover('Sure! Here it is: {"ok": true}')

    assert state == "repaired"
    assert value == {"ok": True}


def test_trailing_garbage_after_complete_value_is_dropped() -> None:
    value, state, _ = recover('{"ok": true} and that is all')

    assert state == "repaired"
    assert value == {"ok": True}


def test_dangling_escape_in_string_is_dropped() -> None:
    value, state, _ = recover('{"path": "C:\\')

    assert state == "repaired"
    assert value == {"path": "C:"}


def test_partial_unicode_escape_is_dropped() -> None:
    value, state, _ = recover('{"word": "caf\\u00')

    assert state == "repaired"
    assert value == {"word": "caf"}


def test_mismatched_closer_fails() -> None:
    value, state, error = recover("[1, 2}")

    assert value is None
    assert state == "failed"
    assert isinstance(error, JSONRepairError)
    assert isinstance(error.__cause__, JSONRepairError)


def test_unquoted_tokens_fail() -> None:
    _, state, error = recover("{key: value}")

    assert state == "failed"
    assert isinstance(error, JSONRepairError)


def test_text_without_json_fails() -> None:
    _, state, _ = recover("no json here")

    assert state == "failed"


def test_repair_json_raises_on_unrecoverable_input() -> None:
    with pytest.raises(JSONRepairError):
        repair_json("[}")


@pytest.mark.parametrize(
    "text",
    [
        '{"a": 1, "b": [1, 2',
        '```\n{"x": "unterminated',
        '{"nested": {"deep": {"er": nu',
        "[1, 2,",
        '{"k": "v"} trailing',
    ],
)
def test_repair_is_idempotent(text: str) -> None:
    once = repair_json(text)

    assert repair_json(once) == once
    json.loads(once)


def test_repair_never_invents_keys() -> None:
    repaired = repair_json('{"known": 1, "unkn')

    assert json.loads(repaired) == {"known": 1}
