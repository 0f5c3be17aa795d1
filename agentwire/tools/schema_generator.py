from copy import deepcopy
from types import GenericAlias, UnionType
from typing import Any, Callable, cast

from msgspec.json import schema_components

from agentwire.interface import MISSING, JsonSchema, Maybe, is_json_compatible, is_present

type SchemaHook = Callable[[type], dict[str, Any] | None] | None
type RegularTypes = type | UnionType | GenericAlias | Any

REF_PREFIX = "#/$defs/"
REF_TEMPLATE = REF_PREFIX + "{name}"


def _default_schema_hook(t: type) -> dict[str, Any] | None:
    if t is object:
        # bare ``object`` means an unconstrained payload
        return {}
    return None


def json_schema(
    type_: RegularTypes, schema_hook: SchemaHook = None
) -> tuple[dict[str, Any], dict[str, Any]]:
    """Schema for `type_` plus the named definitions it references."""

    def _hook(t: type) -> dict[str, Any] | None:
        if schema_hook is not None and (custom := schema_hook(t)) is not None:
            return custom
        return _default_schema_hook(t)

    (schema,), defs = schema_components(
        (type_,), schema_hook=_hook, ref_template=REF_TEMPLATE
    )
    return schema, defs


def _resolve_refs(node: Any, defs: dict[str, Any], seen: tuple[str, ...] = ()) -> Any:
    if isinstance(node, list):
        return [_resolve_refs(item, defs, seen) for item in node]
    if not isinstance(node, dict):
        return node

    ref = node.get("$ref")
    if isinstance(ref, str) and ref.startswith(REF_PREFIX):
        name = ref[len(REF_PREFIX) :]
        if name in seen:
            # recursive types stay referenced; everything else is inlined
            return dict(node)
        resolved = _resolve_refs(deepcopy(defs.get(name, {})), defs, seen + (name,))
        resolved.update(
            {k: _resolve_refs(v, defs, seen) for k, v in node.items() if k != "$ref"}
        )
        return resolved

    return {k: _resolve_refs(v, defs, seen) for k, v in node.items()}


def inline_schema(type_: RegularTypes, default: Maybe[Any] = MISSING) -> JsonSchema:
    """Self-contained JSON Schema for `type_` with struct references expanded.

    msgspec emits nested structs as `$ref`s into a definitions table; model
    vendors expect tool parameters without external definitions, so every
    reference is replaced by a copy of its target. Sibling keys on the
    referencing node (e.g. a description) are kept.

    A JSON-compatible `default` is recorded under `"default"`.
    """
    schema, defs = json_schema(type_)
    if defs:
        schema = _resolve_refs(schema, defs)
    else:
        schema = deepcopy(schema)

    if is_present(default) and is_json_compatible(default):
        schema.setdefault("default", default)
    return cast(JsonSchema, schema)
