from dataclasses import dataclass
from inspect import Parameter, Signature
from typing import Annotated as Annotated
from typing import Any, Callable, TypedDict, Unpack, get_args, get_origin

from ididi import USE_FACTORY_MARK, DependentNode
from ididi.utils.typing_utils import flatten_annotated
from msgspec import Meta, Struct, defstruct

from agentwire.errors import AgentWireConfigurationError, UnannotatedToolParamError
from agentwire.interface import MISSING, JsonSchema, Maybe, is_present

from .schema_generator import inline_schema


class ParamConstraint(TypedDict, total=False):
    gt: int | float
    ge: int | float
    lt: int | float
    le: int | float
    multiple_of: int | float
    pattern: str
    min_length: int
    max_length: int


@dataclass(frozen=True, kw_only=True, slots=True)
class ParamSpec[T]:
    alias: Maybe[str] = MISSING
    description: str
    required: Maybe[bool] = MISSING
    annotation: Maybe[type[T]] = MISSING
    examples: list
    extra_json_schema: dict
    constraint: ParamConstraint


def spec[T](
    description: str = "",
    alias: Maybe[str] = MISSING,
    required: Maybe[bool] = MISSING,
    annotation: Maybe[type[T]] = MISSING,
    examples: Maybe[list] = MISSING,
    extra_json_schema: Maybe[dict] = MISSING,
    **constraint: Unpack[ParamConstraint],
) -> ParamSpec[T]:
    """
    Describe a tool parameter exposed to the model.

    Args:
        description: Parameter description shown to the model.
        alias: Name of the parameter in the tool's input schema.
        required: Defaults to whether the parameter has no default value.
        annotation: Overrides the annotated type.
        constraint: Value constraints, see `ParamConstraint`.
    """
    return ParamSpec(
        alias=alias,
        description=description,
        required=required,
        annotation=annotation,
        examples=examples if is_present(examples) else [],
        extra_json_schema=extra_json_schema if is_present(extra_json_schema) else {},
        constraint=constraint,
    )


def _unwrap(annotation: Any) -> Any:
    if get_origin(annotation) is Annotated:
        return get_args(annotation)[0]
    return annotation


def _param_metas(param: Parameter) -> list[Any]:
    if get_origin(param.annotation) is not Annotated:
        return []
    return flatten_annotated(param.annotation)


def _find_spec(metas: list[Any]) -> ParamSpec | None:
    for meta in metas:
        if isinstance(meta, ParamSpec):
            return meta
    return None


def _find_dependency(metas: list[Any], param_type: Any) -> DependentNode | None:
    try:
        mark_idx = metas.index(USE_FACTORY_MARK)
    except ValueError:
        return None
    factory = metas[mark_idx + 1] or param_type
    return DependentNode.from_node(factory)


@dataclass(frozen=True, kw_only=True, slots=True)
class ToolParam[T]:
    name: str
    alias: str
    required: bool
    type_: type[T]
    annotation: Any
    default: Maybe[T] = MISSING
    schema: JsonSchema

    @classmethod
    def from_param(cls, param: Parameter, param_spec: ParamSpec[T]) -> "ToolParam[T]":
        default = MISSING if param.default is Parameter.empty else param.default
        alias = param_spec.alias if is_present(param_spec.alias) else param.name
        param_type = _unwrap(
            param_spec.annotation
            if is_present(param_spec.annotation)
            else param.annotation
        )
        required = (
            param_spec.required
            if is_present(param_spec.required)
            else default is MISSING
        )

        annotation: Any = param_type
        if param_spec.constraint:
            annotation = Annotated[param_type, Meta(**param_spec.constraint)]

        schema = inline_schema(annotation, default)
        if param_spec.description:
            schema["description"] = param_spec.description
        if param_spec.examples:
            schema["examples"] = param_spec.examples
        if param_spec.extra_json_schema:
            schema.update(param_spec.extra_json_schema)  # type: ignore[typeddict-item]

        return cls(
            name=param.name,
            alias=alias,
            type_=param_type,
            annotation=annotation,
            required=required,
            default=default,
            schema=schema,
        )


@dataclass(kw_only=True, slots=True)
class ToolSignature:
    """Model-facing parameters and injected dependencies of a tool function."""

    params: dict[str, ToolParam]
    dep_nodes: dict[str, Callable[..., Any]]

    def generate_params_schema(self) -> dict[str, Any]:
        properties: dict[str, Any] = {}
        required: list[str] = []
        for param in self.params.values():
            properties[param.alias] = param.schema
            if param.required:
                required.append(param.alias)

        parameters: dict[str, Any] = {
            "type": "object",
            "properties": properties,
            "additionalProperties": False,
        }
        if required:
            parameters["required"] = required
        return parameters

    def build_struct(self) -> type[Struct]:
        """Typed struct mirroring the parameters, keyed by python name."""
        fields: list[tuple[Any, ...]] = []
        rename: dict[str, str] = {}
        for param in self.params.values():
            field_def: tuple[Any, ...] = (param.name, param.annotation)
            if is_present(param.default):
                field_def += (param.default,)
            fields.append(field_def)
            if param.alias != param.name:
                rename[param.name] = param.alias
        return defstruct("ToolParams", fields, kw_only=True, rename=rename or None)

    @classmethod
    def from_signature(cls, func_sig: Signature) -> "ToolSignature":
        params: dict[str, ToolParam] = {}
        dep_nodes: dict[str, Callable[..., Any]] = {}
        for param in func_sig.parameters.values():
            if param.annotation is Parameter.empty:
                raise UnannotatedToolParamError(
                    f"Parameter {param.name!r} is missing type annotation"
                )

            metas = _param_metas(param)
            if not metas:
                continue

            if param_spec := _find_spec(metas):
                params[param.name] = ToolParam.from_param(param, param_spec)

            dep_node = _find_dependency(metas, _unwrap(param.annotation))
            if dep_node is None:
                continue
            if param.name in params:
                raise AgentWireConfigurationError(
                    f"Parameter {param.name!r} is declared both as a tool param and a dependency"
                )
            dep_nodes[param.name] = dep_node.factory

        return cls(params=params, dep_nodes=dep_nodes)
