from typing import Any, Mapping

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError
from jsonschema.validators import validator_for

from .errors import SchemaValidationError
from .interface import Record


class FieldError(Record):
    """Single schema violation located by its JSON path."""

    path: str
    """Slash-joined location of the offending value, `<root>` for the top level."""

    message: str
    """Validator-reported description of the violation."""

    def __str__(self) -> str:
        return f"{self.path}: {self.message}"


def _render_path(path: Any) -> str:
    return "/".join(str(part) for part in path) or "<root>"


def _schema_position(schema: Mapping[str, Any], path: Any) -> list[tuple[int, Any]]:
    """Sort key placing a path where the schema declares it.

    Properties rank by declaration order and array indices numerically;
    keys the schema does not declare come after the declared ones.
    """
    key: list[tuple[int, Any]] = []
    node: Any = schema
    for part in path:
        if not isinstance(node, Mapping):
            node = {}
        if isinstance(part, int):
            key.append((0, part))
            node = node.get("items", {})
            continue
        properties = node.get("properties", {})
        if isinstance(properties, Mapping) and part in properties:
            key.append((0, list(properties).index(part)))
            node = properties[part]
        else:
            key.append((1, str(part)))
            node = {}
    return key


def validate(value: Any, schema: Mapping[str, Any]) -> SchemaValidationError | None:
    """Validate `value` against `schema`, collecting every violation.

    The schema is compiled on every call; callers validating repeatedly
    against the same schema should keep their own compiled validator.
    """
    validator_cls = validator_for(schema, default=Draft202012Validator)
    try:
        validator_cls.check_schema(schema)
    except SchemaError as exc:
        return SchemaValidationError(f"invalid schema: {exc.message}")

    validator = validator_cls(schema)
    # sorted is stable, so ties keep the order the validator reported them in
    violations = sorted(
        validator.iter_errors(value),
        key=lambda err: _schema_position(schema, err.absolute_path),
    )
    if not violations:
        return None

    errors = [
        FieldError(path=_render_path(err.absolute_path), message=err.message)
        for err in violations
    ]
    message = "; ".join(str(err) for err in errors)
    return SchemaValidationError(f"validation failed: {message}", errors)
