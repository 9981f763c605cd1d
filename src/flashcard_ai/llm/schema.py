"""JSON Schema subset for structured model output."""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from .types import ErrorKind, SchemaViolation, ServiceError

TYPE_NAMES = ("string", "number", "integer", "boolean", "object", "array", "null")

VALIDATION_KEYWORDS = frozenset(
    {
        "type",
        "properties",
        "required",
        "items",
        "enum",
        "additionalProperties",
        "minItems",
        "maxItems",
        "minLength",
        "maxLength",
        "anyOf",
        "allOf",
        "oneOf",
    }
)

# Accepted in schemas but never checked against values.
ANNOTATION_KEYWORDS = frozenset({"title", "description", "$schema", "$id", "default", "examples", "format"})

_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL | re.IGNORECASE)


@dataclass(frozen=True)
class JsonSchema:
    types: Tuple[str, ...] = ()
    properties: Optional[Dict[str, "JsonSchema"]] = None
    required: Tuple[str, ...] = ()
    items: Union["JsonSchema", Tuple["JsonSchema", ...], None] = None
    enum: Optional[Tuple[Any, ...]] = None
    additional_properties: Union[bool, "JsonSchema", None] = None
    min_items: Optional[int] = None
    max_items: Optional[int] = None
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    any_of: Optional[Tuple["JsonSchema", ...]] = None
    all_of: Optional[Tuple["JsonSchema", ...]] = None
    one_of: Optional[Tuple["JsonSchema", ...]] = None
    title: Optional[str] = None

    @property
    def is_object_schema(self) -> bool:
        declared = self.properties is not None or bool(self.required) or self.additional_properties is not None
        return declared and (not self.types or "object" in self.types)

    @property
    def is_array_schema(self) -> bool:
        declared = self.items is not None or self.min_items is not None or self.max_items is not None
        return declared and (not self.types or "array" in self.types)


def _child(pointer: str, segment: Any) -> str:
    token = str(segment).replace("~", "~0").replace("/", "~1")
    return f"{pointer}/{token}"


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _parse_types(value: Any, pointer: str) -> Tuple[str, ...]:
    if value is None:
        return ()
    names = [value] if isinstance(value, str) else value
    if not isinstance(names, list) or not names:
        raise SchemaViolation(f"Schema 'type' at {pointer} must be a type name or a non-empty list.", pointer)
    for name in names:
        if name not in TYPE_NAMES:
            raise SchemaViolation(f"Unknown schema type {name!r} at {pointer}.", pointer, detail=name)
    return tuple(names)


def _parse_bound(raw: Mapping[str, Any], key: str, pointer: str) -> Optional[int]:
    value = raw.get(key)
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        raise SchemaViolation(f"Schema '{key}' at {pointer} must be a non-negative integer.", pointer, detail=value)
    return value


def _parse_branches(raw: Mapping[str, Any], key: str, pointer: str) -> Optional[Tuple[JsonSchema, ...]]:
    value = raw.get(key)
    if value is None:
        return None
    if not isinstance(value, list) or not value:
        raise SchemaViolation(f"Schema '{key}' at {pointer} must be a non-empty list of schemas.", pointer)
    base = _child(pointer, key)
    return tuple(parse_schema(branch, _child(base, index)) for index, branch in enumerate(value))


def parse_schema(raw: Any, pointer: str = "#") -> JsonSchema:
    """Builds a JsonSchema from a raw dict, rejecting anything outside the supported subset."""
    if isinstance(raw, JsonSchema):
        return raw
    if not isinstance(raw, Mapping):
        raise SchemaViolation(f"Schema at {pointer} must be a JSON object.", pointer, detail=raw)

    unknown = sorted(str(k) for k in raw if k not in VALIDATION_KEYWORDS and k not in ANNOTATION_KEYWORDS)
    if unknown:
        raise SchemaViolation(
            f"Unsupported schema keywords at {pointer}: {', '.join(unknown)}.",
            pointer,
            detail=unknown,
        )

    properties = None
    raw_properties = raw.get("properties")
    if raw_properties is not None:
        if not isinstance(raw_properties, Mapping):
            raise SchemaViolation(f"Schema 'properties' at {pointer} must be an object.", pointer)
        base = _child(pointer, "properties")
        properties = {
            str(name): parse_schema(sub, _child(base, name)) for name, sub in raw_properties.items()
        }

    required = raw.get("required") or []
    if not isinstance(required, list) or not all(isinstance(name, str) for name in required):
        raise SchemaViolation(f"Schema 'required' at {pointer} must be a list of property names.", pointer)

    items: Union[JsonSchema, Tuple[JsonSchema, ...], None] = None
    raw_items = raw.get("items")
    if isinstance(raw_items, list):
        base = _child(pointer, "items")
        items = tuple(parse_schema(sub, _child(base, index)) for index, sub in enumerate(raw_items))
    elif raw_items is not None:
        items = parse_schema(raw_items, _child(pointer, "items"))

    enum = None
    if "enum" in raw:
        if not isinstance(raw["enum"], list) or not raw["enum"]:
            raise SchemaViolation(f"Schema 'enum' at {pointer} must be a non-empty list.", pointer)
        enum = tuple(raw["enum"])

    additional: Union[bool, JsonSchema, None] = None
    raw_additional = raw.get("additionalProperties")
    if isinstance(raw_additional, bool):
        additional = raw_additional
    elif raw_additional is not None:
        additional = parse_schema(raw_additional, _child(pointer, "additionalProperties"))

    title = raw.get("title")
    return JsonSchema(
        types=_parse_types(raw.get("type"), pointer),
        properties=properties,
        required=tuple(required),
        items=items,
        enum=enum,
        additional_properties=additional,
        min_items=_parse_bound(raw, "minItems", pointer),
        max_items=_parse_bound(raw, "maxItems", pointer),
        min_length=_parse_bound(raw, "minLength", pointer),
        max_length=_parse_bound(raw, "maxLength", pointer),
        any_of=_parse_branches(raw, "anyOf", pointer),
        all_of=_parse_branches(raw, "allOf", pointer),
        one_of=_parse_branches(raw, "oneOf", pointer),
        title=title if isinstance(title, str) else None,
    )


def matches_type(type_name: str, value: Any) -> bool:
    if type_name == "string":
        return isinstance(value, str)
    if type_name == "number":
        if isinstance(value, float):
            return math.isfinite(value)
        return _is_number(value)
    if type_name == "integer":
        if isinstance(value, bool):
            return False
        if isinstance(value, int):
            return True
        return isinstance(value, float) and math.isfinite(value) and value.is_integer()
    if type_name == "boolean":
        return isinstance(value, bool)
    if type_name == "object":
        return isinstance(value, dict)
    if type_name == "array":
        return isinstance(value, list)
    if type_name == "null":
        return value is None
    return False


def deep_equal(left: Any, right: Any) -> bool:
    """Structural JSON equality: booleans never equal numbers, object key order is ignored."""
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left is right
    if _is_number(left) and _is_number(right):
        if isinstance(left, float) and isinstance(right, float) and math.isnan(left) and math.isnan(right):
            return True
        return left == right
    if isinstance(left, list) and isinstance(right, list):
        return len(left) == len(right) and all(deep_equal(a, b) for a, b in zip(left, right))
    if isinstance(left, dict) and isinstance(right, dict):
        return left.keys() == right.keys() and all(deep_equal(left[key], right[key]) for key in left)
    if left is None or right is None:
        return left is right
    return type(left) is type(right) and left == right


def _is_satisfied(schema: JsonSchema, value: Any, pointer: str) -> bool:
    try:
        _validate(schema, value, pointer)
    except SchemaViolation:
        return False
    return True


def _validate_object(schema: JsonSchema, value: Dict[str, Any], pointer: str) -> None:
    for key in schema.required:
        if key not in value:
            raise SchemaViolation(f'Missing required property "{key}" at {pointer}.', pointer, detail=value)

    properties = schema.properties or {}
    for name, sub_schema in properties.items():
        if name in value:
            _validate(sub_schema, value[name], _child(pointer, name))

    extra = [key for key in value if key not in properties]
    if schema.additional_properties is False and extra:
        raise SchemaViolation(
            f"Unexpected properties at {pointer}: {', '.join(extra)}.",
            pointer,
            detail=extra,
        )
    if isinstance(schema.additional_properties, JsonSchema):
        for key in extra:
            _validate(schema.additional_properties, value[key], _child(pointer, key))


def _validate_array(schema: JsonSchema, value: list, pointer: str) -> None:
    if schema.min_items is not None and len(value) < schema.min_items:
        raise SchemaViolation(
            f"Array at {pointer} must contain at least {schema.min_items} items.", pointer, detail=value
        )
    if schema.max_items is not None and len(value) > schema.max_items:
        raise SchemaViolation(
            f"Array at {pointer} must contain at most {schema.max_items} items.", pointer, detail=value
        )

    if isinstance(schema.items, tuple):
        for index, (item_schema, entry) in enumerate(zip(schema.items, value)):
            _validate(item_schema, entry, _child(pointer, index))
    elif schema.items is not None:
        for index, entry in enumerate(value):
            _validate(schema.items, entry, _child(pointer, index))


def _validate(schema: JsonSchema, value: Any, pointer: str) -> None:
    if schema.any_of is not None:
        if not any(_is_satisfied(branch, value, pointer) for branch in schema.any_of):
            raise SchemaViolation(f"Value at {pointer} does not match any schema in anyOf.", pointer, detail=value)
        return

    if schema.one_of is not None:
        matched = sum(1 for branch in schema.one_of if _is_satisfied(branch, value, pointer))
        if matched != 1:
            raise SchemaViolation(
                f"Value at {pointer} must match exactly one schema in oneOf (matched {matched}).",
                pointer,
                detail=value,
            )
        return

    if schema.all_of is not None:
        for branch in schema.all_of:
            _validate(branch, value, pointer)

    if schema.enum is not None and not any(deep_equal(candidate, value) for candidate in schema.enum):
        raise SchemaViolation(f"Value at {pointer} must be one of the allowed enum entries.", pointer, detail=value)

    if schema.types and not any(matches_type(name, value) for name in schema.types):
        raise SchemaViolation(
            f"Value at {pointer} must be of type {' | '.join(schema.types)}.", pointer, detail=value
        )

    if schema.is_object_schema and isinstance(value, dict):
        _validate_object(schema, value, pointer)
        return

    if schema.is_array_schema and isinstance(value, list):
        _validate_array(schema, value, pointer)
        return

    if isinstance(value, str):
        if schema.min_length is not None and len(value) < schema.min_length:
            raise SchemaViolation(
                f"String at {pointer} is shorter than minLength {schema.min_length}.", pointer, detail=value
            )
        if schema.max_length is not None and len(value) > schema.max_length:
            raise SchemaViolation(
                f"String at {pointer} exceeds maxLength {schema.max_length}.", pointer, detail=value
            )


def validate(schema: Union[JsonSchema, Mapping[str, Any]], value: Any, pointer: str = "#") -> None:
    """Raises SchemaViolation at the first location where value does not satisfy schema."""
    _validate(parse_schema(schema), value, pointer)


def strip_code_fences(payload: str) -> str:
    trimmed = payload.strip()
    match = _FENCE_RE.match(trimmed)
    if match and match.group(1):
        return match.group(1).strip()
    return trimmed


def parse_structured_content(content: str) -> Any:
    normalized = strip_code_fences(content)
    try:
        return json.loads(normalized)
    except json.JSONDecodeError as exc:
        raise ServiceError(
            "Assistant response could not be parsed as JSON.",
            ErrorKind.VALIDATION_ERROR,
            detail=normalized,
        ) from exc
