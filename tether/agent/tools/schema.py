"""JSON-schema builders for tool parameters."""

from __future__ import annotations

from typing import Any

EMPTY_SCHEMA: dict[str, Any] = {"type": "object", "properties": {}}


def object_schema(
    properties: dict[str, dict[str, Any]],
    required: list[str] | None = None,
) -> dict[str, Any]:
    """Wrap ``properties`` in an object schema. All properties are required unless listed."""
    return {
        "type": "object",
        "properties": properties,
        "required": list(properties) if required is None else required,
    }


def _prop(kind: str, description: str | None, **extra: Any) -> dict[str, Any]:
    prop: dict[str, Any] = {"type": kind}
    if description is not None:
        prop["description"] = description
    prop.update({k: v for k, v in extra.items() if v is not None})
    return prop


def string_property(description: str | None = None, enum: list[str] | None = None) -> dict[str, Any]:
    return _prop("string", description, enum=enum)


def number_property(description: str | None = None) -> dict[str, Any]:
    return _prop("number", description)


def integer_property(description: str | None = None) -> dict[str, Any]:
    return _prop("integer", description)


def boolean_property(description: str | None = None) -> dict[str, Any]:
    return _prop("boolean", description)


def array_property(
    description: str | None = None, items: dict[str, Any] | None = None
) -> dict[str, Any]:
    return _prop("array", description, items=items)
