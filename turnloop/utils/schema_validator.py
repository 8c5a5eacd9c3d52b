"""Minimal JSON-schema checks for tool parameters."""

from typing import Any

_JSON_TYPES: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "number": (int, float),
    "integer": (int,),
    "boolean": (bool,),
    "array": (list, tuple),
    "object": (dict,),
    "null": (type(None),),
}


def _type_matches(expected: str | list[str], value: Any) -> bool:
    names = expected if isinstance(expected, list) else [expected]
    for name in names:
        allowed = _JSON_TYPES.get(str(name).lower())
        if allowed is None:
            return True
        # bool is an int subclass; JSON keeps them apart.
        if isinstance(value, bool) and name in {"number", "integer"}:
            continue
        if name == "integer" and isinstance(value, float) and value.is_integer():
            return True
        if isinstance(value, allowed):
            return True
    return False


def _validate_value(schema: dict[str, Any], value: Any, path: str) -> str | None:
    expected = schema.get("type")
    if expected and not _type_matches(expected, value):
        return f"params{path} must be {expected}"

    enum = schema.get("enum")
    if isinstance(enum, list) and enum and value not in enum:
        allowed = ", ".join(repr(item) for item in enum)
        return f"params{path} must be one of: {allowed}"

    if isinstance(value, dict):
        return _validate_object(schema, value, path)

    if isinstance(value, (list, tuple)):
        items = schema.get("items")
        if isinstance(items, dict):
            for idx, item in enumerate(value):
                error = _validate_value(items, item, f"{path}[{idx}]")
                if error:
                    return error
    return None


def _validate_object(schema: dict[str, Any], value: dict[str, Any], path: str) -> str | None:
    for key in schema.get("required", []) or []:
        if key not in value:
            return f"params{path} must have required property '{key}'"

    properties = schema.get("properties") or {}
    for key, item in value.items():
        sub_schema = properties.get(key)
        if not isinstance(sub_schema, dict):
            continue
        if item is None and key not in (schema.get("required") or []):
            continue
        error = _validate_value(sub_schema, item, f".{key}" if not path else f"{path}.{key}")
        if error:
            return error
    return None


def validate_schema(schema: dict[str, Any] | None, data: Any) -> str | None:
    """Validate ``data`` against a tool parameter schema.

    Covers the subset tool declarations actually use: object ``required``
    keys, property ``type`` (including type lists), ``enum`` and array
    ``items``. Unknown keywords are ignored.

    Returns:
        Error message, or None when the data is valid
    """
    if not schema:
        return None
    if not isinstance(data, dict):
        return "params must be object"
    return _validate_value(schema, data, "")
