"""Schema checks applied to tool arguments before dispatch."""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from typing import Any

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError, ValidationError
from loguru import logger
from rapidfuzz import fuzz, process

from parley.errors import ToolValidationError, UnknownToolError
from parley.types import ToolDescriptor

DEFAULT_MAX_ARGS_BYTES = 100_000
MIN_SUGGESTION_SCORE = 70
MAX_SUGGESTIONS = 3

# Lower sorts first when several keywords fail at once.
_KEYWORD_RANK = {"required": 0, "additionalProperties": 1, "type": 2, "anyOf": 3, "oneOf": 3}


class ArgumentValidator:
    """Validates candidate tool arguments against the tool's declared schema."""

    def __init__(self, *, max_args_bytes: int = DEFAULT_MAX_ARGS_BYTES) -> None:
        self.max_args_bytes = max_args_bytes

    def resolve(self, name: str, catalog: Iterable[ToolDescriptor]) -> ToolDescriptor:
        """Find a tool by name or raise with close-match suggestions."""
        tools = {tool.name: tool for tool in catalog}
        if name in tools:
            return tools[name]
        matches = process.extract(name, list(tools), scorer=fuzz.WRatio, limit=MAX_SUGGESTIONS, score_cutoff=MIN_SUGGESTION_SCORE)
        raise UnknownToolError(name, [match[0] for match in matches])

    def validate(self, tool: ToolDescriptor, args: object) -> dict[str, Any]:
        if not isinstance(args, Mapping):
            raise ToolValidationError(
                tool.name, f"Arguments for '{tool.name}' must be a JSON object, got {_json_kind(args)}"
            )
        payload = dict(args)

        try:
            encoded = json.dumps(payload, ensure_ascii=False, allow_nan=False)
        except (TypeError, ValueError) as exc:
            raise ToolValidationError(tool.name, f"Arguments for '{tool.name}' are not valid JSON: {exc}") from exc
        size = len(encoded.encode("utf-8"))
        if size > self.max_args_bytes:
            raise ToolValidationError(
                tool.name, f"Arguments for '{tool.name}' are too large ({size} bytes, limit {self.max_args_bytes})"
            )

        schema_validator = _schema_validator(tool)
        if schema_validator is None:
            return payload
        errors = list(schema_validator.iter_errors(payload))
        if errors:
            error = min(errors, key=lambda item: (_KEYWORD_RANK.get(str(item.validator), 9), len(item.path)))
            raise _to_tool_error(tool.name, error)
        return payload


def _schema_validator(tool: ToolDescriptor) -> Draft7Validator | None:
    schema = dict(tool.input_schema)
    try:
        Draft7Validator.check_schema(schema)
    except SchemaError as exc:
        logger.warning("tool.schema.invalid name={} error={}", tool.name, exc.message)
        return None
    return Draft7Validator(schema)


def _to_tool_error(tool: str, error: ValidationError) -> ToolValidationError:
    path = ".".join(str(part) for part in error.path)
    match error.validator:
        case "required":
            instance = error.instance if isinstance(error.instance, Mapping) else {}
            missing = next((key for key in error.validator_value if key not in instance), path)
            return ToolValidationError(tool, f"Missing required argument '{missing}' for '{tool}'", key=missing)
        case "additionalProperties":
            declared = error.schema.get("properties", {}) if isinstance(error.schema, Mapping) else {}
            instance = error.instance if isinstance(error.instance, Mapping) else {}
            extra = next((key for key in instance if key not in declared), path)
            return ToolValidationError(tool, f"Unexpected argument '{extra}' for '{tool}'", key=extra)
        case "type" | "anyOf" | "oneOf":
            expected = _expected_types(error)
            if expected:
                return ToolValidationError(
                    tool,
                    f"Argument '{path}' for '{tool}' must be {' or '.join(expected)}, got {_json_kind(error.instance)}",
                    key=path or None,
                )
    if path:
        return ToolValidationError(tool, f"Invalid argument '{path}' for '{tool}': {error.message}", key=path)
    return ToolValidationError(tool, f"Invalid arguments for '{tool}': {error.message}")


def _expected_types(error: ValidationError) -> list[str]:
    if error.validator == "type":
        declared = error.validator_value
        return [declared] if isinstance(declared, str) else [str(item) for item in declared]
    expected: list[str] = []
    for sub_error in error.context or ():
        if sub_error.validator == "type" and not sub_error.path:
            expected.extend(name for name in _expected_types(sub_error) if name not in expected)
    return expected


def _json_kind(value: object) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int | float):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list | tuple):
        return "array"
    if isinstance(value, Mapping):
        return "object"
    return type(value).__name__
