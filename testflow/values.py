"""Loosely typed assertion values and their coercion rules.

Assertion operands are JSON values. Comparisons never rely on Python's own
cross-type rules; every operator goes through one of the coercions below so
the outcome depends only on the value kind.
"""

import json
import math
from typing import Literal

from pydantic import JsonValue

type ScalarValue = str | int | float | bool | None
type ValueKind = Literal["null", "boolean", "number", "string", "structured"]


def value_kind(value: JsonValue) -> ValueKind:
    """Return the tag of a JSON value."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int | float):
        return "number"
    if isinstance(value, str):
        return "string"
    return "structured"


def to_text(value: JsonValue) -> str:
    """Coerce a value to its text form."""
    match value:
        case None:
            return "null"
        case bool():
            return "true" if value else "false"
        case float() if value.is_integer():
            return str(int(value))
        case int() | float():
            return str(value)
        case str():
            return value
        case _:
            return json.dumps(value, separators=(",", ":"))


def to_number(value: JsonValue) -> float:
    """Coerce a value to a number, NaN when it has no numeric reading."""
    match value:
        case None:
            return 0.0
        case bool() | int() | float():
            return float(value)
        case str():
            text = value.strip()
            if not text:
                return 0.0
            try:
                return float(text)
            except ValueError:
                return math.nan
        case _:
            return math.nan


def loose_equals(actual: JsonValue, expected: JsonValue) -> bool:
    """Compare two values, coercing scalars of different kinds numerically."""
    actual_kind = value_kind(actual)
    expected_kind = value_kind(expected)

    if actual_kind == "null" or expected_kind == "null":
        return actual_kind == expected_kind

    if actual_kind == expected_kind:
        if actual_kind == "number":
            return to_number(actual) == to_number(expected)
        return actual == expected

    if "structured" in (actual_kind, expected_kind):
        return False

    return to_number(actual) == to_number(expected)


def is_present(value: JsonValue) -> bool:
    """Return whether a value is defined."""
    return value is not None
