"""Evaluation of declarative assertions against a captured response."""

import json
import logging
import math
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass

from pydantic import JsonValue

from testflow.models.execution import AssertionResult, CapturedResponse
from testflow.models.test import Assertion, AssertionKind, Operator
from testflow.values import is_present, loose_equals, to_number, to_text

log = logging.getLogger(__name__)


@dataclass(frozen=True, kw_only=True)
class AssertionOutcome:
    """Result of evaluating a single assertion."""

    passed: bool
    actual: JsonValue = None
    error: str | None = None


def _greater_than(actual: JsonValue, expected: JsonValue) -> bool:
    left, right = to_number(actual), to_number(expected)
    return not (math.isnan(left) or math.isnan(right)) and left > right


def _less_than(actual: JsonValue, expected: JsonValue) -> bool:
    left, right = to_number(actual), to_number(expected)
    return not (math.isnan(left) or math.isnan(right)) and left < right


OPERATORS: Mapping[Operator, Callable[[JsonValue, JsonValue], bool]] = {
    "equals": loose_equals,
    "not_equals": lambda actual, expected: not loose_equals(actual, expected),
    "contains": lambda actual, expected: to_text(expected) in to_text(actual),
    "not_contains": lambda actual, expected: to_text(expected) not in to_text(actual),
    "greater_than": _greater_than,
    "less_than": _less_than,
    "exists": lambda actual, _: is_present(actual),
    "not_exists": lambda actual, _: not is_present(actual),
}


def compare(actual: JsonValue, operator: Operator, expected: JsonValue) -> bool:
    """Apply an operator to an actual/expected pair."""
    return OPERATORS[operator](actual, expected)


def body_text(body: JsonValue) -> str:
    """Return the response body as text, JSON encoding structured bodies."""
    if isinstance(body, str):
        return body
    return json.dumps(body)


def json_path(body: JsonValue, path: str) -> JsonValue:
    """Traverse a dot separated path, returning None on any missing segment."""
    current = body
    for segment in path.split("."):
        if isinstance(current, Mapping):
            current = current.get(segment)
        elif isinstance(current, list) and segment.isdigit():
            index = int(segment)
            current = current[index] if index < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


def find_header(headers: Mapping[str, str], name: str) -> str | None:
    """Look a header up case-insensitively."""
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return None


def _require_field(field: str | None, kind: AssertionKind) -> str:
    if not field:
        raise ValueError(f"Assertion type '{kind}' requires a field")
    return field


def evaluate(
    kind: AssertionKind,
    field: str | None,
    operator: Operator,
    expected: JsonValue,
    response: CapturedResponse,
    duration: float,
) -> AssertionOutcome:
    """Evaluate one assertion, never raising.

    Args:
        kind: Assertion type
        field: Header name or dot path, for the kinds that need one
        operator: Comparison operator
        expected: Expected value
        response: Captured response of the execution
        duration: Measured duration in milliseconds

    Returns:
        The outcome, with an error message when evaluation itself failed

    """
    actual: JsonValue = None
    try:
        match kind:
            case "status":
                actual = response.status_code
                return AssertionOutcome(
                    passed=compare(actual, operator, expected), actual=actual
                )
            case "response_time":
                actual = duration
                return AssertionOutcome(
                    passed=compare(actual, operator, expected), actual=actual
                )
            case "body_contains":
                actual = body_text(response.body)
                return AssertionOutcome(passed=to_text(expected) in actual, actual=actual)
            case "header_exists":
                actual = find_header(response.headers, _require_field(field, kind))
                return AssertionOutcome(passed=actual is not None, actual=actual)
            case "json_path":
                actual = json_path(response.body, _require_field(field, kind))
                return AssertionOutcome(
                    passed=compare(actual, operator, expected), actual=actual
                )
            case "schema_validation":
                return AssertionOutcome(
                    passed=False,
                    error="Assertion type 'schema_validation' is not supported",
                )
            case _:
                return AssertionOutcome(
                    passed=False, error=f"Unknown assertion type: {kind}"
                )
    except Exception as e:
        log.warning("Assertion %s could not be evaluated: %s", kind, e)
        return AssertionOutcome(passed=False, actual=actual, error=str(e))


def evaluate_all(
    assertions: Sequence[Assertion],
    response: CapturedResponse,
    duration: float,
) -> Sequence[AssertionResult]:
    """Evaluate every assertion in order, one result per assertion."""
    results: list[AssertionResult] = []
    for assertion in assertions:
        outcome = evaluate(
            assertion.kind,
            assertion.field,
            assertion.operator,
            assertion.expected,
            response,
            duration,
        )
        results.append(
            AssertionResult(
                kind=assertion.kind,
                description=assertion.description,
                passed=outcome.passed,
                expected=assertion.expected,
                actual=outcome.actual,
                error=outcome.error,
            )
        )
    return results
