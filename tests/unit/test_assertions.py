"""Tests for assertion evaluation."""

import pytest

from testflow.assertions import compare, evaluate, evaluate_all, find_header, json_path
from testflow.models.execution import CapturedResponse
from testflow.models.test import Assertion
from testflow.testing.factories import CapturedResponseFactory


@pytest.fixture
def response() -> CapturedResponse:
    """Create a JSON response."""
    return CapturedResponseFactory.build(
        status_code=200,
        headers={"content-type": "application/json", "x-request-id": "abc"},
        body={"status": "ok", "data": {"items": [{"id": 7}, {"id": 8}]}},
    )


@pytest.mark.parametrize(
    ("actual", "operator", "expected", "passed"),
    [
        (200, "equals", 200, True),
        (200, "equals", "200", True),
        (404, "equals", 200, False),
        (404, "not_equals", 200, True),
        (200, "not_equals", 200, False),
        ("hello world", "contains", "world", True),
        ("hello world", "contains", "moon", False),
        (12345, "contains", 234, True),
        ("hello world", "not_contains", "moon", True),
        (250, "greater_than", 200, True),
        (200, "greater_than", 200, False),
        ("300", "greater_than", 200, True),
        (150, "less_than", 200, True),
        (200, "less_than", 200, False),
        ("abc", "less_than", 200, False),
        ("abc", "greater_than", 200, False),
        (0, "exists", None, True),
        (None, "exists", None, False),
        (None, "not_exists", None, True),
        ("", "not_exists", None, False),
    ],
)
def test_operator_truth_table(
    actual: object, operator: str, expected: object, passed: bool
) -> None:
    """Every operator follows the coercion rules of its operands."""
    assert compare(actual, operator, expected) is passed  # type: ignore[arg-type]


class TestJsonPath:
    """Tests for json_path."""

    def test_traverses_objects_and_list_indexes(self) -> None:
        """Dot segments descend into objects and numeric segments into lists."""
        body = {"data": {"items": [{"id": 7}, {"id": 8}]}}

        assert json_path(body, "data.items.1.id") == 8

    @pytest.mark.parametrize(
        "path", ["missing", "data.missing.id", "data.items.5", "data.items.x"]
    )
    def test_missing_segment_yields_none(self, path: str) -> None:
        """A missing segment anywhere makes the value undefined."""
        body = {"data": {"items": [{"id": 7}]}}

        assert json_path(body, path) is None

    def test_text_body_has_no_paths(self) -> None:
        """A body that is not JSON has no fields."""
        assert json_path("plain text", "status") is None


def test_find_header_is_case_insensitive() -> None:
    """Header lookups ignore case."""
    assert find_header({"content-type": "text/plain"}, "Content-Type") == "text/plain"
    assert find_header({}, "Content-Type") is None


class TestEvaluate:
    """Tests for evaluate."""

    def test_status_equals(self, response: CapturedResponse) -> None:
        """Status assertions compare the status code."""
        outcome = evaluate("status", None, "equals", 200, response, 12.0)

        assert outcome.passed
        assert outcome.actual == 200
        assert outcome.error is None

    def test_status_mismatch_reports_actual(self) -> None:
        """A failed status assertion carries the received code."""
        response = CapturedResponseFactory.build(status_code=404)

        outcome = evaluate("status", None, "equals", 200, response, 12.0)

        assert not outcome.passed
        assert outcome.actual == 404

    def test_response_time_uses_measured_duration(
        self, response: CapturedResponse
    ) -> None:
        """Response time assertions compare the measured duration."""
        outcome = evaluate("response_time", None, "less_than", 500, response, 120.0)

        assert outcome.passed
        assert outcome.actual == 120.0

    def test_body_contains_searches_encoded_json(
        self, response: CapturedResponse
    ) -> None:
        """Structured bodies are searched in their JSON text form."""
        outcome = evaluate("body_contains", None, "contains", '"status"', response, 1.0)

        assert outcome.passed

    def test_body_contains_ignores_operator(self, response: CapturedResponse) -> None:
        """Body containment always checks for substring presence."""
        outcome = evaluate("body_contains", None, "equals", "ok", response, 1.0)

        assert outcome.passed

    def test_header_exists(self, response: CapturedResponse) -> None:
        """A present header passes regardless of its case."""
        outcome = evaluate("header_exists", "X-Request-Id", "exists", None, response, 1.0)

        assert outcome.passed
        assert outcome.actual == "abc"

    def test_missing_header(self, response: CapturedResponse) -> None:
        """A missing header fails with an undefined actual value."""
        outcome = evaluate("header_exists", "X-Trace-Id", "exists", None, response, 1.0)

        assert not outcome.passed
        assert outcome.actual is None
        assert outcome.error is None

    def test_json_path(self, response: CapturedResponse) -> None:
        """JSON path assertions compare the extracted value."""
        outcome = evaluate("json_path", "data.items.0.id", "equals", 7, response, 1.0)

        assert outcome.passed
        assert outcome.actual == 7

    def test_json_path_on_missing_field(self, response: CapturedResponse) -> None:
        """Existence checks on a missing path fail."""
        outcome = evaluate("json_path", "data.total", "exists", None, response, 1.0)

        assert not outcome.passed
        assert outcome.actual is None

    def test_schema_validation_is_unsupported(self, response: CapturedResponse) -> None:
        """Schema validation fails with an explanatory error."""
        outcome = evaluate("schema_validation", None, "equals", None, response, 1.0)

        assert not outcome.passed
        assert outcome.error is not None
        assert "not supported" in outcome.error

    def test_missing_field_is_reported_as_error(
        self, response: CapturedResponse
    ) -> None:
        """Kinds that need a field fail with an error when it is absent."""
        outcome = evaluate("json_path", None, "equals", 7, response, 1.0)

        assert not outcome.passed
        assert outcome.error == "Assertion type 'json_path' requires a field"


def test_evaluate_all_isolates_malformed_assertions() -> None:
    """A malformed assertion fails alone and later assertions still run."""
    response = CapturedResponseFactory.build(status_code=200, body={"ok": True})
    assertions = [
        Assertion(kind="header_exists", description="trace header"),
        Assertion(kind="status", operator="equals", expected=200),
        Assertion(kind="json_path", field="ok", operator="equals", expected=True),
    ]

    results = evaluate_all(assertions, response, 10.0)

    assert [result.passed for result in results] == [False, True, True]
    assert results[0].description == "trace header"
    assert results[0].error is not None
    assert results[1].expected == 200
    assert results[1].actual == 200
