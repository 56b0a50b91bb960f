"""Tests for execution record models."""

from datetime import datetime, timezone

import pytest

from testflow.models.execution import (
    AssertionResult,
    ExecutionError,
    ExecutionRecord,
    TriggerMetadata,
)
from testflow.testing.factories import CapturedResponseFactory

END = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def record() -> ExecutionRecord:
    """Create a running record."""
    return ExecutionRecord(
        test_id="t1",
        project_id="p1",
        region="eu-west-1",
        metadata=TriggerMetadata(triggered_by="scheduled", retry_count=1),
    )


def test_new_record_is_running(record: ExecutionRecord) -> None:
    """Records start running with a unique ID."""
    other = record.model_copy(update={"execution_id": "other"})

    assert record.status == "running"
    assert not record.is_terminal
    assert record.execution_id != other.execution_id
    assert record.end_time is None


def test_finalize_sets_terminal_fields(record: ExecutionRecord) -> None:
    """Finalizing sets status, timing, response and assertion results."""
    response = CapturedResponseFactory.build()
    result = AssertionResult(kind="status", passed=True, expected=200, actual=200)

    final = record.finalize(
        status="passed",
        end_time=END,
        duration=120.0,
        response=response,
        assertions=[result],
    )

    assert final.is_terminal
    assert final.status == "passed"
    assert final.end_time == END
    assert final.duration == 120.0
    assert final.response == response
    assert final.assertions == [result]
    assert final.execution_id == record.execution_id
    assert record.status == "running"


def test_finalize_twice_is_rejected(record: ExecutionRecord) -> None:
    """A terminal record never changes status again."""
    final = record.finalize(
        status="error",
        end_time=END,
        duration=1.0,
        error=ExecutionError(message="boom", code="ClientError"),
    )

    with pytest.raises(ValueError, match="already finalized"):
        final.finalize(status="passed", end_time=END, duration=1.0)


def test_finalize_requires_terminal_status(record: ExecutionRecord) -> None:
    """Records cannot be finalized as running."""
    with pytest.raises(ValueError, match="Cannot finalize"):
        record.finalize(status="running", end_time=END, duration=1.0)


def test_json_round_trip(record: ExecutionRecord) -> None:
    """A finalized record survives serialization unchanged."""
    final = record.finalize(
        status="failed",
        end_time=END,
        duration=80.5,
        response=CapturedResponseFactory.build(body={"items": [1, 2]}),
        assertions=[
            AssertionResult(kind="status", passed=False, expected=200, actual=500)
        ],
    )

    assert ExecutionRecord.model_validate_json(final.model_dump_json()) == final
