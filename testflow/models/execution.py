"""Models for execution records produced by the test executor."""

import uuid
from collections.abc import Mapping, Sequence
from datetime import datetime, timezone
from typing import Literal

from pydantic import Field, JsonValue

from testflow.models.base import Model
from testflow.models.test import AssertionKind

type ExecutionStatus = Literal["running", "passed", "failed", "error", "timeout"]
type TriggerSource = Literal["manual", "scheduled", "webhook", "api"]

TERMINAL_STATUSES: frozenset[ExecutionStatus] = frozenset(
    ["passed", "failed", "error", "timeout"]
)


class CapturedResponse(Model):
    """Snapshot of the response received from the target."""

    status_code: int
    headers: Mapping[str, str] = Field(default_factory=dict)
    body: JsonValue = None
    size: int = 0
    response_time: float = Field(..., description="Measured latency in milliseconds")


class AssertionResult(Model):
    """Outcome of one assertion."""

    kind: AssertionKind
    description: str | None = None
    passed: bool
    expected: JsonValue = None
    actual: JsonValue = None
    error: str | None = None


class ExecutionError(Model):
    """Transport level failure of the outbound call."""

    message: str
    code: str | None = None


class TriggerMetadata(Model):
    """What started the execution."""

    triggered_by: TriggerSource
    retry_count: int = 0


class ExecutionRecord(Model):
    """Outcome of running one test against one region for one trigger."""

    execution_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    test_id: str
    project_id: str
    region: str
    status: ExecutionStatus = "running"
    start_time: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    end_time: datetime | None = None
    duration: float | None = Field(default=None, description="Milliseconds")
    response: CapturedResponse | None = None
    assertions: Sequence[AssertionResult] = Field(default_factory=list)
    error: ExecutionError | None = None
    metadata: TriggerMetadata
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_terminal(self) -> bool:
        """Whether the record reached its final state."""
        return self.status in TERMINAL_STATUSES

    def finalize(
        self,
        *,
        status: ExecutionStatus,
        end_time: datetime,
        duration: float,
        response: CapturedResponse | None = None,
        assertions: Sequence[AssertionResult] = (),
        error: ExecutionError | None = None,
    ) -> "ExecutionRecord":
        """Return the terminal version of a running record.

        Raises:
            ValueError: If the record is already terminal or the target status
                is not terminal

        """
        if self.is_terminal:
            raise ValueError(
                f"Execution {self.execution_id} already finalized as {self.status}"
            )
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"Cannot finalize execution with status {status}")

        return self.model_copy(
            update={
                "status": status,
                "end_time": end_time,
                "duration": duration,
                "response": response,
                "assertions": list(assertions),
                "error": error,
            }
        )
