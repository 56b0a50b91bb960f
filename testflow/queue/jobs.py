"""Job kinds, payload schemas and job state."""

import asyncio
import enum
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import AliasChoices, Field, JsonValue

from testflow.config import RetryPolicy
from testflow.models.base import Model
from testflow.models.execution import TriggerSource

type JobState = Literal["waiting", "active", "completed", "failed", "delayed"]


class JobKind(enum.StrEnum):
    """Closed set of job types the engine knows how to handle."""

    RUN_TEST = "run-test"
    HEALTH_CHECK = "health-check"
    SEND_NOTIFICATION = "send-notification"
    CALCULATE_METRICS = "calculate-metrics"


class RunTestPayload(Model):
    """Request to execute a test."""

    test_id: str = Field(..., validation_alias=AliasChoices("test_id", "testId"))
    triggered_by: TriggerSource = Field(
        default="manual", validation_alias=AliasChoices("triggered_by", "triggeredBy")
    )
    regions: list[str] = Field(default_factory=list)


class HealthCheckPayload(Model):
    """Request to check that a target answers with the expected status."""

    target: str
    expected_status: int = 200
    timeout: int = Field(default=10000, description="Milliseconds")


class NotificationPayload(Model):
    """Notification to deliver, currently alerts raised by thresholds."""

    type: Literal["alert", "email"] = "alert"
    project_id: str
    organization: str | None = None
    alert_type: str | None = None
    severity: Literal["info", "warning", "critical"] = "warning"
    message: str = ""
    recipient: str | None = None
    data: dict[str, JsonValue] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class MetricsPayload(Model):
    """Metrics snapshot to process."""

    type: Literal["system", "project"] = "system"
    project_id: str | None = None
    metrics: dict[str, JsonValue] = Field(default_factory=dict)


PAYLOAD_MODELS: Mapping[JobKind, type[Model]] = {
    JobKind.RUN_TEST: RunTestPayload,
    JobKind.HEALTH_CHECK: HealthCheckPayload,
    JobKind.SEND_NOTIFICATION: NotificationPayload,
    JobKind.CALCULATE_METRICS: MetricsPayload,
}


@dataclass(frozen=True, kw_only=True)
class JobOptions:
    """Per job overrides applied at enqueue time."""

    delay: float = 0.0
    retry_policy: RetryPolicy | None = None


@dataclass(kw_only=True)
class Job:
    """A unit of work submitted to a named queue."""

    id: str
    queue: str
    kind: JobKind
    payload: Model
    retry_policy: RetryPolicy
    state: JobState = "waiting"
    attempts_made: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None
    failed_reason: str | None = None
    error: BaseException | None = field(default=None, repr=False)
    return_value: Any = None
    _finished: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def is_finished(self) -> bool:
        """Whether the job reached completed or failed."""
        return self.state in ("completed", "failed")

    async def wait(self, timeout: float | None = None) -> "Job":
        """Wait until the job is completed or terminally failed."""
        async with asyncio.timeout(timeout):
            await self._finished.wait()
        return self

    def mark_finished(self, state: Literal["completed", "failed"]) -> None:
        """Move the job to a terminal state."""
        self.state = state
        self.finished_at = datetime.now(timezone.utc)
        self._finished.set()


type JobHandler = Callable[[Job], Awaitable[Any]]
