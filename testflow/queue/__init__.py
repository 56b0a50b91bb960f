"""Job queue module."""

from testflow.queue.jobs import (
    HealthCheckPayload,
    Job,
    JobKind,
    JobOptions,
    MetricsPayload,
    NotificationPayload,
    RunTestPayload,
)
from testflow.queue.manager import QueueManager

__all__ = [
    "HealthCheckPayload",
    "Job",
    "JobKind",
    "JobOptions",
    "MetricsPayload",
    "NotificationPayload",
    "QueueManager",
    "RunTestPayload",
]
