"""Queue job handlers."""

import logging
from dataclasses import dataclass, field
from typing import Any, assert_never, cast

import aiohttp

from testflow.aggregator import ResultAggregator
from testflow.errors import TestNotFoundError
from testflow.executor.executor import TestExecutor
from testflow.notifier.notifier import Alert, RealtimeNotifier
from testflow.queue.jobs import (
    HealthCheckPayload,
    Job,
    JobHandler,
    JobKind,
    MetricsPayload,
    NotificationPayload,
    RunTestPayload,
)
from testflow.store import Store

log = logging.getLogger(__name__)


@dataclass(frozen=True, kw_only=True)
class JobHandlers:
    """Handlers of every job kind, bound to the engine's collaborators.

    The queue manager validates each payload against its job kind on enqueue,
    so every handler receives the payload model of its own kind.
    """

    store: Store
    executor: TestExecutor
    aggregator: ResultAggregator
    notifier: RealtimeNotifier
    session: aiohttp.ClientSession = field(repr=False)

    def handler_for(self, kind: JobKind) -> JobHandler:
        """Return the handler of a job kind."""
        match kind:
            case JobKind.RUN_TEST:
                return self.run_test
            case JobKind.HEALTH_CHECK:
                return self.health_check
            case JobKind.SEND_NOTIFICATION:
                return self.send_notification
            case JobKind.CALCULATE_METRICS:
                return self.calculate_metrics
            case _:
                assert_never(kind)

    async def run_test(self, job: Job) -> dict[str, Any]:
        """Execute a test in its regions and fold the batch into its stats."""
        payload = cast(RunTestPayload, job.payload)
        log.info("Processing test execution job: %s", payload.test_id)

        test = await self.store.get_test(payload.test_id)
        if test is None:
            raise TestNotFoundError(f"Test '{payload.test_id}' not found")

        records = await self.executor.execute(
            test,
            payload.regions or list(test.regions),
            payload.triggered_by,
            retry_count=job.attempts_made - 1,
        )
        stats = await self.aggregator.aggregate(test, records)

        log.info("Test execution completed: %s", payload.test_id)
        return {
            "test_id": payload.test_id,
            "results": len(records),
            "status": stats.last_status,
        }

    async def health_check(self, job: Job) -> dict[str, Any]:
        """Check that a target answers with the expected status code."""
        payload = cast(HealthCheckPayload, job.payload)
        log.info("Processing health check: %s", payload.target)

        timeout = aiohttp.ClientTimeout(total=payload.timeout / 1000)
        async with self.session.get(payload.target, timeout=timeout) as response:
            status = response.status

        if status != payload.expected_status:
            raise RuntimeError(
                f"Health check failed: {payload.target} returned {status}, "
                f"expected {payload.expected_status}"
            )
        return {"target": payload.target, "status": status}

    async def send_notification(self, job: Job) -> dict[str, Any]:
        """Deliver a notification to its subscribers."""
        payload = cast(NotificationPayload, job.payload)
        log.info("Processing notification job: %s", payload.type)

        match payload.type:
            case "alert":
                organization = payload.organization
                if organization is None:
                    project = await self.store.get_project(payload.project_id)
                    if project is None:
                        raise RuntimeError(f"Project '{payload.project_id}' not found")
                    organization = project.organization
                self.notifier.emit_alert(
                    Alert(
                        type=payload.alert_type or "alert",
                        severity=payload.severity,
                        message=payload.message,
                        project_id=payload.project_id,
                        organization=organization,
                        timestamp=payload.timestamp,
                    )
                )
                log.info("Alert notification: %s", payload.message)
            case "email":
                log.info("Email notification to: %s", payload.recipient)

        return {"success": True, "type": payload.type}

    async def calculate_metrics(self, job: Job) -> dict[str, Any]:
        """Process a metrics snapshot."""
        payload = cast(MetricsPayload, job.payload)
        log.info("Processing analytics job: %s", payload.type)

        if payload.type == "project" and payload.project_id is not None:
            self.notifier.emit_metrics(payload.project_id, payload.metrics)
        else:
            log.info("System metrics: %s", payload.metrics.get("queues"))

        return {"success": True, "type": payload.type}
